import asyncio
import io
from typing import List, Optional

import pytest
from PIL import Image

from rtl_auditor import config
from rtl_auditor.services.analysis_lifecycle import AnalysisSession
from rtl_auditor.services.history_store import HistoryStore
from rtl_auditor.services.rtl_analysis_client import RTLAnalysisClient

ARABIC_AUDIT = {
    "language": "阿拉伯语",
    "displayErrors": [
        {
            "type": "前端实现错误",
            "overview": "标题左对齐",
            "content": "阿拉伯语标题应右对齐。",
            "location": {"x": 100, "y": 100, "width": 200, "height": 50},
        }
    ],
    "overallSummary": "发现 1 处对齐问题",
}


class FakeClient:
    """Stands in for RTLAnalysisClient; records calls and the status seen mid-flight."""

    def __init__(self, result=None, error: Optional[Exception] = None, fail_fast: bool = False):
        self.result = result
        self.error = error
        # Raise before the first await, like a missing API key.
        self.fail_fast = fail_fast
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.session: Optional[AnalysisSession] = None
        self.seen_status: List[str] = []

    async def analyze(self, image_data_url, **kwargs):
        self.calls.append(image_data_url)
        if self.session is not None:
            active = [item.status for item in self.session.state.history if item.image == image_data_url]
            self.seen_status.extend(active)
        if self.fail_fast and self.error is not None:
            raise self.error
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result


class Clock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


@pytest.fixture(autouse=True)
def isolated_llm_config(monkeypatch):
    monkeypatch.setattr(config, "_LLM_API_KEY_ENV", "")
    monkeypatch.setattr(config, "_LLM_API_BASE_ENV", "")
    monkeypatch.setattr(config, "_LLM_MODEL_ENV", "gemini-3-flash-preview")
    config.reset_llm_config()
    yield
    config.reset_llm_config()


@pytest.fixture
def make_image():
    def _make(width=400, height=200, color=(200, 200, 200), mode="RGB", fmt="PNG") -> bytes:
        if mode == "RGBA":
            img = Image.new("RGBA", (width, height), color + (0,) if len(color) == 3 else color)
        else:
            img = Image.new(mode, (width, height), color)
        buffer = io.BytesIO()
        img.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make


@pytest.fixture
def sample_result():
    return RTLAnalysisClient().parse_result(ARABIC_AUDIT)


@pytest.fixture
def fake_client(sample_result):
    return FakeClient(result=sample_result)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_session(tmp_path, clock):
    def _make(client, auto_analyze=False):
        session = AnalysisSession(HistoryStore(str(tmp_path)), client, auto_analyze=auto_analyze, clock=clock)
        client.session = session
        return session

    return _make
