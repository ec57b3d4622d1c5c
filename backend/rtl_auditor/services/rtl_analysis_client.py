"""RTL layout audit request building and response normalization."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from rtl_auditor.config import get_llm_config
from rtl_auditor.models.schemas import RTL_LANGUAGES, AnalysisResult, DisplayError, ErrorType
from rtl_auditor.services.errors import MISSING_API_KEY_MESSAGE, CredentialError, ResponseFormatError
from rtl_auditor.services.mm_provider import ImageInput, get_multimodal_provider

logger = logging.getLogger(__name__)

NORMALIZED_EXTENT = 1000.0

SYSTEM_INSTRUCTION = (
    "你是一名资深的 RTL（从右到左）界面本地化审计专家，负责审查阿拉伯语、波斯语界面截图的排版合规性。\n"
    "审计规则：\n"
    "1. RTL 文本块应右对齐或居中对齐；RTL 文本左对齐属于前端实现错误。\n"
    "2. 图标、箭头、进度方向等应随阅读方向镜像；未镜像属于前端实现错误。\n"
    "3. 拼写、语法、断词、标点方向错误属于语法/语言错误。\n"
    "4. 不影响正确性但可改进可读性或一致性的问题属于优化建议。\n"
    "坐标要求：location 使用 0-1000 归一化坐标（相对截图宽高），x/y 为左上角，"
    "width/height 为宽高，框选问题文字块的最小外接矩形。\n"
    "language 只能是 阿拉伯语 或 波斯语；overview 简述问题，content 给出具体内容与修改建议；"
    "overallSummary 用一句话总结整体合规情况。全部说明使用中文。"
)

ANALYSIS_PROMPT = (
    "请扫描截图中的所有文字块。重点检查每一个文字块的对齐方式（左/中/右），"
    "并将左对齐的 RTL 文本标注为‘前端实现错误’。必须返回 JSON 格式结果。"
)

_LANGUAGE_ALIASES = {
    "阿拉伯语": "阿拉伯语",
    "阿拉伯文": "阿拉伯语",
    "arabic": "阿拉伯语",
    "ar": "阿拉伯语",
    "波斯语": "波斯语",
    "波斯文": "波斯语",
    "persian": "波斯语",
    "farsi": "波斯语",
    "fa": "波斯语",
}

_TYPE_ALIASES = {
    ErrorType.FRONTEND.value: ErrorType.FRONTEND,
    "前端错误": ErrorType.FRONTEND,
    "frontend": ErrorType.FRONTEND,
    ErrorType.GRAMMAR.value: ErrorType.GRAMMAR,
    "语法错误": ErrorType.GRAMMAR,
    "语言错误": ErrorType.GRAMMAR,
    "grammar": ErrorType.GRAMMAR,
    ErrorType.OPTIMIZATION.value: ErrorType.OPTIMIZATION,
    "optimization": ErrorType.OPTIMIZATION,
}


def build_response_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "language": {"type": "string", "enum": list(RTL_LANGUAGES)},
            "displayErrors": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {"type": "string", "enum": [item.value for item in ErrorType]},
                        "overview": {"type": "string"},
                        "content": {"type": "string"},
                        "location": {
                            "type": "object",
                            "properties": {
                                "y": {"type": "number"},
                                "x": {"type": "number"},
                                "height": {"type": "number"},
                                "width": {"type": "number"},
                            },
                            "required": ["y", "x", "height", "width"],
                        },
                    },
                    "required": ["type", "overview", "content", "location"],
                },
            },
            "overallSummary": {"type": "string"},
        },
        "required": ["language", "displayErrors", "overallSummary"],
    }


def is_frontend_defect(error: DisplayError) -> bool:
    """Misalignment is reported through the structured type, not free text."""
    return error.type == ErrorType.FRONTEND


class RTLAnalysisClient:
    """Send one screenshot to the configured model and validate the audit."""

    def __init__(self, provider_name: Optional[str] = None) -> None:
        self.provider_name = provider_name

    async def analyze(
        self,
        image_data_url: str,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AnalysisResult:
        cfg_key, cfg_base, cfg_model = get_llm_config()
        final_api_key = (api_key or cfg_key or "").strip()
        if not final_api_key:
            raise CredentialError("API key is not configured.", user_message=MISSING_API_KEY_MESSAGE)

        provider = get_multimodal_provider(self.provider_name)
        raw = await provider.analyze_image(
            ImageInput.from_data_url(image_data_url),
            ANALYSIS_PROMPT,
            build_response_schema(),
            system_instruction=SYSTEM_INSTRUCTION,
            api_key=final_api_key,
            model=model or cfg_model,
            base_url=cfg_base or None,
        )
        return self.parse_result(raw)

    def parse_result(self, raw: Any) -> AnalysisResult:
        if not isinstance(raw, dict):
            raise ResponseFormatError("Analysis payload is not an object.")

        language = self._normalize_language(raw.get("language"))
        if language is None:
            raise ResponseFormatError(f"Unsupported language: {raw.get('language')!r}")

        errors_raw = raw.get("displayErrors")
        if errors_raw is None:
            errors_raw = []
        if not isinstance(errors_raw, list):
            raise ResponseFormatError("displayErrors is not an array.")

        display_errors: List[Dict[str, Any]] = []
        for item in errors_raw:
            normalized = self._normalize_display_error(item)
            if normalized:
                display_errors.append(normalized)

        try:
            return AnalysisResult.model_validate(
                {
                    "language": language,
                    "overallSummary": str(raw.get("overallSummary") or "").strip(),
                    "displayErrors": display_errors,
                }
            )
        except ValidationError as exc:
            raise ResponseFormatError(f"Analysis payload failed validation: {exc}") from exc

    def _normalize_language(self, value: Any) -> Optional[str]:
        key = str(value or "").strip()
        return _LANGUAGE_ALIASES.get(key) or _LANGUAGE_ALIASES.get(key.lower())

    def _normalize_display_error(self, item: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(item, dict):
            return None
        type_key = str(item.get("type") or "").strip()
        error_type = _TYPE_ALIASES.get(type_key) or _TYPE_ALIASES.get(type_key.lower())
        if error_type is None:
            logger.warning("Dropping finding with unknown type %r", type_key)
            return None
        return {
            "type": error_type,
            "overview": str(item.get("overview") or "").strip(),
            "content": str(item.get("content") or "").strip(),
            "location": self._normalize_location(item.get("location")),
        }

    def _normalize_location(self, value: Any) -> Optional[Dict[str, float]]:
        if not isinstance(value, dict):
            return None
        box: Dict[str, float] = {}
        for key in ("x", "y", "width", "height"):
            try:
                number = float(value.get(key))
            except (TypeError, ValueError):
                return None
            if number != number:  # NaN
                return None
            box[key] = max(0.0, min(NORMALIZED_EXTENT, number))
        return box


analysis_client = RTLAnalysisClient()
