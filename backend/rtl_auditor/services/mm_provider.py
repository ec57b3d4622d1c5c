"""Multimodal provider abstraction."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from rtl_auditor.config import MULTIMODAL_PROVIDER
from rtl_auditor.services.errors import ResponseFormatError
from rtl_auditor.services.image_ingest import split_data_url

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


@dataclass(slots=True)
class ImageInput:
    """Image payload sent to the model."""

    mime_type: str
    image_base64: str

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImageInput":
        try:
            mime_type, payload = split_data_url(data_url)
        except ValueError as exc:
            raise ResponseFormatError(f"Invalid image payload: {exc}") from exc
        return cls(mime_type=mime_type, image_base64=payload)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.image_base64}"


def parse_json_text(text: str) -> Dict[str, Any]:
    """Parse model text as a JSON object, unwrapping a fenced code block if present."""
    text = (text or "").strip()
    if not text:
        raise ResponseFormatError("Model response content is empty.")

    # Some models still wrap JSON in markdown fences.
    match = _FENCE_PATTERN.search(text)
    if match:
        text = match.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"Model response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ResponseFormatError("Model response JSON is not an object.")
    return data


class MultimodalProvider(ABC):
    """Provider abstraction for vision-capable large models."""

    name: str = "unknown"

    @abstractmethod
    async def analyze_image(
        self,
        image: ImageInput,
        prompt: str,
        json_schema: Dict[str, Any],
        *,
        system_instruction: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Analyze one image and return structured JSON data."""


def get_multimodal_provider(provider_name: Optional[str] = None) -> MultimodalProvider:
    """Resolve provider by name, defaulting to env-configured provider."""

    resolved = (provider_name or MULTIMODAL_PROVIDER or "gemini").strip().lower()
    if resolved in {"gemini", "google"}:
        from rtl_auditor.services.gemini_provider import gemini_provider

        return gemini_provider
    if resolved in {"openai", "openai_compatible", "dashscope", "qwen", "qwen_dashscope"}:
        from rtl_auditor.services.openai_compatible_provider import openai_compatible_provider

        return openai_compatible_provider
    raise ValueError(f"Unsupported multimodal provider: {resolved}")
