"""OpenAI-compatible multimodal provider (DashScope Qwen-VL, OpenAI, ...)."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import httpx

from rtl_auditor.config import ANALYSIS_TIMEOUT_SEC
from rtl_auditor.services.errors import (
    MISSING_API_KEY_MESSAGE,
    NETWORK_MESSAGE,
    CredentialError,
    RemoteServiceError,
    ResponseFormatError,
    raise_for_model_status,
)
from rtl_auditor.services.mm_provider import ImageInput, MultimodalProvider, parse_json_text


def normalize_base_url(base_url: str) -> str:
    """
    Accepts either:
    - https://host/v1
    - https://host
    - https://host/compatible-mode/v1
    Returns a base url that ends with /v1.
    """
    if not base_url:
        return ""
    b = base_url.rstrip("/")
    if b.endswith("/v1"):
        return b
    return b + "/v1"


class OpenAICompatibleProvider(MultimodalProvider):
    name = "openai_compatible"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.default_base_url = os.getenv(
            "OPENAI_COMPATIBLE_BASE_URL",
            "https://dashscope.aliyuncs.com/compatible-mode/v1",
        )
        self.timeout_sec = ANALYSIS_TIMEOUT_SEC
        self._transport = transport

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
        final_api_key = (api_key or "").strip()
        if not final_api_key:
            raise CredentialError("API key is not configured.", user_message=MISSING_API_KEY_MESSAGE)
        if not model:
            raise ValueError("Vision model is missing")

        url = f"{normalize_base_url(base_url or self.default_base_url)}/chat/completions"
        payload = self.build_payload(
            image=image,
            prompt=prompt,
            json_schema=json_schema,
            model=model,
            system_instruction=system_instruction,
        )
        headers = {
            "Authorization": f"Bearer {final_api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=float(self.timeout_sec), transport=self._transport) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TransportError as exc:
            raise RemoteServiceError(f"Transport error: {exc}", user_message=NETWORK_MESSAGE) from exc

        raise_for_model_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ResponseFormatError(f"Non-JSON body: {exc}") from exc
        return self.extract_structured_json(data)

    def build_payload(
        self,
        *,
        image: ImageInput,
        prompt: str,
        json_schema: Dict[str, Any],
        model: str,
        system_instruction: Optional[str] = None,
    ) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": image.data_url}},
                    {"type": "text", "text": prompt},
                ],
            }
        )
        return {
            "model": model,
            "messages": messages,
            "temperature": 0,
            "max_tokens": 4096,
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "rtl_audit", "schema": json_schema},
            },
        }

    def extract_structured_json(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        choices = raw.get("choices") or []
        if not choices:
            raise ResponseFormatError("Response has no choices.")
        message = choices[0].get("message") or {}
        return parse_json_text(self._content_to_text(message.get("content")))

    def _content_to_text(self, content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: List[str] = []
            for item in content:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "text":
                    parts.append(str(item.get("text") or ""))
            return "\n".join(parts)
        return str(content or "")


openai_compatible_provider = OpenAICompatibleProvider()
