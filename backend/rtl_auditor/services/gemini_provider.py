"""Google Gemini multimodal provider (REST generateContent)."""

from __future__ import annotations

import logging
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

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def to_gemini_schema(schema: Any) -> Any:
    """Convert a JSON schema into Gemini's OpenAPI-style schema (upper-case types)."""
    if isinstance(schema, list):
        return [to_gemini_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    converted: Dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties" and isinstance(value, dict):
            converted[key] = {name: to_gemini_schema(prop) for name, prop in value.items()}
        elif key == "items":
            converted[key] = to_gemini_schema(value)
        elif key == "additionalProperties":
            continue
        else:
            converted[key] = value
    return converted


class GeminiProvider(MultimodalProvider):
    name = "gemini"
    default_base_url = DEFAULT_GEMINI_BASE_URL

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
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
            raise CredentialError("Gemini API key is not configured.", user_message=MISSING_API_KEY_MESSAGE)
        if not model:
            raise ValueError("Gemini model is missing")

        url = f"{(base_url or self.default_base_url).rstrip('/')}/models/{model}:generateContent"
        headers = {
            "x-goog-api-key": final_api_key,
            "Content-Type": "application/json",
        }
        payload = self.build_payload(
            image=image,
            prompt=prompt,
            json_schema=json_schema,
            system_instruction=system_instruction,
        )

        try:
            async with httpx.AsyncClient(timeout=float(self.timeout_sec), transport=self._transport) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TransportError as exc:
            raise RemoteServiceError(f"Gemini transport error: {exc}", user_message=NETWORK_MESSAGE) from exc

        raise_for_model_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ResponseFormatError(f"Gemini returned non-JSON body: {exc}") from exc
        return self.extract_structured_json(data)

    def build_payload(
        self,
        *,
        image: ImageInput,
        prompt: str,
        json_schema: Dict[str, Any],
        system_instruction: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inlineData": {"mimeType": image.mime_type, "data": image.image_base64}},
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": to_gemini_schema(json_schema),
            },
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return payload

    def extract_structured_json(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        block_reason = (raw.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ResponseFormatError(f"Gemini blocked the prompt: {block_reason}")
        candidates = raw.get("candidates") or []
        if not candidates:
            raise ResponseFormatError("Gemini response has no candidates.")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts: List[str] = [str(part.get("text") or "") for part in parts if isinstance(part, dict)]
        return parse_json_text("".join(texts))


gemini_provider = GeminiProvider()
