"""Analysis error taxonomy with user-facing messages."""

from __future__ import annotations

from typing import Optional

import httpx


class AnalysisError(Exception):
    """Base class for failures of one analysis request."""

    user_message = "审计分析失败，请检查网络或图片内容。"

    def __init__(self, detail: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(detail or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class CredentialError(AnalysisError):
    user_message = "API 密钥校验失败或权限受限，请检查当前环境授权。"


class RemoteServiceError(AnalysisError):
    user_message = "后端响应异常，请尝试缩小图片尺寸或重试。"


class ResponseFormatError(AnalysisError):
    user_message = "模型返回结果无法解析，请重试分析。"


MISSING_API_KEY_MESSAGE = "检测到 API 密钥缺失。请先设置 API 密钥后再启动分析。"
QUOTA_MESSAGE = "模型调用额度不足或请求过于频繁，请稍后重试。"
PAYLOAD_TOO_LARGE_MESSAGE = "图片体积超出模型限制，请尝试缩小图片尺寸或重试。"
NETWORK_MESSAGE = "无法连接模型服务，请检查网络后重试。"

_CREDENTIAL_MARKERS = ("api key not valid", "api_key_invalid", "invalid api key", "incorrect api key")


def raise_for_model_status(response: httpx.Response) -> None:
    """Map an HTTP error answer from a model host onto the taxonomy."""
    if response.is_success:
        return
    status = response.status_code
    body = response.text[:500]
    lowered = body.lower()
    detail = f"HTTP {status}: {body}"

    if status in {401, 403} or any(marker in lowered for marker in _CREDENTIAL_MARKERS):
        raise CredentialError(detail)
    if status == 429:
        raise RemoteServiceError(detail, user_message=QUOTA_MESSAGE)
    if status == 413:
        raise RemoteServiceError(detail, user_message=PAYLOAD_TOO_LARGE_MESSAGE)
    raise RemoteServiceError(detail)
