"""Active selection, notifications and credential routes."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response

from rtl_auditor.config import (
    API_KEY_COOKIE_MAX_AGE,
    API_KEY_COOKIE_NAME,
    MULTIMODAL_PROVIDER,
    clear_llm_api_key,
    get_llm_config,
    identify_provider,
    set_llm_config,
)
from rtl_auditor.models.schemas import ActiveSelectionRequest, ApiKeyRequest, Toast
from rtl_auditor.routers.history import apply_api_key_cookie
from rtl_auditor.services.analysis_lifecycle import AnalysisSession, get_session
from rtl_auditor.services.mm_provider import get_multimodal_provider

router = APIRouter()


@router.get("/active")
async def get_active(session: AnalysisSession = Depends(get_session)):
    item = session.state.active_item
    return {"id": item.id if item else None, "status": item.status if item else None}


@router.put("/active")
async def set_active(request: ActiveSelectionRequest, session: AnalysisSession = Depends(get_session)):
    try:
        session.select(request.id)
    except KeyError:
        raise HTTPException(status_code=404, detail="记录不存在")
    return {"id": request.id}


@router.get("/notifications", response_model=List[Toast])
async def get_notifications(session: AnalysisSession = Depends(get_session)):
    return session.recent_toasts()


@router.post("/settings/api-key")
async def save_api_key(request: ApiKeyRequest, response: Response):
    api_key = request.api_key.strip()
    if not api_key:
        raise HTTPException(status_code=400, detail="API 密钥不能为空")
    set_llm_config(api_key=api_key)
    response.set_cookie(
        API_KEY_COOKIE_NAME,
        api_key,
        max_age=API_KEY_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
    )
    return {"status": "saved"}


@router.delete("/settings/api-key")
async def delete_api_key(response: Response):
    clear_llm_api_key()
    response.delete_cookie(API_KEY_COOKIE_NAME)
    return {"status": "deleted"}


@router.get("/llm-status", dependencies=[Depends(apply_api_key_cookie)])
async def llm_status():
    """检查大模型连接状态"""
    api_key, api_base, model = get_llm_config()
    if not api_key:
        return {
            "configured": False,
            "provider": "none",
            "message": "未配置大模型 API 密钥。请设置 API 密钥或在 .env 文件中设置 RTL_AUDIT_API_KEY",
        }

    base = api_base or getattr(get_multimodal_provider(MULTIMODAL_PROVIDER), "default_base_url", "")
    provider, provider_name = identify_provider(base)
    return {
        "configured": True,
        "provider": provider,
        "model": model,
        "message": provider_name,
    }
