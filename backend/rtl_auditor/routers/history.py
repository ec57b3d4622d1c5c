"""Screenshot ingestion, analysis lifecycle and overlay routes."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from sse_starlette.sse import EventSourceResponse

from rtl_auditor.config import API_KEY_COOKIE_NAME, MAX_FILE_SIZE, OVERLAY_STREAM_FPS, get_llm_config, set_llm_config
from rtl_auditor.models.schemas import (
    FindingView,
    HistoryItem,
    HistoryItemDetail,
    HistorySummary,
    PasteImageRequest,
    SubmitResponse,
)
from rtl_auditor.services.analysis_lifecycle import AnalysisSession, get_session
from rtl_auditor.services.annotation_renderer import AnnotationRenderer, RenderLoop, RenderResult, encode_png, load_image
from rtl_auditor.services.image_ingest import decode_data_url, normalize_image, select_upload
from rtl_auditor.services.rtl_analysis_client import is_frontend_defect

logger = logging.getLogger(__name__)


def apply_api_key_cookie(request: Request) -> None:
    """Re-read the stored credential so updates take effect on the next analysis."""
    cookie_key = (request.cookies.get(API_KEY_COOKIE_NAME) or "").strip()
    if cookie_key and cookie_key != get_llm_config()[0]:
        set_llm_config(api_key=cookie_key)


router = APIRouter(dependencies=[Depends(apply_api_key_cookie)])

UPLOAD_SOURCES = {"picker", "drop", "paste"}


def _get_item_or_404(session: AnalysisSession, item_id: str) -> HistoryItem:
    item = session.state.find(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="记录不存在")
    return item


def _submit_raw(session: AnalysisSession, raw: Optional[bytes]) -> SubmitResponse:
    image = normalize_image(raw) if raw else None
    if image is None:
        return SubmitResponse(status="ignored")
    item = session.submit(image)
    # Auto-analysis may already have moved it on.
    current = session.state.find(item.id) or item
    return SubmitResponse(status="created", item_id=item.id, item_status=current.status)


async def _read_limited(upload: UploadFile) -> bytes:
    """流式读取并检查大小"""
    max_size_bytes = MAX_FILE_SIZE * 1024 * 1024
    chunks: List[bytes] = []
    written = 0
    while True:
        chunk = await upload.read(1024 * 1024)  # 1MB
        if not chunk:
            break
        written += len(chunk)
        if written > max_size_bytes:
            raise HTTPException(status_code=413, detail=f"文件大小超过 {MAX_FILE_SIZE}MB 限制")
        chunks.append(chunk)
    return b"".join(chunks)


def _to_detail(session: AnalysisSession, item: HistoryItem) -> HistoryItemDetail:
    analysis = item.analysis
    findings: List[FindingView] = []
    if analysis is not None:
        findings = [
            FindingView(
                index=idx + 1,
                type=err.type,
                overview=err.overview,
                content=err.content,
                location=err.location,
                is_frontend_defect=is_frontend_defect(err),
            )
            for idx, err in enumerate(analysis.display_errors)
        ]
    return HistoryItemDetail(
        id=item.id,
        timestamp=item.timestamp,
        status=item.status,
        image=item.image,
        language=analysis.language if analysis else None,
        overall_summary=analysis.overall_summary if analysis else None,
        findings=findings,
        active=session.state.active_id == item.id,
    )


@router.get("", response_model=List[HistorySummary])
async def list_history(session: AnalysisSession = Depends(get_session)):
    state = session.state
    return [
        HistorySummary(
            id=item.id,
            timestamp=item.timestamp,
            status=item.status,
            summary=(item.analysis.overall_summary if item.analysis else "") or "无结果",
            error_count=len(item.analysis.display_errors) if item.analysis else 0,
            active=state.active_id == item.id,
        )
        for item in state.history
    ]


@router.post("/upload", response_model=SubmitResponse)
async def upload_screenshot(
    files: List[UploadFile] = File(...),
    source: str = Form("picker"),
    session: AnalysisSession = Depends(get_session),
):
    if source not in UPLOAD_SOURCES:
        raise HTTPException(status_code=400, detail="不支持的上传来源")

    candidates = []
    for upload in files:
        candidates.append((upload.content_type, await _read_limited(upload)))

    return _submit_raw(session, select_upload(candidates, source))


@router.post("/paste", response_model=SubmitResponse)
async def paste_screenshot(request: PasteImageRequest, session: AnalysisSession = Depends(get_session)):
    raw = decode_data_url(request.image)
    if raw is not None and len(raw) > MAX_FILE_SIZE * 1024 * 1024:
        raise HTTPException(status_code=413, detail=f"文件大小超过 {MAX_FILE_SIZE}MB 限制")
    return _submit_raw(session, raw)


@router.get("/{item_id}", response_model=HistoryItemDetail)
async def get_history_item(item_id: str, session: AnalysisSession = Depends(get_session)):
    return _to_detail(session, _get_item_or_404(session, item_id))


@router.post("/{item_id}/analyze", response_model=HistoryItemDetail)
async def analyze_item(
    item_id: str,
    wait: bool = Query(False, description="Wait for the analysis to finish"),
    session: AnalysisSession = Depends(get_session),
):
    _get_item_or_404(session, item_id)
    task = session.start_analysis(item_id)
    if wait:
        await task
    else:
        # Let the task take the in-flight guard before answering.
        await asyncio.sleep(0)
    return _to_detail(session, _get_item_or_404(session, item_id))


@router.delete("/{item_id}")
async def delete_item(item_id: str, session: AnalysisSession = Depends(get_session)):
    if not session.delete(item_id):
        raise HTTPException(status_code=404, detail="记录不存在")
    return {"status": "deleted"}


@router.delete("")
async def clear_history(session: AnalysisSession = Depends(get_session)):
    session.clear_all()
    return {"status": "cleared"}


async def _open_renderer(item: HistoryItem) -> AnnotationRenderer:
    try:
        image = await load_image(item.image)
    except (ValueError, OSError) as exc:
        logger.warning("Unreadable image for %s: %s", item.id, exc)
        raise HTTPException(status_code=500, detail="图片数据损坏") from exc
    annotations = item.analysis.display_errors if item.analysis else []
    return AnnotationRenderer(image, annotations)


@router.get("/{item_id}/overlay")
async def get_overlay(
    item_id: str,
    width: float = Query(960, gt=0, description="Container width in px"),
    viewport_height: float = Query(1000, gt=0, description="Viewport height in px"),
    active: Optional[int] = Query(None, ge=0, description="0-based finding to emphasize"),
    frame: int = Query(0, ge=0, description="Animation frame"),
    session: AnalysisSession = Depends(get_session),
):
    item = _get_item_or_404(session, item_id)
    renderer = await _open_renderer(item)
    renderer.resize(width, viewport_height)
    renderer.frame = frame
    result = renderer.render(active)
    return Response(content=encode_png(result.image), media_type="image/png")


@router.get("/{item_id}/overlay/stream")
async def stream_overlay(
    item_id: str,
    request: Request,
    width: float = Query(960, gt=0),
    viewport_height: float = Query(1000, gt=0),
    active: Optional[int] = Query(None, ge=0),
    fps: int = Query(OVERLAY_STREAM_FPS, ge=1, le=30),
    session: AnalysisSession = Depends(get_session),
):
    item = _get_item_or_404(session, item_id)
    renderer = await _open_renderer(item)
    renderer.resize(width, viewport_height)
    frames: "asyncio.Queue[RenderResult]" = asyncio.Queue(maxsize=1)

    def push(result: RenderResult) -> None:
        # Keep only the newest frame for slow consumers.
        if frames.full():
            frames.get_nowait()
        frames.put_nowait(result)

    async def event_generator():
        async with RenderLoop(renderer, push, fps=fps, active_index=active):
            while not await request.is_disconnected():
                result = await frames.get()
                encoded = base64.b64encode(encode_png(result.image)).decode("ascii")
                yield {
                    "event": "frame",
                    "data": json.dumps(
                        {
                            "frame": result.frame,
                            "width": result.image.width,
                            "height": result.image.height,
                            "image": f"data:image/png;base64,{encoded}",
                        }
                    ),
                }

    return EventSourceResponse(event_generator())
