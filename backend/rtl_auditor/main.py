"""FastAPI entrypoint for the RTL layout auditor."""

from contextlib import asynccontextmanager
import io
import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rtl_auditor.config import CORS_ALLOW_CREDENTIALS, CORS_ORIGINS, LOG_LEVEL

# Force UTF-8 stdout/stderr on Windows terminals.
if sys.platform == 'win32':
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8')
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8')

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

from rtl_auditor.routers import history, session  # noqa: E402
from rtl_auditor.services.analysis_lifecycle import get_session  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    audit_session = get_session()
    logger.info("Loaded %d history items", len(audit_session.state.history))
    audit_session.resume_pending()

    yield

    try:
        await audit_session.drain(timeout=5)
    except Exception as exc:
        logger.warning("Failed to drain running analyses: %s", exc)


app = FastAPI(
    title="RTL 布局合规性审计引擎",
    description="上传 RTL 界面截图，由多模态大模型审计排版对齐问题并标注结果",
    version="0.2.6",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(history.router, prefix="/api/history", tags=["history"])
app.include_router(session.router, prefix="/api", tags=["session"])


@app.get("/")
async def root():
    return {"status": "ok", "version": "0.2.6"}


@app.get("/api/health")
async def health():
    return {"status": "healthy"}


def run() -> None:
    import uvicorn

    uvicorn.run("rtl_auditor.main:app", host="0.0.0.0", port=8000)
