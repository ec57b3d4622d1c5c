"""
Pydantic data models.
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorType(str, Enum):
    """Finding category reported by the model."""

    FRONTEND = "前端实现错误"
    GRAMMAR = "语法/语言错误"
    OPTIMIZATION = "优化建议"


RTL_LANGUAGES = ("阿拉伯语", "波斯语")
RTLLanguage = Literal["阿拉伯语", "波斯语"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed"]
ToastLevel = Literal["info", "error", "success"]


class BoundingBox(BaseModel):
    """Box in the normalized 0-1000 space, independent of pixel size."""

    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=0, le=1000, description="Left x")
    y: float = Field(..., ge=0, le=1000, description="Top y")
    width: float = Field(..., ge=0, le=1000, description="Width")
    height: float = Field(..., ge=0, le=1000, description="Height")


class DisplayError(BaseModel):
    """One finding tied to a region of the screenshot."""

    model_config = ConfigDict(frozen=True)

    type: ErrorType
    overview: str = Field("", description="问题概述")
    content: str = Field("", description="具体内容")
    location: Optional[BoundingBox] = None


class AnalysisResult(BaseModel):
    """Structured audit returned by the remote model."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    language: RTLLanguage
    overall_summary: str = Field("", alias="overallSummary")
    display_errors: List[DisplayError] = Field(default_factory=list, alias="displayErrors")


class HistoryItem(BaseModel):
    """One submitted screenshot and its analysis lifecycle."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: int = Field(..., description="Epoch milliseconds")
    image: str = Field(..., description="JPEG data URL")
    analysis: Optional[AnalysisResult] = None
    status: AnalysisStatus = "pending"


class Toast(BaseModel):
    """User-facing notification."""

    message: str
    level: ToastLevel = "info"
    item_id: Optional[str] = None
    needs_credential: bool = False
    created_at: int = Field(..., description="Epoch milliseconds")


class PasteImageRequest(BaseModel):
    """Clipboard paste or raw data URL submission."""

    image: str


class SubmitResponse(BaseModel):
    """Image ingestion response."""

    status: Literal["created", "ignored"]
    item_id: Optional[str] = None
    item_status: Optional[AnalysisStatus] = None


class HistorySummary(BaseModel):
    """History browser entry."""

    id: str
    timestamp: int
    status: AnalysisStatus
    summary: str
    error_count: int = 0
    active: bool = False


class FindingView(BaseModel):
    """Details panel entry."""

    index: int = Field(..., description="1-based index shown on the overlay")
    type: ErrorType
    overview: str
    content: str
    location: Optional[BoundingBox] = None
    is_frontend_defect: bool = False


class HistoryItemDetail(BaseModel):
    """Full history item with its findings."""

    id: str
    timestamp: int
    status: AnalysisStatus
    image: str
    language: Optional[str] = None
    overall_summary: Optional[str] = None
    findings: List[FindingView] = Field(default_factory=list)
    active: bool = False


class ActiveSelectionRequest(BaseModel):
    """Active item selection; null starts a new analysis."""

    id: Optional[str] = None


class ApiKeyRequest(BaseModel):
    """API key entry."""

    api_key: str
