"""Application state for the audit history and pure update functions over it."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from rtl_auditor.models.schemas import AnalysisResult, AnalysisStatus, HistoryItem


@dataclass(frozen=True)
class AuditState:
    """Ordered history (newest first) and the active selection."""

    history: Tuple[HistoryItem, ...] = ()
    active_id: Optional[str] = None

    def find(self, item_id: str) -> Optional[HistoryItem]:
        return next((item for item in self.history if item.id == item_id), None)

    @property
    def active_item(self) -> Optional[HistoryItem]:
        if self.active_id is None:
            return None
        return self.find(self.active_id)

    def pending_ids(self) -> List[str]:
        return [item.id for item in self.history if item.status == "pending"]


def next_item_id(state: AuditState, now_ms: int) -> str:
    candidate = int(now_ms)
    existing = {item.id for item in state.history}
    while str(candidate) in existing:
        candidate += 1
    return str(candidate)


def submit(state: AuditState, image: str, now_ms: int) -> Tuple[AuditState, HistoryItem]:
    item = HistoryItem(id=next_item_id(state, now_ms), timestamp=int(now_ms), image=image, status="pending")
    return AuditState(history=(item,) + state.history, active_id=item.id), item


def _update_item(state: AuditState, item_id: str, **changes) -> AuditState:
    if state.find(item_id) is None:
        # The item was deleted while its analysis was in flight.
        return state
    history = tuple(item.model_copy(update=changes) if item.id == item_id else item for item in state.history)
    return replace(state, history=history)


def set_status(
    state: AuditState,
    item_id: str,
    status: AnalysisStatus,
    analysis: Optional[AnalysisResult] = None,
) -> AuditState:
    changes = {"status": status}
    if analysis is not None:
        changes["analysis"] = analysis
    return _update_item(state, item_id, **changes)


def mark_processing(state: AuditState, item_id: str) -> AuditState:
    return set_status(state, item_id, "processing")


def mark_completed(state: AuditState, item_id: str, result: AnalysisResult) -> AuditState:
    return set_status(state, item_id, "completed", result)


def mark_failed(state: AuditState, item_id: str) -> AuditState:
    return set_status(state, item_id, "failed")


def delete(state: AuditState, item_id: str) -> AuditState:
    history = tuple(item for item in state.history if item.id != item_id)
    if len(history) == len(state.history):
        return state
    active_id = None if state.active_id == item_id else state.active_id
    return AuditState(history=history, active_id=active_id)


def clear_all(state: AuditState) -> AuditState:
    return AuditState()


def select(state: AuditState, item_id: Optional[str]) -> AuditState:
    if item_id is not None and state.find(item_id) is None:
        raise KeyError(item_id)
    return replace(state, active_id=item_id)
