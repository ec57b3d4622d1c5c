"""Per-item analysis lifecycle: pending -> processing -> completed | failed."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from rtl_auditor.config import AUTO_ANALYZE, TOAST_TTL_MS
from rtl_auditor.models.schemas import HistoryItem, Toast, ToastLevel
from rtl_auditor.services import audit_state
from rtl_auditor.services.audit_state import AuditState
from rtl_auditor.services.errors import AnalysisError, CredentialError
from rtl_auditor.services.history_store import HistoryStore
from rtl_auditor.services.rtl_analysis_client import RTLAnalysisClient, analysis_client

logger = logging.getLogger(__name__)

MAX_TOASTS = 20


def _now_ms() -> int:
    return int(time.time() * 1000)


class AnalysisSession:
    """
    Owns the audit state, the in-flight guard and the persistence mirror.

    Runs on a single event loop: the guard is checked and set without an
    ``await`` in between, so no lock is needed.
    """

    def __init__(
        self,
        store: HistoryStore,
        client: RTLAnalysisClient,
        *,
        auto_analyze: bool = AUTO_ANALYZE,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._client = client
        self._clock = clock
        self.auto_analyze = auto_analyze
        self._state = AuditState(history=tuple(store.load()))
        self._processing: Set[str] = set()
        # One live task per item; queued tasks count as claimed.
        self._tasks: Dict[str, asyncio.Task] = {}
        self._toasts: Deque[Toast] = deque(maxlen=MAX_TOASTS)

    @property
    def state(self) -> AuditState:
        return self._state

    @property
    def processing_ids(self) -> Set[str]:
        return set(self._processing)

    def _commit(self, new_state: AuditState) -> None:
        if new_state is self._state:
            return
        history_changed = new_state.history != self._state.history
        self._state = new_state
        if history_changed:
            self._store.save(new_state.history)
            if self.auto_analyze:
                self._schedule_pending()

    def _schedule_pending(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        for item_id in self._state.pending_ids():
            self._spawn(item_id)

    def _spawn(self, item_id: str) -> asyncio.Task:
        existing = self._tasks.get(item_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self.run_analysis(item_id), name=f"rtl-analysis-{item_id}")
        self._tasks[item_id] = task
        task.add_done_callback(lambda done: self._release_task(item_id, done))
        return task

    def _release_task(self, item_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(item_id) is task:
            del self._tasks[item_id]

    def _notify(
        self,
        message: str,
        level: ToastLevel = "info",
        *,
        item_id: Optional[str] = None,
        needs_credential: bool = False,
    ) -> None:
        self._toasts.append(
            Toast(
                message=message,
                level=level,
                item_id=item_id,
                needs_credential=needs_credential,
                created_at=self._clock(),
            )
        )

    def recent_toasts(self) -> List[Toast]:
        cutoff = self._clock() - TOAST_TTL_MS
        return [toast for toast in self._toasts if toast.created_at >= cutoff]

    def submit(self, image: str) -> HistoryItem:
        new_state, item = audit_state.submit(self._state, image, self._clock())
        self._commit(new_state)
        logger.info("Submitted screenshot %s", item.id)
        return item

    def resume_pending(self) -> None:
        """Schedule items loaded as pending (called once the loop is running)."""
        if self.auto_analyze:
            self._schedule_pending()

    async def run_analysis(self, item_id: str) -> Optional[HistoryItem]:
        if item_id in self._processing:
            return self._state.find(item_id)
        target = self._state.find(item_id)
        if target is None or target.status == "completed":
            return target

        self._processing.add(item_id)
        try:
            self._commit(audit_state.mark_processing(self._state, item_id))
            try:
                result = await self._client.analyze(target.image)
            except AnalysisError as exc:
                logger.warning("Analysis of %s failed: %s", item_id, exc)
                self._commit(audit_state.mark_failed(self._state, item_id))
                self._notify(
                    exc.user_message,
                    "error",
                    item_id=item_id,
                    needs_credential=isinstance(exc, CredentialError),
                )
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error while analyzing %s", item_id)
                self._commit(audit_state.mark_failed(self._state, item_id))
                self._notify(AnalysisError.user_message, "error", item_id=item_id)
            else:
                self._commit(audit_state.mark_completed(self._state, item_id, result))
                logger.info("Analysis of %s completed with %d findings", item_id, len(result.display_errors))
                if self._state.active_id == item_id:
                    self._notify("审计分析完成", "success", item_id=item_id)
        finally:
            self._processing.discard(item_id)
        return self._state.find(item_id)

    def start_analysis(self, item_id: str) -> asyncio.Task:
        """Explicit start or retry; runs in the background."""
        return self._spawn(item_id)

    def delete(self, item_id: str) -> bool:
        new_state = audit_state.delete(self._state, item_id)
        removed = new_state is not self._state
        self._commit(new_state)
        return removed

    def clear_all(self) -> None:
        self._commit(audit_state.clear_all(self._state))

    def select(self, item_id: Optional[str]) -> None:
        self._commit(audit_state.select(self._state, item_id))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight analyses, including ones they schedule."""
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks.values()), timeout=timeout)
            if pending:
                logger.warning("%d analyses still running after %.1fs", len(pending), timeout or 0)
                return


_session: Optional[AnalysisSession] = None


def get_session() -> AnalysisSession:
    global _session
    if _session is None:
        _session = AnalysisSession(HistoryStore(), analysis_client)
    return _session
