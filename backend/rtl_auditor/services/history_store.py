"""
Local persistence for the audit history.

The whole history is one JSON array stored under a fixed key:
  doc_store/
    rtl_audit_history.json
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable, List

from pydantic import ValidationError

from rtl_auditor.config import HISTORY_STORAGE_KEY, HISTORY_STORE_DIR
from rtl_auditor.models.schemas import HistoryItem

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    payload = json.dumps(data, ensure_ascii=False)
    tmp_path.write_text(payload, encoding="utf-8")
    os.replace(str(tmp_path), str(path))


def normalize_loaded_items(items: Iterable[HistoryItem]) -> List[HistoryItem]:
    """No analysis survives a restart: reset ``processing`` back to ``pending``."""
    return [
        item.model_copy(update={"status": "pending"}) if item.status == "processing" else item
        for item in items
    ]


class HistoryStore:
    def __init__(self, base_dir: str = HISTORY_STORE_DIR, key: str = HISTORY_STORAGE_KEY):
        self.base_dir = Path(base_dir)
        self.path = self.base_dir / f"{key}.json"
        self._lock = threading.RLock()

    def load(self) -> List[HistoryItem]:
        with self._lock:
            if not self.path.exists():
                return []
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                # Corrupt history: keep a backup and start fresh.
                backup = self.path.with_suffix(".corrupt.json")
                logger.warning("History file %s is unreadable, moved to %s", self.path, backup)
                try:
                    os.replace(str(self.path), str(backup))
                except OSError:
                    logger.exception("Failed to back up corrupt history file")
                return []

        if not isinstance(raw, list):
            logger.warning("History file %s does not hold an array, ignoring it", self.path)
            return []

        items: List[HistoryItem] = []
        for record in raw:
            try:
                items.append(HistoryItem.model_validate(record))
            except ValidationError as exc:
                logger.warning("Skipping invalid history record: %s", exc.errors()[:1])
        return normalize_loaded_items(items)

    def save(self, items: Iterable[HistoryItem]) -> None:
        data = [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items]
        with self._lock:
            _atomic_write_json(self.path, data)
