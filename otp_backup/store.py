"""Local item store seen from the backup subsystem."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Protocol

LOGGER = logging.getLogger(__name__)


class ItemStoreError(Exception):
    """Raised when the local item file cannot be read or written."""


class ItemStore(Protocol):
    def get_active_items(self) -> List[Dict]:
        ...

    def get_deleted_items(self) -> List[Dict]:
        ...

    def apply_restored(self, payload: Dict) -> None:
        ...


@dataclass
class JsonItemStore:
    """Items kept in a JSON file ``{"activeItems": [...], "deletedItems": [...]}``."""

    path: Path

    def _load(self) -> Dict:
        path = Path(self.path)
        if not path.exists():
            return {"activeItems": [], "deletedItems": []}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ItemStoreError(f"Item file '{path}' is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ItemStoreError(f"Item file '{path}' must contain a JSON object.")
        return data

    def get_active_items(self) -> List[Dict]:
        return list(self._load().get("activeItems") or [])

    def get_deleted_items(self) -> List[Dict]:
        return list(self._load().get("deletedItems") or [])

    def snapshot(self) -> Dict[str, List[Dict]]:
        data = self._load()
        return {
            "activeItems": list(data.get("activeItems") or []),
            "deletedItems": list(data.get("deletedItems") or []),
        }

    def apply_restored(self, payload: Dict) -> None:
        path = Path(self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "activeItems": list(payload.get("activeItems") or []),
            "deletedItems": list(payload.get("deletedItems") or []),
        }
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        LOGGER.info(
            "Restored %d active and %d deleted items into '%s'.",
            len(data["activeItems"]),
            len(data["deletedItems"]),
            path,
        )


__all__ = ["ItemStore", "ItemStoreError", "JsonItemStore"]
