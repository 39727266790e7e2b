from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_FIXTURE_DIR = Path(__file__).resolve().parents[1] / "data" / "fixtures"


class FixtureStore:
    """Raw upstream payloads on disk, one JSON file per provider path."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root else DEFAULT_FIXTURE_DIR
        self._lock = threading.Lock()

    def path_for(self, provider: str, path: str) -> Path:
        return self.root / self._slugify(provider) / f"{self._slugify(path)}.json"

    def save(self, provider: str, path: str, payload: Any) -> Path:
        target = self.path_for(provider, path)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
        logger.info(f"[FIXTURE] saved {provider}:{path} -> {target}")
        return target

    def load(self, provider: str, path: str) -> Optional[Any]:
        target = self.path_for(provider, path)
        if not target.exists():
            return None
        with target.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def exists(self, provider: str, path: str) -> bool:
        return self.path_for(provider, path).exists()

    @staticmethod
    def _slugify(value: str) -> str:
        cleaned = "".join(ch.lower() if ch.isalnum() else "_" for ch in value.strip())
        return cleaned.strip("_")
