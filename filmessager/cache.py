"""On-disk cache of recently processed tipsets."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from .models import TipSet

MAX_STORE_TIPSET_COUNT = 900


class TipsetCache:
    """Tipsets keyed by height, plus the current height and network name."""

    def __init__(self) -> None:
        self.cache: dict[int, TipSet] = {}
        self.curr_height: int = 0
        self.network_name: str = ""
        self._lock = threading.Lock()

    def load(self, path: str | Path) -> None:
        """Replace the contents with those stored at *path*; a missing file is ignored."""
        try:
            raw = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        data: dict[str, Any] = json.loads(raw)
        cache = {int(height): TipSet.from_dict(ts) for height, ts in (data.get("Cache") or {}).items()}
        with self._lock:
            self.cache = cache
            self.curr_height = int(data.get("CurrHeight", 0))
            self.network_name = str(data.get("NetworkName", ""))

    def add(self, *args: TipSet) -> None:
        """Store tipsets by their height, replacing any at the same height."""
        with self._lock:
            for ts in args:
                self.cache[ts.height] = ts

    def _reduce(self) -> None:
        if len(self.cache) < MAX_STORE_TIPSET_COUNT:
            return
        min_height = self.curr_height - MAX_STORE_TIPSET_COUNT
        self.cache = {height: ts for height, ts in self.cache.items() if ts.height >= min_height}

    def list(self) -> list[TipSet]:
        """All cached tipsets, in no particular order."""
        with self._lock:
            return list(self.cache.values())

    def save(self, path: str | Path) -> None:
        """Drop tipsets too far below the current height and write the rest to *path*."""
        with self._lock:
            self._reduce()
            data = {
                "Cache": {str(height): ts.to_dict() for height, ts in self.cache.items()},
                "CurrHeight": self.curr_height,
                "NetworkName": self.network_name,
            }
        Path(path).write_text(json.dumps(data, indent=2), encoding="utf-8")