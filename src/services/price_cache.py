from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    stored_at: datetime
    tag: str


class PriceCache(Protocol):
    def write(self, entry: CacheEntry) -> None: ...

    def read(self, key: str) -> CacheEntry | None: ...

    def clear(self) -> None: ...

    def keys(self) -> list[str]: ...


class InMemoryPriceCache(PriceCache):
    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def write(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry

    def read(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


class JsonlPriceCache(PriceCache):
    """Cache that survives restarts: one JSONL file per cache key, rewritten on every write."""

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir
        self._lock = threading.Lock()

    def write(self, entry: CacheEntry) -> None:
        path = self._file_path(entry.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        record = {
            "key": entry.key,
            "stored_at": entry.stored_at.isoformat(),
            "tag": entry.tag,
            "payload": entry.payload,
        }
        with self._lock:
            # Keep the latest line of each key only; other keys can share a sanitized file name.
            lines = [line for line in self._read_lines(path) if json.loads(line).get("key") != entry.key]
            lines.append(json.dumps(record))
            tmp_path = path.with_name(f"{path.name}.tmp")
            tmp_path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
            tmp_path.replace(path)

    def read(self, key: str) -> CacheEntry | None:
        latest: dict[str, Any] | None = None
        with self._lock:
            for line in self._read_lines(self._file_path(key)):
                record = json.loads(line)
                # Sanitized file names may collide; only trust the exact key.
                if record.get("key") == key:
                    latest = record

        if latest is None:
            return None
        return CacheEntry(
            key=latest["key"],
            payload=latest["payload"],
            stored_at=datetime.fromisoformat(latest["stored_at"]),
            tag=latest["tag"],
        )

    def clear(self) -> None:
        with self._lock:
            for path in self._cache_dir().glob("*.jsonl"):
                path.unlink()

    def keys(self) -> list[str]:
        found: set[str] = set()
        with self._lock:
            for path in self._cache_dir().glob("*.jsonl"):
                found.update(json.loads(line)["key"] for line in self._read_lines(path))
        return sorted(found)

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [line.strip() for line in handle if line.strip()]

    def _cache_dir(self) -> Path:
        return self.root_dir / "market_data"

    def _file_path(self, key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]+", "_", key)
        return self._cache_dir() / f"{safe_key}.jsonl"


__all__ = ["CacheEntry", "InMemoryPriceCache", "JsonlPriceCache", "PriceCache"]
