from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Callable

from loguru import logger

from deepsearch.tools.web_utils import canonical_url

CACHE_VERSION = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CrawlCache:
    """TTL cache of extracted pages keyed by canonical URL.

    Entries always live in-process; when ``persist_dir`` is set they are also
    written as JSON files so a restarted worker can reuse them. Concurrent
    writers for one key simply overwrite each other.
    """

    def __init__(
        self,
        *,
        ttl_hours: int = 24,
        persist_dir: str | Path | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.ttl = timedelta(hours=max(int(ttl_hours), 0))
        self.persist_dir = Path(persist_dir) if persist_dir else None
        self._clock = clock
        self._entries: dict[str, tuple[datetime, dict[str, Any]]] = {}

    def _path(self, key: str) -> Path:
        assert self.persist_dir is not None
        digest = sha256(f"v{CACHE_VERSION}|{key}".encode("utf-8")).hexdigest()
        return self.persist_dir / f"{digest}.json"

    def _expired(self, stored_at: datetime) -> bool:
        if not self.ttl:
            return True
        return self._clock() > stored_at + self.ttl

    def get(self, url: str) -> dict[str, Any] | None:
        key = canonical_url(url)
        entry = self._entries.get(key)
        if entry is None and self.persist_dir is not None:
            entry = self._load_from_disk(key)
            if entry is not None:
                self._entries[key] = entry
        if entry is None:
            return None

        stored_at, data = entry
        if self._expired(stored_at):
            self._entries.pop(key, None)
            return None
        return dict(data)

    def set(self, url: str, data: dict[str, Any]) -> None:
        if not self.ttl:
            return
        key = canonical_url(url)
        stored_at = self._clock()
        self._entries[key] = (stored_at, dict(data))
        if self.persist_dir is not None:
            self._save_to_disk(key, stored_at, data)

    def _load_from_disk(self, key: str) -> tuple[datetime, dict[str, Any]] | None:
        path = self._path(key)
        if not path.exists():
            return None

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            fetched_at = datetime.fromisoformat(payload["fetched_at"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)

        data = payload.get("data")
        if not isinstance(data, dict) or not str(data.get("markdown") or "").strip():
            return None
        return fetched_at, data

    def _save_to_disk(self, key: str, stored_at: datetime, data: dict[str, Any]) -> None:
        path = self._path(key)
        payload = {
            "version": CACHE_VERSION,
            "url": key,
            "fetched_at": stored_at.isoformat(),
            "data": data,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Failed to persist crawl cache entry for {key}: {exc}")
