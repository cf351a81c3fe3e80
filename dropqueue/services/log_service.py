"""Event log for queue and upload activity.

Each event is one JSON object per line in a daily file under a hive-style
partition: logs/json/year=YYYY/month=MM/day=DD/events.jsonl
"""

import json
import logging
import re
import threading
from collections import Counter
from collections.abc import Iterator
from datetime import UTC, datetime
from functools import partialmethod
from pathlib import Path
from typing import Any

from dropqueue.config import get_settings

logger = logging.getLogger(__name__)

EVENTS_FILENAME = "events.jsonl"
_HIVE_DATE = re.compile(r"year=(\d{4})/month=(\d{2})/day=(\d{2})")


def _matches(
    entry: dict[str, Any],
    level: str | None,
    category: str | None,
    search: str | None,
) -> bool:
    if level and str(entry.get("level", "")).upper() != level.upper():
        return False
    if category and entry.get("category") != category:
        return False
    if search:
        text = f"{entry.get('message', '')} {entry.get('event', '')}".lower()
        return search.lower() in text
    return True


class LogService:
    """Appends events to the day's JSONL file and answers queries over them."""

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    @property
    def root(self) -> Path:
        """Configured log directory (created on access)."""
        path = get_settings().log_directory
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _get_hive_dir(self, dt: datetime) -> Path:
        partition = self.root / "json" / f"year={dt:%Y}" / f"month={dt:%m}" / f"day={dt:%d}"
        partition.mkdir(parents=True, exist_ok=True)
        return partition

    @staticmethod
    def _extract_date_from_hive_path(path: Path) -> str | None:
        """YYYY-MM-DD of a partitioned file, or None for any other path."""
        found = _HIVE_DATE.search(path.as_posix())
        return "-".join(found.groups()) if found else None

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record one event.

        Args:
            level: INFO, WARNING or ERROR (case-insensitive)
            category: app, queue, upload, files or settings
            event: snake_case event name
            message: Human-readable summary
            metadata: Extra fields; values that are not JSON types are stringified
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata
        line = json.dumps(entry, default=str) + "\n"

        try:
            with self._write_lock:
                target = self._get_hive_dir(now) / EVENTS_FILENAME
                with target.open("a", encoding="utf-8") as f:
                    f.write(line)
        except OSError:
            logger.warning("Could not record event %s", event, exc_info=True)

    info = partialmethod(log, "INFO")
    warning = partialmethod(log, "WARNING")
    error = partialmethod(log, "ERROR")

    def _event_files(self) -> list[Path]:
        """Daily event files, newest partition first."""
        return sorted((self.root / "json").rglob(EVENTS_FILENAME), reverse=True)

    @staticmethod
    def _iter_entries(path: Path) -> Iterator[dict[str, Any]]:
        # Blank and corrupt lines are skipped.
        try:
            with path.open(encoding="utf-8") as f:
                for raw in f:
                    if not raw.strip():
                        continue
                    try:
                        yield json.loads(raw)
                    except json.JSONDecodeError:
                        continue
        except OSError:
            return

    def list_log_files(self) -> list[dict[str, Any]]:
        """Describe every daily event file, newest first."""
        root = self.root
        return [
            {
                "date": self._extract_date_from_hive_path(path),
                "filename": path.name,
                "relative_path": path.relative_to(root).as_posix(),
                "size_bytes": path.stat().st_size,
            }
            for path in self._event_files()
        ]

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Query events, newest first.

        Args:
            date: Only this day (YYYY-MM-DD)
            level: Only this level
            category: Only this category
            search: Case-insensitive substring of message or event name
            offset: Entries to skip
            limit: Page size

        Returns:
            Dict with the page of entries, total matches, offset and limit
        """
        paths = self._event_files()
        if date:
            paths = [p for p in paths if self._extract_date_from_hive_path(p) == date]

        matches = [
            entry
            for path in paths
            for entry in self._iter_entries(path)
            if _matches(entry, level, category, search)
        ]
        matches.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

        return {
            "entries": matches[offset : offset + limit],
            "total": len(matches),
            "offset": offset,
            "limit": limit,
        }

    def get_log_stats(self) -> dict[str, Any]:
        """Entry counts per level and category, total size and covered days."""
        paths = self._event_files()
        levels: Counter[str] = Counter()
        categories: Counter[str] = Counter()
        for path in paths:
            for entry in self._iter_entries(path):
                levels[entry.get("level", "UNKNOWN")] += 1
                categories[entry.get("category", "unknown")] += 1

        days = sorted(filter(None, map(self._extract_date_from_hive_path, paths)))
        return {
            "total_entries": sum(levels.values()),
            "total_size_bytes": sum(p.stat().st_size for p in paths),
            "level_counts": dict(levels),
            "category_counts": dict(categories),
            "date_range": {
                "earliest": days[0] if days else None,
                "latest": days[-1] if days else None,
            },
            "file_count": len(paths),
        }


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Process-wide LogService."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
