"""Usage records and the daily aggregates derived from them.

Both stores are plain files: an append-only JSON-lines log of
``QueryUsageRecord`` and a JSON document of daily metrics keyed by date
then metric type. Metric upserts are last-write-wins and replace the
file atomically.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, Protocol

import structlog

from .errors import RecordingError
from .models import QueryUsageRecord

log = structlog.get_logger()


class QueryRecorder(Protocol):
    def record(self, record: QueryUsageRecord) -> None: ...


class UsageMetrics(Protocol):
    def refresh_usage_metrics(self, day: date | None = None) -> dict[str, float]: ...


class JsonlQueryRecorder:
    """Append-only JSON-lines log of query usage."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, record: QueryUsageRecord) -> None:
        line = record.model_dump_json() + "\n"
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
        except OSError as exc:
            raise RecordingError(f"Could not write usage record: {exc}") from exc
        log.debug("usage_recorded", path=str(self._path), model=record.model_id)

    def iter_records(self, day: date | None = None) -> Iterator[QueryUsageRecord]:
        records, _ = self.read_from(0)
        for record in records:
            if day is None or record.created_at.date() == day:
                yield record

    def read_from(self, offset: int) -> tuple[list[QueryUsageRecord], int]:
        """Records from complete lines at or after byte ``offset``.

        Returns the records and the offset just past the last complete
        line, so a partially written trailing line is picked up next time.
        """
        if not self._path.exists():
            return [], 0
        records: list[QueryUsageRecord] = []
        with self._path.open("rb") as fh:
            if offset > self._path.stat().st_size:
                log.warning("usage_log_truncated", path=str(self._path), offset=offset)
                offset = 0
            fh.seek(offset)
            for raw in fh:
                if not raw.endswith(b"\n"):
                    break
                offset += len(raw)
                line = raw.decode("utf-8", errors="replace")
                if not line.strip():
                    continue
                try:
                    records.append(QueryUsageRecord.model_validate_json(line))
                except ValueError:
                    log.warning("usage_record_unreadable", path=str(self._path), offset=offset)
        return records, offset


class UsageMetricsAggregator:
    """Keeps running per-day totals over the usage log and upserts one day at a time.

    Each refresh reads only the log lines appended since the previous one.
    """

    def __init__(self, usage_log: JsonlQueryRecorder, path: Path) -> None:
        self._usage_log = usage_log
        self._path = path
        self._lock = threading.Lock()
        self._offset = 0
        self._daily: dict[date, dict[str, float]] = {}

    def load(self) -> dict[str, dict[str, float]]:
        if not self._path.exists():
            return {}
        return json.loads(self._path.read_text(encoding="utf-8"))

    def _catch_up(self) -> None:
        records, offset = self._usage_log.read_from(self._offset)
        if offset < self._offset:
            self._daily.clear()
        self._offset = offset
        for r in records:
            totals = self._daily.setdefault(
                r.created_at.date(), {"tokens": 0.0, "cost": 0.0, "queries": 0.0}
            )
            totals["tokens"] += r.total_tokens
            totals["cost"] += r.cost()
            totals["queries"] += 1

    def refresh_usage_metrics(self, day: date | None = None) -> dict[str, float]:
        day = day or datetime.now(timezone.utc).date()
        try:
            with self._lock:
                self._catch_up()
                totals = self._daily.get(day, {})
                metrics = {
                    "daily_tokens": float(totals.get("tokens", 0.0)),
                    "daily_cost": round(totals.get("cost", 0.0), 6),
                    "daily_queries": float(totals.get("queries", 0.0)),
                }
                data = self.load()
                data.setdefault(day.isoformat(), {}).update(metrics)
                self._write(data)
        except (OSError, ValueError) as exc:
            raise RecordingError(f"Could not update usage metrics: {exc}") from exc

        log.info("usage_metrics_refreshed", day=day.isoformat(), **metrics)
        return metrics

    def _write(self, data: dict[str, dict[str, float]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
