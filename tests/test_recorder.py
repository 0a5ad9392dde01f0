import json
from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest

from src.kbqa.errors import RecordingError
from src.kbqa.models import QueryUsageRecord
from src.kbqa.recorder import JsonlQueryRecorder, UsageMetricsAggregator


def _record(day=date(2025, 12, 3), input_tokens=50, output_tokens=100, model="anthropic.claude-3-haiku-20240307-v1:0"):
    return QueryUsageRecord(
        model_id=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        user_query="What is S3?",
        latency_ms=120,
        created_at=datetime(day.year, day.month, day.day, 12, 0, tzinfo=timezone.utc),
    )


class TestJsonlQueryRecorder:
    def test_record_and_read_back(self, tmp_path):
        recorder = JsonlQueryRecorder(tmp_path / "nested" / "usage.jsonl")
        recorder.record(_record())
        recorder.record(_record(day=date(2025, 12, 4)))

        records = list(recorder.iter_records())
        assert len(records) == 2
        assert records[0].input_tokens == 50
        assert len(list(recorder.iter_records(date(2025, 12, 4)))) == 1

    def test_missing_file_yields_nothing(self, tmp_path):
        assert list(JsonlQueryRecorder(tmp_path / "none.jsonl").iter_records()) == []

    def test_skips_corrupt_lines(self, tmp_path):
        path = tmp_path / "usage.jsonl"
        recorder = JsonlQueryRecorder(path)
        recorder.record(_record())
        with path.open("a", encoding="utf-8") as fh:
            fh.write("{not json\n\n")
        assert len(list(recorder.iter_records())) == 1

    def test_write_failure_raises_recording_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        recorder = JsonlQueryRecorder(blocker / "usage.jsonl")
        with pytest.raises(RecordingError):
            recorder.record(_record())


class TestUsageMetricsAggregator:
    def test_refresh_computes_daily_totals(self, tmp_path):
        recorder = JsonlQueryRecorder(tmp_path / "usage.jsonl")
        recorder.record(_record(input_tokens=1000, output_tokens=1000))
        recorder.record(_record(input_tokens=2000, output_tokens=0))
        recorder.record(_record(day=date(2025, 12, 4)))
        aggregator = UsageMetricsAggregator(recorder, tmp_path / "metrics.json")

        metrics = aggregator.refresh_usage_metrics(date(2025, 12, 3))

        assert metrics["daily_tokens"] == 4000
        assert metrics["daily_queries"] == 2
        # haiku: 3000 input * 0.00025/1k + 1000 output * 0.00125/1k
        assert metrics["daily_cost"] == pytest.approx(0.002)
        stored = json.loads((tmp_path / "metrics.json").read_text())
        assert stored["2025-12-03"]["daily_queries"] == 2

    def test_refresh_is_upsert(self, tmp_path):
        recorder = JsonlQueryRecorder(tmp_path / "usage.jsonl")
        aggregator = UsageMetricsAggregator(recorder, tmp_path / "metrics.json")
        day = date(2025, 12, 3)

        recorder.record(_record())
        aggregator.refresh_usage_metrics(day)
        recorder.record(_record())
        aggregator.refresh_usage_metrics(day)
        aggregator.refresh_usage_metrics(date(2025, 12, 5))

        stored = aggregator.load()
        assert stored["2025-12-03"]["daily_queries"] == 2
        assert stored["2025-12-05"]["daily_queries"] == 0
        assert sorted(stored) == ["2025-12-03", "2025-12-05"]

    def test_refresh_reads_only_new_lines(self, tmp_path):
        recorder = JsonlQueryRecorder(tmp_path / "usage.jsonl")
        aggregator = UsageMetricsAggregator(recorder, tmp_path / "metrics.json")
        day = date(2025, 12, 3)

        recorder.record(_record())
        aggregator.refresh_usage_metrics(day)
        first_size = recorder.path.stat().st_size
        recorder.record(_record())

        with patch.object(recorder, "read_from", wraps=recorder.read_from) as read_from:
            metrics = aggregator.refresh_usage_metrics(day)

        read_from.assert_called_once_with(first_size)
        assert metrics["daily_queries"] == 2
        assert metrics["daily_tokens"] == 300

    def test_partial_trailing_line_counted_once_complete(self, tmp_path):
        path = tmp_path / "usage.jsonl"
        recorder = JsonlQueryRecorder(path)
        aggregator = UsageMetricsAggregator(recorder, tmp_path / "metrics.json")
        line = _record().model_dump_json()
        path.write_text(line[:20], encoding="utf-8")

        assert aggregator.refresh_usage_metrics(date(2025, 12, 3))["daily_queries"] == 0

        path.write_text(line + "\n", encoding="utf-8")
        assert aggregator.refresh_usage_metrics(date(2025, 12, 3))["daily_queries"] == 1

    def test_truncated_log_recounts(self, tmp_path):
        recorder = JsonlQueryRecorder(tmp_path / "usage.jsonl")
        aggregator = UsageMetricsAggregator(recorder, tmp_path / "metrics.json")
        day = date(2025, 12, 3)
        recorder.record(_record())
        recorder.record(_record())
        aggregator.refresh_usage_metrics(day)

        recorder.path.unlink()
        recorder.record(_record())

        assert aggregator.refresh_usage_metrics(day)["daily_queries"] == 1
