"""Tests for the in-process progress tracker."""

import threading

import pytest
from pydantic import ValidationError

from magpie.progress.tracker import ProgressTracker
from magpie.schemas.email import RunState
from magpie.schemas.progress import ProgressRecord


class TestProgressTracker:
    def test_unknown_session_gets_default(self):
        record = ProgressTracker().get("nope")
        assert record.session_id == "nope"
        assert record.processed == 0
        assert record.state == RunState.PENDING
        assert record.is_complete is False

    def test_update_and_get(self):
        tracker = ProgressTracker()
        tracker.update("s1", ProgressRecord(total_emails=10, processed=3))

        record = tracker.get("s1")
        assert record.session_id == "s1"
        assert record.total_emails == 10
        assert record.processed == 3

    def test_update_accepts_dict(self):
        tracker = ProgressTracker()
        tracker.update("s1", {"total_emails": 5, "processed": 2, "state": "classifying"})
        assert tracker.get("s1").state == RunState.CLASSIFYING

    def test_update_rejects_bad_dict(self):
        with pytest.raises(ValidationError):
            ProgressTracker().update("s1", {"processed": "lots"})

    def test_session_id_is_stamped(self):
        tracker = ProgressTracker()
        tracker.update("s1", ProgressRecord(session_id="other", processed=1))
        assert tracker.get("s1").session_id == "s1"
        assert tracker.get("other").processed == 0

    def test_last_updated_advances(self):
        tracker = ProgressTracker()
        first = tracker.update("s1", ProgressRecord(processed=1)).last_updated
        second = tracker.update("s1", ProgressRecord(processed=2)).last_updated
        assert second >= first

    def test_records_are_frozen(self):
        record = ProgressTracker().update("s1", ProgressRecord())
        with pytest.raises(ValidationError):
            record.processed = 99

    def test_clear(self):
        tracker = ProgressTracker()
        tracker.update("s1", ProgressRecord(processed=4))
        assert tracker.clear("s1") is True
        assert tracker.clear("s1") is False
        assert tracker.get("s1").processed == 0
        assert tracker.sessions() == []

    def test_sessions_are_isolated(self):
        tracker = ProgressTracker()
        tracker.update("a", ProgressRecord(processed=1))
        tracker.update("b", ProgressRecord(processed=2))
        assert sorted(tracker.sessions()) == ["a", "b"]
        assert tracker.get("a").processed == 1

    def test_concurrent_writers_leave_whole_records(self):
        tracker = ProgressTracker()

        def write(n: int) -> None:
            for i in range(200):
                tracker.update("s1", ProgressRecord(processed=i, classified=i, total_emails=n))

        threads = [threading.Thread(target=write, args=(n,)) for n in (100, 200)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        record = tracker.get("s1")
        assert record.processed == record.classified
        assert record.total_emails in (100, 200)
