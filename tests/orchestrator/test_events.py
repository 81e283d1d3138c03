"""Tests for BatchEventEmitter and the audit observer."""

from unittest.mock import AsyncMock

from src.db.models import EventType, LogLevel
from src.orchestrator.batch.audit_observer import AuditTrailObserver
from src.orchestrator.batch.events import BatchEventEmitter
from src.orchestrator.batch.models import PerSegmentResult
from src.services.audit_service import AuditService


class TestBatchEventEmitter:
    """Tests for observer fan-out."""

    async def test_all_observers_notified(self):
        emitter = BatchEventEmitter()
        first, second = AsyncMock(), AsyncMock()
        emitter.add_observer(first)
        emitter.add_observer(second)

        await emitter.emit_pass_started("job-1", 3)

        first.on_pass_started.assert_awaited_once_with("job-1", 3)
        second.on_pass_started.assert_awaited_once_with("job-1", 3)

    async def test_failing_observer_isolated(self):
        emitter = BatchEventEmitter()
        broken, working = AsyncMock(), AsyncMock()
        broken.on_pass_failed.side_effect = RuntimeError("observer down")
        emitter.add_observer(broken)
        emitter.add_observer(working)

        await emitter.emit_pass_failed("job-1", "E-3001", "unreachable")

        working.on_pass_failed.assert_awaited_once_with("job-1", "E-3001", "unreachable")

    async def test_removed_observer_not_notified(self):
        emitter = BatchEventEmitter()
        observer = AsyncMock()
        emitter.add_observer(observer)
        emitter.remove_observer(observer)

        await emitter.emit_pass_completed("job-1", "completed", 2, 0)

        observer.on_pass_completed.assert_not_awaited()


class TestAuditTrailObserver:
    """Tests for audit entries written from pass events."""

    async def test_segment_outcomes_logged(self, db_session):
        observer = AuditTrailObserver(db_session)

        await observer.on_segment_result(
            "job-1", PerSegmentResult("seg-01", "created", external_id="ext-1")
        )
        await observer.on_segment_throttled("job-1", "seg-02", "Request was throttled.")

        logs = AuditService(db_session).get_logs("job-1")
        assert [log.segment_id for log in logs] == ["seg-01", "seg-02"]
        assert logs[0].level == LogLevel.INFO.value
        assert logs[1].level == LogLevel.WARNING.value

    async def test_pass_failure_logged_as_error(self, db_session):
        observer = AuditTrailObserver(db_session)

        await observer.on_pass_failed("job-1", "E-5001", "API key rejected")

        logs = AuditService(db_session).get_logs("job-1", level=LogLevel.ERROR)
        assert len(logs) == 1
        assert "E-5001" in logs[0].message

    async def test_state_changes_logged(self, db_session):
        observer = AuditTrailObserver(db_session)

        await observer.on_pass_started("job-1", 4)
        await observer.on_pass_paused("job-1", "steady", "2026-03-01T12:02:00+00:00")

        logs = AuditService(db_session).get_logs("job-1", event_type=EventType.state_change)
        assert len(logs) == 2
        assert "waiting_retry" in logs[1].message
