"""Tests for the database retry wrapper."""

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, ProgrammingError

from plotdesk.errors import Conflict, InternalError, NotFound, ServiceUnavailable
from plotdesk.services import retry
from plotdesk.services.retry import is_retryable, with_db_retry


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(retry.time, "sleep", recorded.append)
    return recorded


def _failing(exc_factory, failures):
    calls = {"n": 0}

    @with_db_retry(attempts=3, base_delay_ms=100)
    def operation(db=None):
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc_factory()
        return "done"

    return operation, calls


def _operational():
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


class TestWithDbRetry:

    def test_recovers_after_transient_failure(self, sleeps):
        operation, calls = _failing(_operational, failures=1)

        assert operation() == "done"
        assert calls["n"] == 2
        assert sleeps == [0.1]

    def test_exhausted_retries_report_service_unavailable(self, sleeps):
        operation, calls = _failing(_operational, failures=10)

        with pytest.raises(ServiceUnavailable) as exc:
            operation()

        assert calls["n"] == 3
        assert sleeps == [0.1, 0.2]
        assert exc.value.status_code == 503
        assert exc.value.to_dict()["code"] == "SERVICE_UNAVAILABLE"

    def test_integrity_error_is_conflict_without_retry(self, sleeps):
        operation, calls = _failing(lambda: IntegrityError("INSERT", {}, Exception("unique")), failures=10)

        with pytest.raises(Conflict):
            operation()

        assert calls["n"] == 1
        assert sleeps == []

    def test_other_store_errors_are_internal(self, sleeps):
        operation, calls = _failing(lambda: ProgrammingError("SELEC", {}, Exception("syntax")), failures=10)

        with pytest.raises(InternalError):
            operation()

        assert calls["n"] == 1

    def test_domain_errors_pass_through(self, sleeps):
        operation, calls = _failing(lambda: NotFound("Plot not found"), failures=10)

        with pytest.raises(NotFound):
            operation()

        assert calls["n"] == 1
        assert sleeps == []

    def test_session_is_rolled_back_between_attempts(self, sleeps):
        class FakeSession:
            rollbacks = 0

            def rollback(self):
                self.rollbacks += 1

        operation, _ = _failing(_operational, failures=1)
        session = FakeSession()

        operation(db=session)

        assert session.rollbacks == 1


def test_is_retryable():
    assert is_retryable(_operational())
    invalidated = DBAPIError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)
    assert is_retryable(invalidated)
    assert not is_retryable(IntegrityError("INSERT", {}, Exception("dup")))
