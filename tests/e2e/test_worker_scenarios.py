from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from applyflow.clients.core import CoreClient
from applyflow.core.circuit_breaker import CircuitState
from applyflow.core.cv_store import DatabaseCVStore
from applyflow.core.worker import QueueWorker
from applyflow.db.repositories import Repository
from applyflow.db.session import SessionLocal
from applyflow.errors import CustomizationError
from fakes import SAMPLE_CV, CoreStub, FakeClock, FakeCustomizer, make_settings, seed_user


def _worker(stub: CoreStub, clock: FakeClock, *, customizer=None, **overrides) -> QueueWorker:
    settings = make_settings(**overrides)
    return QueueWorker(
        settings,
        session_factory=SessionLocal,
        core_client=CoreClient(settings, transport=stub.transport),
        customizer=customizer or FakeCustomizer(),
        clock=clock,
    )


def _run(worker: QueueWorker, coro):
    async def go():
        try:
            return await coro
        finally:
            await worker.core_client.aclose()

    return asyncio.run(go())


def _enqueue(clock: FakeClock, *, user_id: str = "user-1", jobs: int = 3, parsed: dict | None = SAMPLE_CV):
    with SessionLocal() as db:
        repo = Repository(db)
        cv, job_ids = seed_user(repo, user_id=user_id, jobs=jobs, parsed=parsed)
        return repo.enqueue_jobs(user_id=user_id, cv_id=cv.id, job_ids=job_ids, now=clock())


def _items(workflow_id: str):
    with SessionLocal() as db:
        return Repository(db).list_queue(workflow_id=workflow_id)


def test_fresh_user_items_are_all_submitted() -> None:
    clock = FakeClock()
    stub = CoreStub()
    result = _enqueue(clock)
    worker = _worker(stub, clock)

    assert _run(worker, worker.run_once()) == 3

    items = _items(result.workflow_id)
    assert {item.status for item in items} == {"submitted"}
    assert all(item.last_error is None for item in items)
    with SessionLocal() as db:
        applications = Repository(db).list_applications(user_id="user-1")
    assert len(applications) == 3
    assert {row.resume_id for row in applications} == {f"res-user-1-job-{n}" for n in range(3)}
    assert len(stub.requests) == 3


def test_rate_limited_user_is_rescheduled_without_consuming_attempts() -> None:
    clock = FakeClock()
    stub = CoreStub()
    with SessionLocal() as db:
        repo = Repository(db)
        for index in range(8):
            repo.insert_application(
                user_id="user-1",
                job_external_id=f"earlier-{index}",
                created_at=clock() - timedelta(minutes=5 + index),
            )
    result = _enqueue(clock, jobs=1)
    worker = _worker(stub, clock)

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "rate_limited"
    assert item.attempts == 0
    assert item.last_error == "rate_limited"
    assert item.next_run_at == clock() + timedelta(minutes=60)
    assert stub.requests == []


def test_persistent_core_outage_exhausts_attempts_with_backoff() -> None:
    clock = FakeClock()
    stub = CoreStub(default_status=503)
    result = _enqueue(clock, jobs=1)
    worker = _worker(stub, clock, core_max_retries=2, worker_max_attempts=5, breaker_failure_threshold=10)

    delays = []

    async def drive():
        for _ in range(5):
            assert await worker.run_once() == 1
            item = _items(result.workflow_id)[0]
            if item.status == "pending":
                delays.append(item.next_run_at - clock())
                clock.now = item.next_run_at
        await worker.core_client.aclose()

    asyncio.run(drive())

    item = _items(result.workflow_id)[0]
    assert delays == [timedelta(minutes=m) for m in (2, 4, 8, 16)]
    assert item.status == "failed"
    assert item.attempts == 5
    assert item.last_error.startswith("Core responded with HTTP 503")
    assert len(stub.requests) == 15


def test_breaker_opens_and_rejects_next_item_without_network_call() -> None:
    clock = FakeClock()
    stub = CoreStub(default_status=500)
    result = _enqueue(clock, jobs=6)
    worker = _worker(stub, clock, core_max_retries=0, breaker_failure_threshold=5)

    _run(worker, worker.run_once())

    assert worker.core_client.breaker.state == CircuitState.OPEN
    assert len(stub.requests) == 5
    items = _items(result.workflow_id)
    assert {item.status for item in items} == {"pending"}
    assert all(item.attempts == 1 for item in items)
    assert sum("Circuit breaker" in item.last_error for item in items) == 1


def test_cancelled_workflow_in_flight_item_is_not_reclaimed() -> None:
    clock = FakeClock()
    stub = CoreStub(default_status=503)
    result = _enqueue(clock, jobs=5)
    worker = _worker(stub, clock, core_max_retries=0)

    with SessionLocal() as db:
        repo = Repository(db)
        in_flight = repo.claim_batch(limit=1, now=clock())[0]
        db.expunge(in_flight)
        assert repo.cancel_workflow(result.workflow_id) == 4

    outcome = _run(worker, worker.process_item(in_flight))

    assert outcome == "cancelled"
    statuses = [item.status for item in _items(result.workflow_id)]
    assert statuses.count("cancelled") == 5

    clock.advance(hours=2)
    worker = _worker(stub, clock)
    assert _run(worker, worker.run_once()) == 0


def test_missing_cv_fails_item_permanently() -> None:
    clock = FakeClock()
    stub = CoreStub()
    result = _enqueue(clock, jobs=1, parsed=None)
    worker = _worker(stub, clock)

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "failed"
    assert "not found or not parsed" in item.last_error
    with SessionLocal() as db:
        assert [row.status for row in Repository(db).list_applications(user_id="user-1")] == ["failed"]
    assert stub.requests == []


def test_core_rejection_fails_item_without_retry() -> None:
    clock = FakeClock()
    stub = CoreStub(default_status=400)
    result = _enqueue(clock, jobs=1)
    worker = _worker(stub, clock)

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "failed"
    assert item.attempts == 1
    assert len(stub.requests) == 1
    assert worker.core_client.breaker.stats()["failure_count"] == 0


def test_customization_failure_is_an_attempt_failure() -> None:
    clock = FakeClock()
    stub = CoreStub()
    result = _enqueue(clock, jobs=1)
    worker = _worker(stub, clock, customizer=FakeCustomizer(error=CustomizationError("model offline")))

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "pending"
    assert item.attempts == 1
    assert item.last_error == "model offline"
    assert item.next_run_at == clock() + timedelta(minutes=2)


def test_hung_customizer_times_out() -> None:
    class HangingCustomizer(FakeCustomizer):
        async def customize_cv(self, cv, job_description):
            await asyncio.sleep(10)

    clock = FakeClock()
    result = _enqueue(clock, jobs=1)
    worker = _worker(CoreStub(), clock, customizer=HangingCustomizer(), worker_call_timeout_sec=0.05)

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "pending"
    assert "timed out" in item.last_error


def test_concurrent_processing_keeps_each_user_sequential() -> None:
    clock = FakeClock()
    stub = CoreStub()
    first = _enqueue(clock, user_id="alice", jobs=3)
    second = _enqueue(clock, user_id="bob", jobs=3)
    worker = _worker(stub, clock, worker_concurrency=2, rate_limit_hourly=2)

    _run(worker, worker.run_once())

    for workflow_id in (first.workflow_id, second.workflow_id):
        statuses = sorted(item.status for item in _items(workflow_id))
        assert statuses == ["rate_limited", "submitted", "submitted"]


def test_loop_errors_back_off_and_recover() -> None:
    clock = FakeClock()
    delays: list[float] = []
    failures = {"left": 2}

    def flaky_session_factory():
        if failures["left"]:
            failures["left"] -= 1
            raise RuntimeError("database unavailable")
        return SessionLocal()

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        if len(delays) >= 3:
            worker.stop()

    settings = make_settings(worker_poll_interval_sec=1.0, worker_max_error_backoff_sec=3.0)
    stub = CoreStub()
    worker = QueueWorker(
        settings,
        session_factory=flaky_session_factory,
        core_client=CoreClient(settings, transport=stub.transport),
        customizer=FakeCustomizer(),
        clock=clock,
        sleep=fake_sleep,
    )

    _run(worker, worker.run_forever())

    assert delays == pytest.approx([2.0, 3.0, 1.0])
    assert worker.running is False


def _flaky_submission_count(monkeypatch, failures: int = 1) -> None:
    original = Repository.count_submissions_since
    remaining = {"count": failures}

    def count_submissions_since(self, user_id, since):
        if remaining["count"]:
            remaining["count"] -= 1
            raise OperationalError("SELECT count(applications.id)", {}, Exception("database is locked"))
        return original(self, user_id, since)

    monkeypatch.setattr(Repository, "count_submissions_since", count_submissions_since)


def test_store_error_mid_batch_is_recorded_and_batch_continues(monkeypatch) -> None:
    clock = FakeClock()
    stub = CoreStub()
    result = _enqueue(clock, jobs=3)
    _flaky_submission_count(monkeypatch)
    worker = _worker(stub, clock)

    assert _run(worker, worker.run_once()) == 3

    items = _items(result.workflow_id)
    assert sorted(item.status for item in items) == ["pending", "submitted", "submitted"]
    retried = next(item for item in items if item.status == "pending")
    assert retried.attempts == 1
    assert "database is locked" in retried.last_error
    assert len(stub.requests) == 2

    clock.advance(minutes=3)
    worker = _worker(stub, clock)
    assert _run(worker, worker.run_once()) == 1
    assert {item.status for item in _items(result.workflow_id)} == {"submitted"}


def test_claim_is_released_when_failure_cannot_be_recorded(monkeypatch) -> None:
    clock = FakeClock()
    result = _enqueue(clock, jobs=1)
    _flaky_submission_count(monkeypatch)

    def broken_record(self, item_id, **kwargs):
        raise OperationalError("UPDATE application_queue", {}, Exception("disk I/O error"))

    monkeypatch.setattr(Repository, "record_attempt_failure", broken_record)
    worker = _worker(CoreStub(), clock)

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "pending"
    assert item.attempts == 0
    assert "database is locked" in item.last_error


def test_hung_core_counts_against_breaker() -> None:
    async def hang(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await asyncio.sleep(10)
        return httpx.Response(200, json={})

    calls: list[httpx.Request] = []
    clock = FakeClock()
    result = _enqueue(clock, jobs=4)
    settings = make_settings(core_max_retries=0, breaker_failure_threshold=2, worker_call_timeout_sec=0.05)
    worker = QueueWorker(
        settings,
        session_factory=SessionLocal,
        core_client=CoreClient(settings, transport=httpx.MockTransport(hang)),
        customizer=FakeCustomizer(),
        clock=clock,
    )

    _run(worker, worker.run_once())

    assert worker.core_client.breaker.state == CircuitState.OPEN
    assert len(calls) == 2
    items = _items(result.workflow_id)
    assert {item.status for item in items} == {"pending"}
    assert sum("timed out" in item.last_error for item in items) == 2
    assert sum("Circuit breaker" in item.last_error for item in items) == 2


def test_slow_cv_store_times_out_in_its_own_session() -> None:
    sessions = []

    class SlowCVStore(DatabaseCVStore):
        def __init__(self, session):
            super().__init__(session)
            sessions.append(session)

        def get_cv(self, user_id, cv_id):
            time.sleep(0.2)
            return super().get_cv(user_id, cv_id)

    clock = FakeClock()
    result = _enqueue(clock, jobs=1)
    worker = _worker(CoreStub(), clock, worker_call_timeout_sec=0.05)
    worker.cv_store_factory = SlowCVStore

    _run(worker, worker.run_once())

    item = _items(result.workflow_id)[0]
    assert item.status == "pending"
    assert item.last_error == "CV fetch timed out after 0.05s"
    assert len(sessions) == 1
