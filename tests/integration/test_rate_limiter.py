from __future__ import annotations

from datetime import timedelta

from applyflow.core.rate_limiter import RateLimiter
from applyflow.db.repositories import Repository
from applyflow.db.session import SessionLocal
from fakes import FakeClock


def _submit_history(repo: Repository, clock: FakeClock, *, user_id: str, ages: list[timedelta], status="submitted"):
    for index, age in enumerate(ages):
        repo.insert_application(
            user_id=user_id,
            job_external_id=f"{user_id}-{status}-{index}",
            status=status,
            created_at=clock() - age,
        )


def test_hourly_limit_blocks_at_threshold() -> None:
    clock = FakeClock()
    with SessionLocal() as db:
        repo = Repository(db)
        limiter = RateLimiter(repo, hourly_limit=8, daily_limit=200, clock=clock)
        _submit_history(repo, clock, user_id="u1", ages=[timedelta(minutes=5 * n) for n in range(7)])
        assert limiter.can_submit("u1") is True

        _submit_history(repo, clock, user_id="u1", ages=[timedelta(minutes=1)])
        assert limiter.can_submit("u1") is False
        assert limiter.can_submit("someone-else") is True


def test_window_slides_with_time() -> None:
    clock = FakeClock()
    with SessionLocal() as db:
        repo = Repository(db)
        limiter = RateLimiter(repo, hourly_limit=2, daily_limit=200, clock=clock)
        _submit_history(repo, clock, user_id="u1", ages=[timedelta(minutes=50), timedelta(minutes=55)])
        assert limiter.can_submit("u1") is False

        clock.advance(minutes=11)
        assert limiter.can_submit("u1") is True


def test_daily_limit_counts_last_24_hours() -> None:
    clock = FakeClock()
    with SessionLocal() as db:
        repo = Repository(db)
        limiter = RateLimiter(repo, hourly_limit=8, daily_limit=3, clock=clock)
        _submit_history(
            repo,
            clock,
            user_id="u1",
            ages=[timedelta(hours=2), timedelta(hours=5), timedelta(hours=23), timedelta(hours=25)],
        )
        usage = limiter.usage("u1")

        assert limiter.can_submit("u1") is False
        assert usage.hourly_count == 0
        assert usage.daily_count == 3
        assert usage.can_submit is False


def test_failed_applications_do_not_consume_quota() -> None:
    clock = FakeClock()
    with SessionLocal() as db:
        repo = Repository(db)
        limiter = RateLimiter(repo, hourly_limit=1, daily_limit=10, clock=clock)
        _submit_history(repo, clock, user_id="u1", ages=[timedelta(minutes=1)] * 3, status="failed")
        assert limiter.can_submit("u1") is True
