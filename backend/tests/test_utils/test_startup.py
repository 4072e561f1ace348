"""Tests for stale job recovery."""
from datetime import datetime, timedelta, timezone

from delisio.models import GenerationJob
from delisio.utils.startup import STALE_JOB_MESSAGE, recover_stale_jobs


def add_job(db, job_id, status, created_ago, started_ago=None):
    now = datetime.now(timezone.utc)
    db.add(GenerationJob(
        id=job_id,
        kind="recipe",
        status=status,
        payload={},
        created_at=now - created_ago,
        started_at=(now - started_ago) if started_ago is not None else None,
    ))
    db.commit()


class TestRecoverStaleJobs:
    def test_fails_only_stale_jobs(self, session_factory, db_session):
        hour = timedelta(hours=1)
        add_job(db_session, "stale-active", "active", 3 * hour, started_ago=2 * hour)
        add_job(db_session, "stale-queued", "queued", 2 * hour)
        add_job(db_session, "fresh-active", "active", 3 * hour, started_ago=timedelta(minutes=5))
        add_job(db_session, "done", "completed", 5 * hour, started_ago=5 * hour)

        assert recover_stale_jobs(session_factory, stale_after_seconds=3600) == 2

        with session_factory() as db:
            states = {j.id: (j.status, j.error_message) for j in db.query(GenerationJob).all()}
        assert states["stale-active"] == ("failed", STALE_JOB_MESSAGE)
        assert states["stale-queued"] == ("failed", STALE_JOB_MESSAGE)
        assert states["fresh-active"][0] == "active"
        assert states["done"][0] == "completed"

    def test_nothing_to_recover(self, session_factory):
        assert recover_stale_jobs(session_factory, stale_after_seconds=60) == 0
