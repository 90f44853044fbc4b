from datetime import datetime, timedelta, timezone

import pytest

from eventreview import models
from eventreview.task_queue import (
    JOB_TYPE_GENERATE_RECOMMENDATIONS,
    JOB_TYPE_PURGE_OLD_NOTIFICATIONS,
    claim_next_job,
    enqueue_job,
    process_job,
    requeue_stale_jobs,
    run_job,
)
from eventreview.worker import drain, run_once


def _reload(db, job_id: int) -> models.BackgroundJob:
    db.expire_all()
    return db.get(models.BackgroundJob, job_id)


def test_dedupe_key_returns_existing_job(helpers):
    db = helpers["db"]
    first = enqueue_job(db, JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {"days": 30}, dedupe_key="nightly")
    second = enqueue_job(db, JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {"days": 7}, dedupe_key="nightly")
    assert int(first.id) == int(second.id)
    assert getattr(second, "_deduped", False) is True
    assert db.query(models.BackgroundJob).count() == 1

    other_type = enqueue_job(db, JOB_TYPE_GENERATE_RECOMMENDATIONS, {}, dedupe_key="nightly")
    assert int(other_type.id) != int(first.id)


def test_finished_job_releases_dedupe_key(helpers):
    db = helpers["db"]
    job = enqueue_job(db, JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {}, dedupe_key="nightly")
    assert run_once(db, worker_id="test-worker") is True

    done = _reload(db, job.id)
    assert done.status == "succeeded"
    assert done.dedupe_key is None
    assert done.result == {"deleted": 0}
    assert done.finished_at is not None

    again = enqueue_job(db, JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {}, dedupe_key="nightly")
    assert int(again.id) != int(job.id)


def test_run_once_on_empty_queue(helpers):
    assert run_once(helpers["db"], worker_id="test-worker") is False


def test_failed_job_is_retried_with_backoff_then_failed(helpers):
    db = helpers["db"]
    job = enqueue_job(db, "does_not_exist", {}, dedupe_key="broken", max_attempts=2)

    claimed = claim_next_job(db, worker_id="test-worker")
    assert claimed.id == job.id
    assert claimed.status == "running"
    assert claimed.locked_by == "test-worker"
    process_job(db, claimed)

    retrying = _reload(db, job.id)
    assert retrying.status == "queued"
    assert retrying.attempts == 1
    assert "Unknown job_type" in retrying.last_error
    assert retrying.locked_by is None
    # Backoff pushes run_at into the future, so nothing is due yet.
    assert run_once(db, worker_id="test-worker") is False

    retrying.run_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db.commit()
    assert run_once(db, worker_id="test-worker") is True

    failed = _reload(db, job.id)
    assert failed.status == "failed"
    assert failed.attempts == 2
    assert failed.dedupe_key is None


def test_run_job_rejects_unknown_type(helpers):
    with pytest.raises(ValueError):
        run_job(helpers["db"], "mystery", {})


def test_generate_job_for_single_user(helpers):
    db = helpers["db"]
    host_token = helpers["register_user"]("host")
    helpers["register_user"]("alice")
    helpers["create_event"](host_token, "Quiz Night", days=2)
    alice = helpers["user_by_username"]("alice")

    result = run_job(db, JOB_TYPE_GENERATE_RECOMMENDATIONS, {"user_id": alice.id, "limit": 5})
    assert result == {"user_id": alice.id, "candidates": 1, "succeeded": 1, "failed": 0}
    assert db.query(models.Recommendation).filter(models.Recommendation.user_id == alice.id).count() == 1


def test_requeue_stale_running_jobs(helpers):
    db = helpers["db"]
    job = enqueue_job(db, JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {})
    job.status = "running"
    job.locked_by = "crashed-worker"
    job.locked_at = datetime.now(timezone.utc) - timedelta(hours=2)
    db.commit()

    assert requeue_stale_jobs(db, stale_after_seconds=60) == 1
    requeued = _reload(db, job.id)
    assert requeued.status == "queued"
    assert requeued.locked_by is None


def test_drain_processes_all_due_jobs(helpers):
    db = helpers["db"]
    for days in (30, 60, 90):
        enqueue_job(db, JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {"days": days})

    assert drain(worker_id="test-worker") == 3
    db.expire_all()
    statuses = {job.status for job in db.query(models.BackgroundJob).all()}
    assert statuses == {"succeeded"}
