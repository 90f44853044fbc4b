from __future__ import annotations

import argparse
import os
import signal
import socket
import time

from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .logging_utils import configure_logging, log_event, log_warning
from .task_queue import claim_next_job, idle_sleep, process_job, requeue_stale_jobs


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def run_once(db: Session, *, worker_id: str) -> bool:
    """Claim and process a single due job. Returns False when the queue was empty."""
    job = claim_next_job(db, worker_id=worker_id)
    if job is None:
        return False
    log_event("job_claimed", job_id=job.id, job_type=job.job_type, worker_id=worker_id, attempts=job.attempts)
    process_job(db, job)
    return True


def drain(*, worker_id: str | None = None, max_jobs: int = 1000) -> int:
    """Process due jobs until the queue is empty or `max_jobs` ran; used by cron-style deployments."""
    worker_id = worker_id or _default_worker_id()
    processed = 0
    with SessionLocal() as db:
        requeue_stale_jobs(db)
        while processed < max_jobs and run_once(db, worker_id=worker_id):
            processed += 1
    log_event("worker_drained", worker_id=worker_id, processed=processed)
    return processed


class Worker:
    def __init__(self, worker_id: str):
        self.worker_id = worker_id
        self.stopping = False
        self._last_requeue = 0.0

    def request_stop(self, signum, _frame) -> None:  # noqa: ANN001
        self.stopping = True
        log_warning("worker_shutdown_requested", worker_id=self.worker_id, signal=signum)

    def _requeue_due(self) -> bool:
        return time.monotonic() - self._last_requeue > max(30, settings.task_queue_stale_after_seconds)

    def tick(self) -> None:
        with SessionLocal() as db:
            if self._requeue_due():
                requeue_stale_jobs(db)
                self._last_requeue = time.monotonic()
            if not run_once(db, worker_id=self.worker_id):
                idle_sleep()

    def run_forever(self) -> None:
        log_event(
            "worker_started",
            worker_id=self.worker_id,
            poll_interval_seconds=settings.task_queue_poll_interval_seconds,
        )
        while not self.stopping:
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                log_warning("worker_loop_error", worker_id=self.worker_id, error=str(exc))
                idle_sleep()
        log_event("worker_stopped", worker_id=self.worker_id)


def main() -> None:
    parser = argparse.ArgumentParser(description="Process event review background jobs from the database queue.")
    parser.add_argument("--drain", action="store_true", help="Process every due job, then exit.")
    parser.add_argument("--max-jobs", type=int, default=1000, help="Upper bound for --drain.")
    args = parser.parse_args()

    configure_logging()
    worker_id = os.getenv("WORKER_ID") or _default_worker_id()

    if args.drain:
        drain(worker_id=worker_id, max_jobs=args.max_jobs)
        return

    worker = Worker(worker_id)
    signal.signal(signal.SIGTERM, worker.request_stop)
    signal.signal(signal.SIGINT, worker.request_stop)
    worker.run_forever()


if __name__ == "__main__":
    main()
