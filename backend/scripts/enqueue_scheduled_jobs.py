#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def _bootstrap_imports() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_root))

    os.environ.setdefault("EMAIL_ENABLED", "false")


def main() -> int:
    parser = argparse.ArgumentParser(description="Enqueue scheduled background jobs.")
    parser.add_argument(
        "--recommendations",
        action="store_true",
        help="Enqueue recommendation generation for every active user.",
    )
    parser.add_argument("--reminders", action="store_true", help="Enqueue calendar reminder delivery.")
    parser.add_argument(
        "--purge",
        action="store_true",
        help="Enqueue purges of stale recommendations and old read notifications.",
    )
    parser.add_argument("--sentiment-backfill", action="store_true", help="Enqueue review sentiment backfill.")
    parser.add_argument(
        "--all",
        action="store_true",
        help="Enqueue the default set (recommendations + reminders + purge).",
    )
    parser.add_argument("--limit", type=int, default=None, help="Recommendations to store per user.")
    args = parser.parse_args()

    _bootstrap_imports()

    from eventreview.database import SessionLocal  # noqa: PLC0415
    from eventreview.task_queue import (  # noqa: PLC0415
        JOB_TYPE_BACKFILL_REVIEW_SENTIMENT,
        JOB_TYPE_GENERATE_RECOMMENDATIONS,
        JOB_TYPE_PURGE_OLD_NOTIFICATIONS,
        JOB_TYPE_PURGE_STALE_RECOMMENDATIONS,
        JOB_TYPE_SEND_EVENT_REMINDERS,
        enqueue_job,
    )

    wanted = {
        "recommendations": bool(args.recommendations or args.all),
        "reminders": bool(args.reminders or args.all),
        "purge": bool(args.purge or args.all),
        "sentiment_backfill": bool(args.sentiment_backfill),
    }
    if not any(wanted.values()):
        wanted["recommendations"] = True
        wanted["reminders"] = True

    planned: list[tuple[str, dict]] = []
    if wanted["recommendations"]:
        payload = {"limit": int(args.limit)} if args.limit is not None else {}
        planned.append((JOB_TYPE_GENERATE_RECOMMENDATIONS, payload))
    if wanted["reminders"]:
        planned.append((JOB_TYPE_SEND_EVENT_REMINDERS, {}))
    if wanted["purge"]:
        planned.append((JOB_TYPE_PURGE_STALE_RECOMMENDATIONS, {}))
        planned.append((JOB_TYPE_PURGE_OLD_NOTIFICATIONS, {}))
    if wanted["sentiment_backfill"]:
        planned.append((JOB_TYPE_BACKFILL_REVIEW_SENTIMENT, {}))

    created: list[tuple[str, int]] = []
    with SessionLocal() as db:
        for job_type, payload in planned:
            job = enqueue_job(db, job_type, payload, dedupe_key="scheduled")
            if not getattr(job, "_deduped", False):
                created.append((job_type, int(job.id)))

    for job_type, job_id in created:
        print(f"enqueued job_type={job_type} job_id={job_id}")
    if not created:
        print("no jobs enqueued (already queued/running)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
