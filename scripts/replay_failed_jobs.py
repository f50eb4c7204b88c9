"""Re-queue failed persisted jobs.

Replay keeps the job id and payload, so downstream idempotency keys (event
dedupe, `campaignId:contactId`) still protect against duplicate sends.
"""

import argparse

from sqlalchemy import select, update

from smsflow.common.db import SessionLocal, utcnow
from smsflow.common.outbox import QueueJob


def replay(queue: str, job_id: str | None, limit: int, dry_run: bool) -> int:
    """Move matching `failed` rows back to `waiting`; returns how many matched."""

    with SessionLocal() as db:
        query = select(QueueJob).where(QueueJob.queue == queue, QueueJob.status == "failed")
        if job_id:
            query = query.where(QueueJob.id == job_id)
        rows = db.execute(query.order_by(QueueJob.finished_at).limit(limit)).scalars().all()
        for row in rows:
            print(f"job_id={row.id} name={row.name} attempts={row.attempts_made} last_error={row.last_error}")
        if dry_run or not rows:
            return len(rows)
        db.execute(
            update(QueueJob)
            .where(QueueJob.id.in_([row.id for row in rows]), QueueJob.status == "failed")
            .values(status="waiting", attempts_made=0, run_at=utcnow(), finished_at=None)
        )
        db.commit()
    return len(rows)


def main() -> None:
    """CLI entrypoint for failed-job replay."""

    parser = argparse.ArgumentParser(description="Re-queue failed jobs from the persisted queue.")
    parser.add_argument("--queue", required=True, choices=["events", "automations", "campaigns", "jobs"])
    parser.add_argument("--job-id", default=None)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    count = replay(args.queue, args.job_id, args.limit, args.dry_run)
    action = "matched" if args.dry_run else "requeued"
    print(f"{action}={count}")
    raise SystemExit(0 if count else 1)


if __name__ == "__main__":
    main()
