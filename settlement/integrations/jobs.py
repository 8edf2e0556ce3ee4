from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.integrations.canonical import payload_key, to_canonical_obj
from settlement.persistence import pg
from settlement.persistence.models import JobModel

logger = logging.getLogger(__name__)

COMMISSION_CALCULATE = "commission.calculate"
MAX_ATTEMPTS = 5

JobHandler = Callable[[dict[str, Any]], None]


class JobQueue(Protocol):
    def enqueue(self, session: Session, name: str, payload: dict[str, Any]) -> str:
        ...


class OutboxJobQueue:
    """Writes jobs into the caller's unit of work so they commit with it."""

    def enqueue(self, session: Session, name: str, payload: dict[str, Any]) -> str:
        key = payload_key(name, payload)
        existing = session.scalar(select(JobModel.id).where(JobModel.job_key == key))
        if existing is None:
            session.add(JobModel(job_key=key, name=name, payload=to_canonical_obj(payload)))
            session.flush()
            logger.info("job enqueued: name=%s key=%s", name, key[:12])
        return key


@dataclass
class InMemoryJobQueue:
    jobs: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def enqueue(self, session: Session, name: str, payload: dict[str, Any]) -> str:
        self.jobs.append((name, to_canonical_obj(payload)))
        return payload_key(name, payload)


@dataclass
class JobRunSummary:
    processed: int = 0
    failed: int = 0
    skipped: int = 0


class JobRunner:
    def __init__(self, handlers: dict[str, JobHandler], session_factory: pg.SessionFactory | None = None):
        self.handlers = handlers
        self.session_factory = session_factory

    def run_pending(self, limit: int = 100) -> JobRunSummary:
        summary = JobRunSummary()
        with pg.session_scope(self.session_factory) as session:
            jobs = [
                (job.id, job.name, dict(job.payload))
                for job in session.scalars(
                    select(JobModel)
                    .where(JobModel.status == "queued")
                    .order_by(JobModel.id.asc())
                    .limit(limit)
                ).all()
            ]

        for job_id, name, payload in jobs:
            handler = self.handlers.get(name)
            if handler is None:
                logger.warning("no handler registered for job=%s id=%s", name, job_id)
                summary.skipped += 1
                continue
            error: str | None = None
            try:
                handler(payload)
            except Exception as exc:
                logger.exception("job failed: name=%s id=%s", name, job_id)
                error = str(exc)
            self._record(job_id, error)
            if error is None:
                summary.processed += 1
            else:
                summary.failed += 1
        return summary

    def _record(self, job_id: int, error: str | None) -> None:
        with pg.session_scope(self.session_factory) as session:
            job = session.get(JobModel, job_id)
            if job is None:
                return
            job.attempts += 1
            job.updated_at = datetime.now(timezone.utc)
            if error is None:
                job.status = "done"
                job.last_error = None
            else:
                job.last_error = error
                job.status = "dead" if job.attempts >= MAX_ATTEMPTS else "queued"
