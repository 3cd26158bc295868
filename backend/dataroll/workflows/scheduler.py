"""Delayed resumption: durable wake-up rows and the periodic sweep."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from ..extensions import db
from ..models.schedule import ScheduledResume
from .errors import ConcurrencyError

if TYPE_CHECKING:
    from . import WorkflowServices


class DatabaseResumeScheduler:
    """Keeps at most one unfired wake-up per execution in ``scheduled_resumes``.

    Methods stage changes in the caller's transaction and never commit.
    """

    def schedule_resume(self, execution_id: int, wake_at: datetime) -> ScheduledResume:
        row = ScheduledResume.query.filter_by(execution_id=execution_id, fired_at=None).first()
        if row is None:
            row = ScheduledResume(execution_id=execution_id, wake_at=wake_at)
            db.session.add(row)
        else:
            row.wake_at = wake_at
        db.session.flush()
        return row

    def due(self, now: datetime) -> list[ScheduledResume]:
        return (
            ScheduledResume.query.filter(ScheduledResume.fired_at.is_(None))
            .filter(ScheduledResume.wake_at <= now)
            .order_by(ScheduledResume.wake_at.asc(), ScheduledResume.id.asc())
            .all()
        )

    def mark_fired(self, row_id: int, now: datetime) -> None:
        row = db.session.get(ScheduledResume, row_id)
        if row is not None and row.fired_at is None:
            row.fired_at = now

    def discard(self, execution_id: int) -> None:
        ScheduledResume.query.filter_by(execution_id=execution_id, fired_at=None).delete(
            synchronize_session=False
        )


@dataclass
class SweepReport:
    expired_approvals: list[int] = field(default_factory=list)
    resumed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


def run_sweep(services: WorkflowServices, now: datetime | None = None) -> SweepReport:
    """Expire overdue approvals and fire due delay wake-ups.

    Meant to be called from cron; every step commits on its own so a crash
    part way through leaves nothing half applied.
    """

    now = now or services.clock()
    report = SweepReport()
    logger = services.logger

    report.expired_approvals = services.coordinator.expire_overdue(now)

    for row in services.scheduler.due(now):
        row_id, execution_id = row.id, row.execution_id
        services.scheduler.mark_fired(row_id, now)
        db.session.commit()

        result = services.engine.resume(execution_id)
        if result.ok:
            report.resumed.append(execution_id)
            continue

        report.failed[execution_id] = result.error.message
        if isinstance(result.error, ConcurrencyError):
            # Someone else holds the execution; try again on the next sweep.
            services.scheduler.schedule_resume(execution_id, now)
            db.session.commit()
        logger.warning("sweep: execution %s was not resumed: %s", execution_id, result.error.message)

    if report.expired_approvals or report.resumed or report.failed:
        logger.info(
            "sweep at %s: %d approvals expired, %d executions resumed, %d failed",
            now.isoformat(),
            len(report.expired_approvals),
            len(report.resumed),
            len(report.failed),
        )
    return report
