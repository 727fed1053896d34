from __future__ import annotations

from app.db.models.mes_exec import Job, JobHistoryEntry, JobTimelineEntry


def append_history(
    job: Job,
    *,
    actor: str,
    stage: str | None = None,
    remarks: str | None = None,
    meta: dict | None = None,
) -> JobHistoryEntry:
    """Record the job's current step and status. Entries are never edited or removed."""
    entry = JobHistoryEntry(
        seq=len(job.history) + 1,
        stage=stage,
        step=job.current_step,
        status=job.status,
        actor=actor,
        remarks=remarks,
        meta=meta or {},
    )
    job.history.append(entry)
    return entry


def append_timeline(job: Job, event: str, *, actor: str, details: str | None = None) -> JobTimelineEntry:
    entry = JobTimelineEntry(seq=len(job.timeline) + 1, event=event, details=details, actor=actor)
    job.timeline.append(entry)
    return entry


def has_stage(job: Job, stage: str) -> bool:
    return any(h.stage == stage for h in job.history)
