"""Job queue helpers: job identifiers, ordering, and row ingestion."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, List, Sequence

import structlog

from .fingerprint import build_response_key, tracked_response_keys, tracked_rows
from .models import Application, Job, State
from .tracks import TrackRegistry, infer_application_tracks

JOB_ID_PATTERN = re.compile(r"^job-(\d+)$", re.IGNORECASE)
FIRST_DATA_ROW = 2


def format_job_id(sequence: int) -> str:
    return f"job-{sequence:06d}"


def parse_job_id_sequence(job_id) -> int:
    """Return the numeric sequence of ``job-000123`` style ids, or 0."""

    if not isinstance(job_id, str):
        return 0
    match = JOB_ID_PATTERN.match(job_id.strip())
    if not match:
        return 0
    return int(match.group(1))


def build_application_id(registry: TrackRegistry, track_key: str, job_id: str | None) -> str | None:
    sequence = parse_job_id_sequence(job_id)
    if sequence <= 0:
        return None
    return f"{registry.application_id_prefix(track_key)}-{sequence}"


def application_display_id(registry: TrackRegistry, application: Application) -> str:
    return (
        build_application_id(registry, application.track_key, application.job_id)
        or (application.application_id or "").strip()
        or application.message_id
        or "Unknown"
    )


def allocate_next_job_id(state: State) -> str:
    if state.next_job_id < 1:
        state.next_job_id = 1
    job_id = format_job_id(state.next_job_id)
    state.next_job_id += 1
    return job_id


def job_sort_key(job: Job) -> tuple:
    sequence = parse_job_id_sequence(job.job_id)
    # unparseable ids sort after numbered ones on the same row
    return (
        job.row_index,
        sequence if sequence > 0 else float("inf"),
        job.created_at.timestamp(),
        job.job_id,
    )


def sort_jobs(jobs: List[Job]) -> None:
    jobs.sort(key=job_sort_key)


def create_post_job(
    state: State,
    registry: TrackRegistry,
    headers: Sequence[str],
    row: Sequence[str],
    row_index: int,
    *,
    now: datetime | None = None,
) -> Job:
    normalised_headers = ["" if cell is None else str(cell) for cell in headers]
    normalised_row = ["" if cell is None else str(cell) for cell in row]
    return Job(
        job_id=allocate_next_job_id(state),
        row_index=row_index,
        track_keys=infer_application_tracks(registry, normalised_headers, normalised_row),
        posted_track_keys=[],
        response_key=build_response_key(normalised_headers, normalised_row),
        headers=normalised_headers,
        row=normalised_row,
        created_at=now or datetime.now(UTC),
    )


@dataclass(frozen=True)
class IngestResult:
    created: int = 0
    skipped: int = 0
    job_ids: List[str] = field(default_factory=list)
    last_row: int = 1


def ingest_rows(
    state: State,
    values: Sequence[Sequence[str]],
    registry: TrackRegistry,
    *,
    clock: Callable[[], datetime] | None = None,
) -> IngestResult:
    """Queue a post job for every untracked data row of *values*.

    ``values[0]`` is the header row (sheet row 1); data rows start at sheet
    row 2. Existing jobs are never modified.
    """

    log = structlog.get_logger().bind(component="job_queue")
    if not values:
        return IngestResult(last_row=state.last_row)

    now = clock or (lambda: datetime.now(UTC))
    headers = list(values[0] or [])
    known_keys = tracked_response_keys(state)
    known_rows = tracked_rows(state)
    created: List[str] = []
    skipped = 0
    end_row = len(values)

    for row_index in range(FIRST_DATA_ROW, end_row + 1):
        row = list(values[row_index - 1] or [])
        if all(not str(cell or "").strip() for cell in row):
            continue

        response_key = build_response_key(headers, row)
        if response_key and response_key in known_keys:
            skipped += 1
            continue
        if not response_key and row_index in known_rows:
            skipped += 1
            continue

        job = create_post_job(state, registry, headers, row, row_index, now=now())
        state.post_jobs.append(job)
        if response_key:
            known_keys.add(response_key)
        else:
            known_rows.add(row_index)
        created.append(job.job_id)
        log.info(
            "queue_job_created",
            job_id=job.job_id,
            row_index=row_index,
            track_keys=job.track_keys,
        )

    if created:
        sort_jobs(state.post_jobs)
    state.last_row = end_row
    return IngestResult(created=len(created), skipped=skipped, job_ids=created, last_row=end_row)
