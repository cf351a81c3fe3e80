"""Dedup filter: turns dropped files into new queue records."""

import logging
import uuid
from collections.abc import Iterable

from dropqueue.services.models import FileRef, IdentityKey, JobRecord

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    """Generate an opaque job identifier."""
    return uuid.uuid4().hex


def accept(
    candidates: Iterable[FileRef],
    existing_jobs: Iterable[JobRecord],
) -> tuple[list[JobRecord], list[FileRef]]:
    """Filter dropped files against the jobs already in the queue.

    A candidate whose (name, size) key matches any existing record, whatever
    its status, is dropped; a failed or completed file comes back only through
    an explicit retry. Duplicates inside the same batch collapse onto the first
    occurrence.

    Args:
        candidates: Files from one drop event, in drop order
        existing_jobs: Current queue contents

    Returns:
        Tuple of (new queued records, dropped candidates)
    """
    seen: set[IdentityKey] = {job.identity_key for job in existing_jobs}
    accepted: list[JobRecord] = []
    dropped: list[FileRef] = []

    for file in candidates:
        key = file.identity_key
        if key in seen:
            logger.debug("Dropping duplicate upload intent %s (%d bytes)", file.name, file.size)
            dropped.append(file)
            continue
        seen.add(key)
        accepted.append(JobRecord(id=new_job_id(), file=file))

    return accepted, dropped
