"""Per-item plumbing shared by the batch processors."""

from __future__ import annotations

import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Sequence

from observability import log_context

logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    """What happened to one item of a batch."""

    SENT = "sent"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"
    SKIPPED = "skipped"
    CLAIM_LOST = "claim_lost"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        return self in (
            AttemptOutcome.FAILED,
            AttemptOutcome.PERMANENTLY_FAILED,
            AttemptOutcome.ERROR,
        )


def isolated(
    entity_type: str,
    worker: Callable[[int], AttemptOutcome],
) -> Callable[[int], AttemptOutcome]:
    """Wrap ``worker`` so an unexpected exception is logged and counted as ERROR."""

    def run(entity_id: int) -> AttemptOutcome:
        with log_context({"entity_type": entity_type, "entity_id": entity_id}):
            try:
                return worker(entity_id)
            except Exception:
                logger.exception("Unexpected failure processing %s %s", entity_type, entity_id)
                return AttemptOutcome.ERROR

    return run


def run_items(
    items: Sequence[int],
    worker: Callable[[int], AttemptOutcome],
    max_workers: int,
) -> list[AttemptOutcome]:
    """Run ``worker`` over ``items``, in parallel when ``max_workers`` > 1.

    Items are distinct rows, so parallel workers never touch the same row.
    Each worker runs in a copy of the caller's context so bound log fields
    carry over.
    """
    if max_workers <= 1 or len(items) <= 1:
        return [worker(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="batch") as pool:
        futures = [pool.submit(contextvars.copy_context().run, worker, item) for item in items]
        return [future.result() for future in futures]
