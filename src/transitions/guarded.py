"""Status writes guarded on the status the caller read.

``compare_and_set_status`` issues ``UPDATE ... WHERE id = :id AND status =
:expected`` and treats any other rowcount as a lost race: the row is
re-read and the move is reported as an ``InvalidTransitionError`` against the
status actually stored. The caller owns the transaction and rolls back on
error.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from errors import InvalidTransitionError, NotFoundError
from transitions.tables import ENTITY_LABELS, EntityType
from transitions.validation import validate_transition

logger = logging.getLogger(__name__)


def compare_and_set_status(
    session: Session,
    model: Any,
    entity_type: EntityType,
    entity_id: int,
    *,
    expected_status: Enum,
    new_status: Enum,
    values: Mapping[str, Any] | None = None,
    conditions: Iterable[Any] = (),
) -> None:
    """Move ``entity_id`` from ``expected_status`` to ``new_status``.

    ``values`` are written in the same statement. Objects already loaded in
    ``session`` are synchronized with the written values.
    """
    stmt = (
        update(model)
        .where(model.id == entity_id, model.status == expected_status, *conditions)
        .values(**dict(values or {}), status=new_status)
    )
    result = session.execute(stmt)
    if result.rowcount == 1:
        return

    current = session.execute(select(model.status).where(model.id == entity_id)).scalar_one_or_none()
    if current is None:
        raise NotFoundError(model.__name__, entity_id)
    verdict = validate_transition(entity_type, current, new_status)
    reason = verdict.reason or (
        f"Status of {ENTITY_LABELS[entity_type]} changed from "
        f"{expected_status.value} to {verdict.current_status} during the update"
    )
    logger.warning(
        "Guarded status write lost: %s id=%s expected=%s found=%s",
        entity_type.value,
        entity_id,
        expected_status.value,
        verdict.current_status,
    )
    raise InvalidTransitionError(
        reason,
        entity_type=entity_type.value,
        current_status=verdict.current_status,
        requested_status=verdict.requested_status,
    )
