"""Compare-and-set claims over persisted rows.

A claim moves a row into an in-flight status in one ``UPDATE ... WHERE
status IN (...)`` statement and stamps ``claimed_at`` and a random
``claim_token``. Exactly one of several concurrent callers sees
``rowcount == 1``. A claim older than the lease window is stale and may be
taken over by a later invocation. Results are written back only while the
caller's token is still on the row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping
from uuid import uuid4

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claim:
    """Exclusive ownership of one row's next processing step."""

    entity_id: int
    token: str
    claimed_at: datetime
    in_flight_status: Enum


def stale_cutoff(now: datetime, lease_seconds: int) -> datetime:
    """Return the instant before which an in-flight claim is considered abandoned."""
    return now - timedelta(seconds=lease_seconds)


def try_claim(
    session: Session,
    model: Any,
    entity_id: int,
    *,
    from_statuses: Iterable[Enum],
    in_flight_status: Enum,
    now: datetime,
    lease_seconds: int,
    conditions: Iterable[Any] = (),
    values: Mapping[str, Any] | None = None,
) -> Claim | None:
    """Atomically claim ``entity_id``; return ``None`` if another caller owns it.

    The caller commits the session so concurrent invocations observe the claim.
    ``values`` are written together with the claim columns.
    """
    token = uuid4().hex
    claimable = or_(
        model.status.in_(list(from_statuses)),
        and_(
            model.status == in_flight_status,
            model.claimed_at <= stale_cutoff(now, lease_seconds),
        ),
    )
    stmt = (
        update(model)
        .where(model.id == entity_id, claimable, *conditions)
        .values(**dict(values or {}), status=in_flight_status, claimed_at=now, claim_token=token)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount != 1:
        return None
    return Claim(entity_id=entity_id, token=token, claimed_at=now, in_flight_status=in_flight_status)


def finish_claim(
    session: Session,
    model: Any,
    claim: Claim,
    values: Mapping[str, Any],
) -> bool:
    """Write ``values`` and release the claim if the caller still holds it."""
    stmt = (
        update(model)
        .where(
            model.id == claim.entity_id,
            model.claim_token == claim.token,
            model.status == claim.in_flight_status,
        )
        .values(**values, claimed_at=None, claim_token=None)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount != 1:
        logger.warning(
            "Claim lost before completion: model=%s id=%s",
            getattr(model, "__tablename__", model),
            claim.entity_id,
        )
        return False
    return True
