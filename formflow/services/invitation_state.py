"""Invitation state machine.

All status changes go through ``transition``, which checks the move against
TRANSITIONS and then applies it as a conditional UPDATE on the expected prior
status. Two racing writers cannot both succeed: the loser's UPDATE matches no
row and raises InvalidTransitionError.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from formflow.db.enums import FormInvitationStatus as Status
from formflow.db.models import FormInvitation
from formflow.services.exceptions import InvalidTransitionError

TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.PENDING: frozenset({Status.SENT, Status.FAILED, Status.VIEWED, Status.EXPIRED}),
    Status.SENT: frozenset({Status.VIEWED, Status.ANSWERED, Status.FAILED, Status.EXPIRED}),
    Status.VIEWED: frozenset({Status.ANSWERED, Status.EXPIRED}),
    Status.ANSWERED: frozenset(),
    Status.EXPIRED: frozenset(),
    Status.FAILED: frozenset(),
}


def can_transition(current: Status | str, target: Status | str) -> bool:
    return Status(target) in TRANSITIONS[Status(current)]


def transition(
    db: Session,
    invitation: FormInvitation,
    target: Status | str,
    expected: Iterable[Status | str] | None = None,
    **values: Any,
) -> FormInvitation:
    """
    Move ``invitation`` to ``target`` if it is still in one of ``expected``.

    ``expected`` defaults to the status currently loaded on the object.
    Extra keyword arguments are written in the same UPDATE (timestamps,
    error messages). The caller owns the commit.

    Raises:
        InvalidTransitionError: The move is not in the table, or the row
            changed status since it was read
    """
    target = Status(target)
    sources = [Status(s) for s in (expected or [invitation.status])]
    allowed = [s.value for s in sources if target in TRANSITIONS[s]]
    if not allowed:
        raise InvalidTransitionError(invitation.status, target.value)

    result = db.execute(
        update(FormInvitation)
        .where(FormInvitation.id == invitation.id, FormInvitation.status.in_(allowed))
        .values(status=target.value, updated_at=datetime.now(timezone.utc), **values)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        db.refresh(invitation)
        raise InvalidTransitionError(invitation.status, target.value)
    return invitation
