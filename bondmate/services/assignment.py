from dataclasses import dataclass

from bondmate.core.errors import ConflictError
from bondmate.db.models import User
from bondmate.services.store import active_partner


@dataclass
class AssignmentResult:
    ok: bool
    reason: str | None = None
    # user id of the partner blocking the assignment, if any
    previous_partner: int | None = None


def check_assignment(from_user: User, to_user: User) -> AssignmentResult:
    """Both users must be free of an active partner.

    Callers run this on rows locked inside the write transaction; a check
    made before the lock only gives the client an early answer.
    """
    sender_partner = active_partner(from_user)
    if sender_partner is not None:
        return AssignmentResult(
            ok=False,
            reason="Sender already has an active partner",
            previous_partner=sender_partner.partner_id,
        )

    recipient_partner = active_partner(to_user)
    if recipient_partner is not None:
        return AssignmentResult(
            ok=False,
            reason="Recipient already has an active partner",
            previous_partner=recipient_partner.partner_id,
        )

    return AssignmentResult(ok=True)


def ensure_assignable(from_user: User, to_user: User) -> None:
    result = check_assignment(from_user, to_user)
    if not result.ok:
        raise ConflictError(
            result.reason,
            {"user_ids": [from_user.id, to_user.id], "previous_partner": result.previous_partner},
        )
