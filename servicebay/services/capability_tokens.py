"""Single-use capability tokens for emailed approve/reject links.

A token authorizes exactly one (subject_type, subject_id, action). It is spent
with a conditional UPDATE, so concurrent clicks on the same link resolve to a
single winner. Superseding state changes revoke every open token of a subject.
"""

from datetime import datetime
import logging
import secrets

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from servicebay.exceptions import InvalidTokenError
from servicebay.models.capability_token import CapabilityToken

logger = logging.getLogger(__name__)

SUBJECT_JOB = "job"
SUBJECT_MEMBERSHIP = "membership"

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"


async def mint(db: AsyncSession, subject_type: str, subject_id: int, action: str) -> str:
    """Add a fresh token to the session. The caller commits."""
    value = secrets.token_hex(32)
    db.add(CapabilityToken(
        token=value,
        subject_type=subject_type,
        subject_id=subject_id,
        action=action,
    ))
    return value


async def consume(
    db: AsyncSession,
    token: str,
    subject_type: str,
    action: str,
    subject_id: int | None = None,
) -> int:
    """Spend a token and return its subject id.

    Raises InvalidTokenError when the token is unknown, already spent, revoked,
    or scoped to a different subject or action.
    """
    if not token:
        raise InvalidTokenError()

    conditions = [
        CapabilityToken.token == token,
        CapabilityToken.subject_type == subject_type,
        CapabilityToken.action == action,
        CapabilityToken.consumed_at.is_(None),
        CapabilityToken.revoked_at.is_(None),
    ]
    if subject_id is not None:
        conditions.append(CapabilityToken.subject_id == subject_id)

    result = await db.execute(
        update(CapabilityToken)
        .where(*conditions)
        .values(consumed_at=datetime.utcnow())
        .returning(CapabilityToken.subject_id)
    )
    spent = result.scalar_one_or_none()
    if spent is None:
        logger.info("Capability token rejected", extra={"subject_type": subject_type, "action": action})
        raise InvalidTokenError()
    return spent


async def revoke_all(db: AsyncSession, subject_type: str, subject_id: int) -> int:
    """Revoke every open token for a subject. Returns the number revoked."""
    result = await db.execute(
        update(CapabilityToken)
        .where(
            CapabilityToken.subject_type == subject_type,
            CapabilityToken.subject_id == subject_id,
            CapabilityToken.consumed_at.is_(None),
            CapabilityToken.revoked_at.is_(None),
        )
        .values(revoked_at=datetime.utcnow())
    )
    return result.rowcount or 0
