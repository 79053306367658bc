"""Service order numbering.

Numbers come from a row in ``counters`` advanced with UPDATE ... RETURNING on a
connection of its own, committed before the caller's job insert. A number
claimed by a transaction that later rolls back is burned, never reissued;
gaps are fine.
"""

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession
import logging

from servicebay.config import settings
from servicebay.models.counter import Counter

logger = logging.getLogger(__name__)

SERVICE_ORDER_COUNTER = "service_order"


def format_service_order(number: int) -> str:
    return f"SO-{number:06d}"


async def _advance(conn: AsyncConnection) -> int | None:
    result = await conn.execute(
        update(Counter)
        .where(Counter.name == SERVICE_ORDER_COUNTER)
        .values(value=Counter.value + 1)
        .returning(Counter.value)
    )
    return result.scalar_one_or_none()


async def _claim(conn: AsyncConnection) -> int:
    value = await _advance(conn)
    if value is not None:
        return value

    # First use: seed the counter. A concurrent seeder wins the insert and
    # we fall back to incrementing its row.
    value = settings.SERVICE_ORDER_OFFSET + 1
    try:
        async with conn.begin_nested():
            await conn.execute(insert(Counter).values(name=SERVICE_ORDER_COUNTER, value=value))
    except IntegrityError:
        value = await _advance(conn)
    logger.info("Service order counter seeded", extra={"value": value})
    return value


async def next_service_order_number(db: AsyncSession) -> str:
    """Claim the next service order number, e.g. SO-001001.

    The claim commits on its own, so rolling back the session does not hand
    the same number to the next job.
    """
    async with db.bind.begin() as conn:
        value = await _claim(conn)
    return format_service_order(value)
