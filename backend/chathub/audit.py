"""Best-effort activity log.

Audit rows are written in a savepoint after the primary change has been staged,
so a failing insert rolls back only itself and never the operation it describes.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Activity

logger = logging.getLogger(__name__)


async def record(
    db: AsyncSession,
    user_id: int | None,
    activity_type: str,
    description: str,
    metadata: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    await db.flush()
    try:
        async with db.begin_nested():
            db.add(Activity(
                user_id=user_id,
                activity_type=activity_type,
                description=description,
                metadata_json=metadata,
                ip_address=ip_address,
                user_agent=user_agent,
            ))
    except SQLAlchemyError:
        logger.warning("Could not record activity %s for user %s", activity_type, user_id, exc_info=True)
