"""
UTM attribution — pull campaign parameters off a request and persist them
once per user at signup.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import UtmSource

logger = logging.getLogger(__name__)

# query parameter → UtmSource column
_UTM_FIELDS = {
    "utm_source": "source",
    "utm_medium": "medium",
    "utm_campaign": "campaign",
    "utm_term": "term",
    "utm_content": "content",
    "ref": "referrer",
}


def extract_utm_params(params: Mapping[str, str]) -> Optional[Dict[str, str]]:
    """Return the non-empty UTM fields, or ``None`` if none are present."""
    found = {
        column: params[name][:255]
        for name, column in _UTM_FIELDS.items()
        if params.get(name)
    }
    return found or None


async def store_utm_source(
    session: AsyncSession,
    user_id: uuid.UUID,
    utm: Dict[str, str],
) -> Optional[UtmSource]:
    """Store attribution for a user; the first recorded source wins."""
    existing = await session.execute(select(UtmSource).where(UtmSource.user_id == user_id))
    if existing.scalar_one_or_none() is not None:
        return None
    row = UtmSource(user_id=user_id, **utm)
    session.add(row)
    await session.flush()
    logger.debug("Stored UTM attribution for %s: %s", user_id, utm)
    return row
