"""Bulk tag value ingestion: appends samples and drives notification rules."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from core.durations import as_naive_utc, utcnow
from models.base import get_session
from models.tag import Tag, TagValue
from notifications.conditions import TagChange

router = APIRouter(prefix="/api/tags", tags=["tags"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class TagValueIn(BaseModel):
    tag_id: int
    value: str
    timestamp: datetime | None = None


class RuleOutcomeOut(BaseModel):
    event_id: int
    action: str
    notifications: int = 0
    detail: str | None = None


class TagValuesOut(BaseModel):
    stored: int
    unknown_tags: list[int]
    rules: list[RuleOutcomeOut]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/values", response_model=TagValuesOut)
async def ingest_tag_values(
    values: list[TagValueIn],
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> TagValuesOut:
    """Store new values, update current values, then evaluate rules."""
    changes: list[TagChange] = []
    unknown: list[int] = []

    received_at = utcnow()
    samples = sorted(
        ((item, as_naive_utc(item.timestamp) or received_at) for item in values),
        key=lambda pair: pair[1],
    )
    for item, ts in samples:
        tag = await session.get(Tag, item.tag_id)
        if tag is None:
            unknown.append(item.tag_id)
            continue
        session.add(TagValue(tag_id=tag.id, value=item.value, created_at=ts))
        changes.append(TagChange(
            tag_id=tag.id, new_value=item.value, old_value=tag.current_value, timestamp=ts,
        ))
        tag.current_value = item.value
    await session.commit()

    outcomes = await request.app.state.dispatcher.check_and_trigger(changes)
    return TagValuesOut(
        stored=len(changes),
        unknown_tags=unknown,
        rules=[RuleOutcomeOut(**vars(o)) for o in outcomes],
    )
