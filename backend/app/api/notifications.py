"""REST API for notification acknowledgment (public link + by id)."""
from __future__ import annotations

from datetime import datetime
from html import escape

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from core.errors import EntityNotFoundError, InvalidTokenError, LineWatchError, TokenExpiredError

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class AcknowledgeOut(BaseModel):
    notification_id: int
    acknowledged_at: datetime
    already_acknowledged: bool = False
    escalation_cancelled: bool = False


_STATUS_BY_ERROR = (
    (InvalidTokenError, 400),
    (TokenExpiredError, 410),
    (EntityNotFoundError, 404),
)


def _status_for(exc: LineWatchError) -> int:
    for error_cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status
    return 500


def _page(title: str, text: str, status_code: int = 200) -> HTMLResponse:
    html = (
        f"<html><head><title>{escape(title)}</title></head>"
        f"<body><h2>{escape(title)}</h2><p>{escape(text)}</p></body></html>"
    )
    return HTMLResponse(html, status_code=status_code)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/acknowledge/{token}", response_class=HTMLResponse)
async def acknowledge_by_token(token: str, request: Request) -> HTMLResponse:
    """Public acknowledgment link sent in alert e-mails."""
    dispatcher = request.app.state.dispatcher
    try:
        result = await dispatcher.acknowledge_by_token(token)
    except LineWatchError as exc:
        return _page("Acknowledgment failed", str(exc), status_code=_status_for(exc))

    if result.already_acknowledged:
        return _page(
            "Already acknowledged",
            f"This alert was acknowledged at {result.acknowledged_at:%Y-%m-%d %H:%M} UTC.",
        )
    return _page("Alert acknowledged", "Thank you, further escalation has been stopped.")


@router.post("/{notification_id}/acknowledge", response_model=AcknowledgeOut)
async def acknowledge(notification_id: int, request: Request) -> AcknowledgeOut:
    dispatcher = request.app.state.dispatcher
    try:
        result = await dispatcher.on_notification_acknowledged(notification_id)
    except LineWatchError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=exc.to_dict()) from exc
    return AcknowledgeOut(
        notification_id=result.notification_id,
        acknowledged_at=result.acknowledged_at,
        already_acknowledged=result.already_acknowledged,
        escalation_cancelled=result.escalation_cancelled,
    )
