"""Visitor session tracking endpoints (called by the browser SDK).

WHAT:
    - POST /track/session (alias POST /visitor/session): create or merge a session
    - GET /track/session/{session_id}: live session lookup
    - POST /visitor/identify: link email/phone/customer to the session

WHY:
    Sessions carry the affiliate seen at landing time to checkout, where the
    order webhook no longer knows where the buyer came from.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from orderbridge.database import get_db
from orderbridge.deps import Settings, get_settings
from orderbridge.schemas import (
    IdentifyVisitorRequest,
    TrackSessionRequest,
    TrackSessionResponse,
    VisitorSessionOut,
)
from orderbridge.services.session_store import get_session, identify_visitor, track_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Visitor Tracking"])


def client_ip(request: Request, body_ip: Optional[str]) -> Optional[str]:
    """IP from the body, else the first X-Forwarded-For hop, else the peer address."""
    if body_ip:
        return body_ip
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


@router.post("/track/session", response_model=TrackSessionResponse)
@router.post("/visitor/session", response_model=TrackSessionResponse)
def track_visitor_session(
    payload: TrackSessionRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Capture affiliate/campaign context for a visitor session.

    201 when the session is new, 200 when an existing one was merged.
    """
    fields = payload.session_fields()
    fields["ip_address"] = client_ip(request, payload.ip_address)
    fields["user_agent"] = payload.user_agent or request.headers.get("user-agent")

    result = track_session(db, fields, session_id=payload.session_id, ttl_days=settings.SESSION_TTL_DAYS)
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return TrackSessionResponse(status=result.status, sessionId=result.session_id)


@router.get("/track/session/{session_id}", response_model=VisitorSessionOut)
def read_visitor_session(session_id: str, db: Session = Depends(get_db)):
    session = get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found or expired")
    return session


@router.post("/visitor/identify")
def identify(
    payload: IdentifyVisitorRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Link identity fields to the visitor's live session."""
    if not payload.session_id and not payload.visitor_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sessionId or visitorId is required")

    session = identify_visitor(
        db,
        payload.identity(),
        session_id=payload.session_id,
        visitor_id=payload.visitor_id,
        site_id=payload.site_id,
        ttl_days=settings.SESSION_TTL_DAYS,
    )
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found or expired")

    return {"status": "identified", "sessionId": session.session_id}
