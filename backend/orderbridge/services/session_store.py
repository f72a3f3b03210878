"""Visitor session store.

WHAT:
    Persists visitor sessions captured by the tracking SDK and answers the
    attribution lookups (by session id, by visitor id, by site).

WHY:
    Affiliate context is captured at landing time, long before checkout.
    Sessions bridge that gap until they expire.

NOTES:
    - Sessions are never deleted; every lookup filters on `expires_at > now`.
    - Attribution lookups only return sessions carrying an affiliate.
    - Upserts keep the first known affiliate/campaign (first attribution wins),
      other fields refresh with newer non-empty values, expiry slides forward.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orderbridge.models import VisitorSession, utcnow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_DAYS = 30
SITE_RECENT_WINDOW = timedelta(hours=24)

# Fields that keep their first non-empty value
FIRST_WINS_FIELDS = ("affiliate_id", "campaign_id")
# Fields refreshed by newer non-empty values
REFRESHED_FIELDS = (
    "site_id",
    "visitor_id",
    "product_id",
    "landing_url",
    "referrer_url",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "ip_address",
    "user_agent",
    "country",
    "device_type",
)
IDENTITY_FIELDS = ("email", "phone", "customerId", "orderId")


@dataclass
class TrackResult:
    session_id: str
    created: bool

    @property
    def status(self) -> str:
        return "created" if self.created else "updated"


@dataclass
class SessionAttribution:
    affiliate_id: str
    campaign_id: Optional[str]
    product_id: Optional[str]
    source: str  # session | visitor_id | site_recent


# =============================================================================
# WRITES
# =============================================================================

def _load(db: Session, session_id: str) -> Optional[VisitorSession]:
    return db.query(VisitorSession).filter(VisitorSession.session_id == session_id).first()


def _merge(
    db: Session,
    existing: VisitorSession,
    fields: Dict[str, Any],
    expires_at: datetime,
    now: datetime,
) -> TrackResult:
    for name in FIRST_WINS_FIELDS:
        if not getattr(existing, name) and fields.get(name):
            setattr(existing, name, fields[name])
    for name in REFRESHED_FIELDS:
        if fields.get(name):
            setattr(existing, name, fields[name])
    existing.expires_at = expires_at
    existing.updated_at = now
    db.commit()
    logger.debug("[SESSION] Updated session %s (affiliate=%s)", existing.session_id, existing.affiliate_id)
    return TrackResult(session_id=existing.session_id, created=False)


def track_session(
    db: Session,
    fields: Dict[str, Any],
    session_id: Optional[str] = None,
    ttl_days: int = DEFAULT_SESSION_TTL_DAYS,
    now: Optional[datetime] = None,
) -> TrackResult:
    """Create or merge a visitor session.

    Args:
        db: Database session
        fields: Column-named values (`affiliate_id`, `utm_source`, ...); empty values are ignored
        session_id: Client session id; a random UUID is generated when missing
        ttl_days: Expiry window from this write
        now: Clock override (tests)
    """
    now = now or utcnow()
    session_id = session_id or str(uuid.uuid4())
    expires_at = now + timedelta(days=ttl_days)

    existing = _load(db, session_id)
    if existing:
        return _merge(db, existing, fields, expires_at, now)

    values = {name: fields.get(name) or None for name in FIRST_WINS_FIELDS + REFRESHED_FIELDS}
    db.add(VisitorSession(
        session_id=session_id,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
        **values,
    ))
    try:
        db.commit()
    except IntegrityError:
        # Another request created the same session between lookup and insert
        db.rollback()
        existing = _load(db, session_id)
        if existing is None:
            raise
        logger.info("[SESSION] Session %s created concurrently, merging", session_id)
        return _merge(db, existing, fields, expires_at, now)
    logger.info("[SESSION] Created session %s (site=%s, affiliate=%s)", session_id, values["site_id"], values["affiliate_id"])
    return TrackResult(session_id=session_id, created=True)


def identify_visitor(
    db: Session,
    identity: Dict[str, Any],
    session_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
    site_id: Optional[str] = None,
    ttl_days: int = DEFAULT_SESSION_TTL_DAYS,
    now: Optional[datetime] = None,
) -> Optional[VisitorSession]:
    """Link identity (email, phone, customerId, orderId) to a live session.

    The session is located by `session_id`, else by the most recent live
    session of `visitor_id` (optionally on `site_id`). Returns None when no
    session matches.
    """
    now = now or utcnow()
    query = db.query(VisitorSession).filter(VisitorSession.expires_at > now)

    session = None
    if session_id:
        session = query.filter(VisitorSession.session_id == session_id).first()
    if session is None and visitor_id:
        by_visitor = query.filter(VisitorSession.visitor_id == visitor_id)
        if site_id:
            by_visitor = by_visitor.filter(VisitorSession.site_id == site_id)
        session = by_visitor.order_by(VisitorSession.created_at.desc()).first()
    if session is None:
        return None

    merged = dict(session.identity or {})
    merged.update({key: identity[key] for key in IDENTITY_FIELDS if identity.get(key)})
    merged["identifiedAt"] = now.isoformat()
    # Reassign so the JSON column is flagged dirty
    session.identity = merged
    session.expires_at = now + timedelta(days=ttl_days)
    session.updated_at = now
    db.commit()

    logger.info("[SESSION] Identified session %s (%s)", session.session_id, ", ".join(sorted(k for k in merged if k in IDENTITY_FIELDS)))
    return session


# =============================================================================
# LOOKUPS
# =============================================================================

def get_session(db: Session, session_id: str, now: Optional[datetime] = None) -> Optional[VisitorSession]:
    """Live session by id, with or without attribution."""
    now = now or utcnow()
    return (
        db.query(VisitorSession)
        .filter(VisitorSession.session_id == session_id, VisitorSession.expires_at > now)
        .first()
    )


def _attributed(db: Session, now: datetime):
    return db.query(VisitorSession).filter(
        VisitorSession.expires_at > now,
        VisitorSession.affiliate_id.isnot(None),
        VisitorSession.affiliate_id != "",
    )


def find_session(db: Session, session_id: str, now: Optional[datetime] = None) -> Optional[VisitorSession]:
    now = now or utcnow()
    return _attributed(db, now).filter(VisitorSession.session_id == session_id).first()


def find_most_recent_session_by_visitor(
    db: Session,
    visitor_id: str,
    site_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[VisitorSession]:
    now = now or utcnow()
    query = _attributed(db, now).filter(VisitorSession.visitor_id == visitor_id)
    if site_id:
        query = query.filter(VisitorSession.site_id == site_id)
    return query.order_by(VisitorSession.created_at.desc()).first()


def find_most_recent_session_by_site(
    db: Session,
    site_id: str,
    since: datetime,
    now: Optional[datetime] = None,
) -> Optional[VisitorSession]:
    now = now or utcnow()
    return (
        _attributed(db, now)
        .filter(VisitorSession.site_id == site_id, VisitorSession.created_at > since)
        .order_by(VisitorSession.created_at.desc())
        .first()
    )


def find_affiliate_by_visitor(
    db: Session,
    session_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
    site_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[SessionAttribution]:
    """Session-based attribution: exact session, then visitor, then site (24h)."""
    now = now or utcnow()

    lookups = []
    if session_id:
        lookups.append(("session", lambda: find_session(db, session_id, now=now)))
    if visitor_id:
        lookups.append(("visitor_id", lambda: find_most_recent_session_by_visitor(db, visitor_id, site_id, now=now)))
    if site_id:
        lookups.append(("site_recent", lambda: find_most_recent_session_by_site(db, site_id, now - SITE_RECENT_WINDOW, now=now)))

    for source, lookup in lookups:
        try:
            session = lookup()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[SESSION] Session lookup failed (%s): %s", source, e)
            return None
        if session is not None and session.affiliate_id:
            return SessionAttribution(
                affiliate_id=session.affiliate_id,
                campaign_id=session.campaign_id,
                product_id=session.product_id,
                source=source,
            )
    return None
