"""Visitor session store: upsert merge rules, expiry, attribution lookups."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from orderbridge.models import VisitorSession
from orderbridge.services import session_store
from orderbridge.services.session_store import (
    find_affiliate_by_visitor,
    find_most_recent_session_by_visitor,
    get_session,
    identify_visitor,
    track_session,
)

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _session(db, session_id):
    return db.query(VisitorSession).filter(VisitorSession.session_id == session_id).one()


def test_track_creates_session_with_expiry(test_db_session):
    result = track_session(
        test_db_session,
        {"site_id": "site-1", "visitor_id": "vis-1", "affiliate_id": "AFF1", "utm_source": "newsletter"},
        session_id="sess-1",
        ttl_days=30,
        now=T0,
    )

    assert result.created is True
    assert result.status == "created"
    session = _session(test_db_session, "sess-1")
    assert session.affiliate_id == "AFF1"
    assert session.utm_source == "newsletter"
    assert session.expires_at == T0 + timedelta(days=30)


def test_track_generates_session_id_when_missing(test_db_session):
    result = track_session(test_db_session, {"site_id": "site-1"}, now=T0)

    assert result.session_id
    assert get_session(test_db_session, result.session_id, now=T0) is not None


def test_track_merge_keeps_first_affiliate_and_refreshes_other_fields(test_db_session):
    track_session(test_db_session, {"affiliate_id": "AFF1", "landing_url": "https://a"}, session_id="sess-1", now=T0)

    later = T0 + timedelta(days=2)
    result = track_session(
        test_db_session,
        {"affiliate_id": "AFF2", "campaign_id": "CAMP9", "landing_url": "https://b", "utm_source": ""},
        session_id="sess-1",
        now=later,
    )

    assert result.created is False
    assert result.status == "updated"
    session = _session(test_db_session, "sess-1")
    assert session.affiliate_id == "AFF1"
    # Empty campaign filled by the newer value
    assert session.campaign_id == "CAMP9"
    assert session.landing_url == "https://b"
    assert session.expires_at == later + timedelta(days=30)
    assert test_db_session.query(VisitorSession).count() == 1


def test_expired_sessions_are_invisible(test_db_session):
    track_session(test_db_session, {"affiliate_id": "AFF1", "visitor_id": "vis-1"}, session_id="sess-1", ttl_days=1, now=T0)

    after_expiry = T0 + timedelta(days=2)
    assert get_session(test_db_session, "sess-1", now=after_expiry) is None
    assert find_affiliate_by_visitor(test_db_session, session_id="sess-1", visitor_id="vis-1", now=after_expiry) is None


def test_attribution_lookups_skip_sessions_without_affiliate(test_db_session):
    track_session(test_db_session, {"visitor_id": "vis-1", "affiliate_id": "AFF_OLD"}, session_id="old", now=T0)
    track_session(test_db_session, {"visitor_id": "vis-1"}, session_id="newer", now=T0 + timedelta(hours=1))

    found = find_most_recent_session_by_visitor(test_db_session, "vis-1", now=T0 + timedelta(hours=2))

    assert found.session_id == "old"


def test_find_affiliate_prefers_exact_session(test_db_session):
    track_session(test_db_session, {"site_id": "site-1", "visitor_id": "vis-1", "affiliate_id": "AFF_V"}, session_id="a", now=T0)
    track_session(test_db_session, {"site_id": "site-1", "affiliate_id": "AFF_S", "campaign_id": "C1"}, session_id="b", now=T0)

    hit = find_affiliate_by_visitor(
        test_db_session, session_id="b", visitor_id="vis-1", site_id="site-1", now=T0 + timedelta(minutes=5)
    )

    assert (hit.affiliate_id, hit.campaign_id, hit.source) == ("AFF_S", "C1", "session")


def test_find_affiliate_by_visitor_respects_site(test_db_session):
    track_session(test_db_session, {"site_id": "other", "visitor_id": "vis-1", "affiliate_id": "AFF_X"}, session_id="a", now=T0)

    hit = find_affiliate_by_visitor(test_db_session, visitor_id="vis-1", site_id="site-1", now=T0)

    assert hit is None


def test_site_recent_window_is_24_hours(test_db_session):
    track_session(test_db_session, {"site_id": "site-1", "affiliate_id": "AFF1"}, session_id="a", now=T0)

    within = find_affiliate_by_visitor(test_db_session, site_id="site-1", now=T0 + timedelta(hours=23))
    outside = find_affiliate_by_visitor(test_db_session, site_id="site-1", now=T0 + timedelta(hours=25))

    assert within.source == "site_recent"
    assert outside is None


def test_identify_merges_identity_and_extends_expiry(test_db_session):
    track_session(test_db_session, {"visitor_id": "vis-1", "site_id": "site-1"}, session_id="sess-1", ttl_days=1, now=T0)
    identify_visitor(test_db_session, {"email": "a@example.com"}, session_id="sess-1", ttl_days=1, now=T0)

    later = T0 + timedelta(hours=12)
    session = identify_visitor(
        test_db_session,
        {"phone": "+3100000000", "email": None},
        visitor_id="vis-1",
        site_id="site-1",
        ttl_days=1,
        now=later,
    )

    assert session.session_id == "sess-1"
    assert session.identity["email"] == "a@example.com"
    assert session.identity["phone"] == "+3100000000"
    assert session.identity["identifiedAt"] == later.isoformat()
    assert session.expires_at == later + timedelta(days=1)


def test_identify_unknown_session_returns_none(test_db_session):
    assert identify_visitor(test_db_session, {"email": "a@example.com"}, session_id="missing", now=T0) is None


def test_track_merges_when_session_created_concurrently(test_db_session, test_session_factory, monkeypatch):
    late = test_session_factory()
    add = late.add

    def add_after_other_request(instance):
        # The other request wins the insert between lookup and commit
        track_session(test_db_session, {"affiliate_id": "AFF1"}, session_id="race", now=T0)
        add(instance)

    monkeypatch.setattr(late, "add", add_after_other_request)
    try:
        result = track_session(
            late,
            {"affiliate_id": "AFF2", "landing_url": "https://b"},
            session_id="race",
            now=T0 + timedelta(minutes=1),
        )
    finally:
        late.close()

    assert result.created is False
    test_db_session.expire_all()
    session = _session(test_db_session, "race")
    assert session.affiliate_id == "AFF1"
    assert session.landing_url == "https://b"
    assert session.expires_at == T0 + timedelta(minutes=1, days=30)


def test_find_affiliate_returns_none_when_lookup_fails(test_db_session, monkeypatch, caplog):
    track_session(test_db_session, {"affiliate_id": "AFF1"}, session_id="sess-1", now=T0)

    def broken_lookup(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("db down"))

    monkeypatch.setattr(session_store, "find_session", broken_lookup)

    with caplog.at_level(logging.ERROR, logger="orderbridge.services.session_store"):
        assert find_affiliate_by_visitor(test_db_session, session_id="sess-1", now=T0) is None

    assert "Session lookup failed" in caplog.text
