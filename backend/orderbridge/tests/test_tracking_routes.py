"""Visitor tracking endpoints used by the browser SDK."""

from orderbridge.models import VisitorSession


def test_track_session_created_then_updated(client, test_db_session):
    body = {"sessionId": "sess-1", "visitorId": "vis-1", "siteId": "site-1", "affiliateId": "AFF1", "utm_source": "ig"}

    created = client.post("/track/session", json=body)
    updated = client.post("/visitor/session", json={"sessionId": "sess-1", "affiliateId": "AFF2", "campaignId": "C1"})

    assert created.status_code == 201
    assert created.json() == {"status": "created", "sessionId": "sess-1"}
    assert updated.status_code == 200
    assert updated.json() == {"status": "updated", "sessionId": "sess-1"}

    session = test_db_session.query(VisitorSession).one()
    assert session.affiliate_id == "AFF1"
    assert session.campaign_id == "C1"
    assert session.utm_source == "ig"


def test_track_session_generates_id(client):
    response = client.post("/track/session", json={"siteId": "site-1"})

    assert response.status_code == 201
    assert response.json()["sessionId"]


def test_client_ip_from_forwarded_header(client, test_db_session):
    client.post(
        "/track/session",
        json={"sessionId": "sess-ip"},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "sdk-test"},
    )

    session = test_db_session.query(VisitorSession).one()
    assert session.ip_address == "203.0.113.7"
    assert session.user_agent == "sdk-test"


def test_read_session(client):
    client.post("/track/session", json={"sessionId": "sess-1", "affiliateId": "AFF1"})

    response = client.get("/track/session/sess-1")

    assert response.status_code == 200
    data = response.json()
    assert data["session_id"] == "sess-1"
    assert data["affiliate_id"] == "AFF1"
    assert "metadata" in data


def test_read_unknown_session_is_404(client):
    assert client.get("/track/session/nope").status_code == 404


def test_identify_links_identity(client):
    client.post("/track/session", json={"sessionId": "sess-1", "visitorId": "vis-1"})

    response = client.post("/visitor/identify", json={"visitorId": "vis-1", "email": "buyer@example.com"})

    assert response.status_code == 200
    assert response.json() == {"status": "identified", "sessionId": "sess-1"}
    assert client.get("/track/session/sess-1").json()["metadata"]["email"] == "buyer@example.com"


def test_identify_requires_session_or_visitor(client):
    assert client.post("/visitor/identify", json={"email": "buyer@example.com"}).status_code == 400


def test_identify_unknown_session_is_404(client):
    assert client.post("/visitor/identify", json={"sessionId": "missing"}).status_code == 404
