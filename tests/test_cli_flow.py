"""CLI session (browser redirect) flow tests."""

import uuid
from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import fetch_one
from skillsauth.auth.codec import s256_challenge
from skillsauth.db.models import ApiToken, CliAuthSession
from skillsauth.errors import AlreadyConsumed, Expired, InvalidInput, NotFound
from skillsauth.services.cli_flow import CliFlowService, with_query

CALLBACK = "http://localhost:8976/callback"
STATE = "s" * 40


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


# ═══════════════════════════════════════════════════════════
# Session creation
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_create_session(db_session, clock):
    created = await CliFlowService(db_session, clock).create_session(CALLBACK, state=STATE)
    assert created.state == STATE
    assert created.expires_in == 300

    row = await fetch_one(db_session, CliAuthSession)
    assert row.id == created.session_id
    assert row.status == "pending"
    assert row.auth_code_hash is None
    assert row.scopes == ["read", "write", "publish"]


@pytest.mark.asyncio
async def test_create_session_generates_state(db_session, clock):
    created = await CliFlowService(db_session, clock).create_session(CALLBACK)
    assert len(created.state) >= 32


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "callback",
    ["https://localhost:8976/callback", "http://evil.example.com/callback", "http://localhost/x"],
)
async def test_create_session_rejects_remote_callback(db_session, clock, callback):
    with pytest.raises(InvalidInput) as exc:
        await CliFlowService(db_session, clock).create_session(callback, state=STATE)
    assert exc.value.code == "invalid_callback_url"


@pytest.mark.asyncio
async def test_create_session_rejects_short_state(db_session, clock):
    with pytest.raises(InvalidInput) as exc:
        await CliFlowService(db_session, clock).create_session(CALLBACK, state="short")
    assert exc.value.code == "invalid_state"


@pytest.mark.asyncio
async def test_create_session_validates_pkce(db_session, clock):
    service = CliFlowService(db_session, clock)
    with pytest.raises(InvalidInput):
        await service.create_session(CALLBACK, state=STATE, code_challenge="abc")
    with pytest.raises(InvalidInput):
        await service.create_session(
            CALLBACK, state=STATE, code_challenge="too-short", code_challenge_method="S256"
        )


# ═══════════════════════════════════════════════════════════
# Authorize
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_approve_redirects_with_code_and_state(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    created = await service.create_session(CALLBACK, state=STATE)

    url = await service.authorize(created.session_id, user.id, "approve")
    assert url.startswith(CALLBACK + "?")
    params = _query(url)
    assert params["state"] == STATE
    assert len(params["code"]) == 64

    row = await fetch_one(db_session, CliAuthSession)
    assert row.status == "approved"
    assert row.user_id == user.id
    assert row.auth_code_hash is not None
    assert row.auth_code_hash != params["code"]


@pytest.mark.asyncio
async def test_deny_redirects_with_access_denied_and_state(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    created = await service.create_session(CALLBACK, state=STATE)

    url = await service.authorize(created.session_id, user.id, "deny")
    assert _query(url) == {"error": "access_denied", "state": STATE}

    row = await fetch_one(db_session, CliAuthSession)
    assert row.status == "denied"
    assert row.user_id is None


@pytest.mark.asyncio
async def test_authorize_is_one_shot(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    created = await service.create_session(CALLBACK, state=STATE)
    await service.authorize(created.session_id, user.id, "approve")

    with pytest.raises(AlreadyConsumed):
        await service.authorize(created.session_id, user.id, "approve")
    with pytest.raises(AlreadyConsumed):
        await service.authorize(created.session_id, user.id, "deny")


@pytest.mark.asyncio
async def test_authorize_unknown_and_expired(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    with pytest.raises(NotFound):
        await service.authorize(uuid.uuid4(), user.id, "approve")

    created = await service.create_session(CALLBACK, state=STATE)
    clock.advance(seconds=301)
    with pytest.raises(Expired):
        await service.authorize(created.session_id, user.id, "approve")
    row = await fetch_one(db_session, CliAuthSession)
    assert row.status == "expired"

    with pytest.raises(NotFound):
        await service.get_session(created.session_id)


# ═══════════════════════════════════════════════════════════
# Code exchange
# ═══════════════════════════════════════════════════════════


async def _approved(service, user, **kwargs) -> tuple[uuid.UUID, str]:
    created = await service.create_session(CALLBACK, state=STATE, **kwargs)
    url = await service.authorize(created.session_id, user.id, "approve")
    return created.session_id, _query(url)["code"]


@pytest.mark.asyncio
async def test_exchange_code_once(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    session_id, code = await _approved(service, user)

    exchanged = await service.exchange_code(code, session_id)
    assert exchanged.tokens.access_token.startswith("sk_")
    assert exchanged.user["id"] == str(user.id)

    with pytest.raises(AlreadyConsumed) as exc:
        await service.exchange_code(code, session_id)
    assert exc.value.code == "code_already_used"

    token = await fetch_one(db_session, ApiToken)
    assert token.user_id == user.id


@pytest.mark.asyncio
async def test_exchange_wrong_code(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    session_id, code = await _approved(service, user)

    with pytest.raises(InvalidInput) as exc:
        await service.exchange_code("0" * 64, session_id)
    assert exc.value.code == "invalid_code"

    # The real code still works afterwards.
    await service.exchange_code(code, session_id)


@pytest.mark.asyncio
async def test_exchange_before_approval(db_session, clock):
    service = CliFlowService(db_session, clock)
    created = await service.create_session(CALLBACK, state=STATE)
    with pytest.raises(InvalidInput) as exc:
        await service.exchange_code("0" * 64, created.session_id)
    assert exc.value.code == "session_not_authorized"


@pytest.mark.asyncio
async def test_exchange_after_expiry(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    session_id, code = await _approved(service, user)
    clock.advance(seconds=301)
    with pytest.raises(Expired):
        await service.exchange_code(code, session_id)


@pytest.mark.asyncio
async def test_exchange_with_pkce_s256(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    verifier = "v" * 50
    session_id, code = await _approved(
        service, user, code_challenge=s256_challenge(verifier), code_challenge_method="S256"
    )

    with pytest.raises(InvalidInput) as exc:
        await service.exchange_code(code, session_id)
    assert exc.value.code == "code_verifier_required"

    with pytest.raises(InvalidInput) as exc:
        await service.exchange_code(code, session_id, code_verifier="w" * 50)
    assert exc.value.code == "invalid_code_verifier"

    exchanged = await service.exchange_code(code, session_id, code_verifier=verifier)
    assert exchanged.tokens.refresh_token.startswith("srt_")


@pytest.mark.asyncio
async def test_exchange_with_pkce_plain_rejects_non_ascii_verifier(db_session, clock, user):
    service = CliFlowService(db_session, clock)
    session_id, code = await _approved(
        service, user, code_challenge="abc", code_challenge_method="plain"
    )

    with pytest.raises(InvalidInput) as exc:
        await service.exchange_code(code, session_id, code_verifier="café")
    assert exc.value.code == "invalid_code_verifier"

    exchanged = await service.exchange_code(code, session_id, code_verifier="abc")
    assert exchanged.tokens.access_token.startswith("sk_")


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["plain", "S256"])
async def test_create_session_rejects_non_ascii_challenge(db_session, clock, method):
    challenge = "é" * 43
    with pytest.raises(InvalidInput) as exc:
        await CliFlowService(db_session, clock).create_session(
            CALLBACK, state=STATE, code_challenge=challenge, code_challenge_method=method
        )
    assert exc.value.code == "invalid_code_challenge"


def test_with_query_keeps_existing_params():
    assert with_query("http://localhost:1/callback?a=1", {"b": "2"}) == (
        "http://localhost:1/callback?a=1&b=2"
    )


# ═══════════════════════════════════════════════════════════
# HTTP contract
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_http_cli_flow(client, user, user_session):
    r = await client.post(
        "/api/v1/auth/cli/init",
        json={"callback_url": CALLBACK, "state": STATE, "client_info": {"os": "linux"}},
    )
    assert r.status_code == 200
    session_id = r.json()["session_id"]

    r = await client.get(f"/api/v1/auth/cli/sessions/{session_id}")
    assert r.status_code == 401

    r = await client.get(f"/api/v1/auth/cli/sessions/{session_id}", headers=user_session)
    assert r.status_code == 200
    page = r.json()
    assert page["status"] == "pending"
    assert page["client_info"] == {"os": "linux"}
    assert "auth_code_hash" not in page
    assert "state" not in page

    r = await client.post(
        "/api/v1/auth/cli/authorize",
        json={"session_id": session_id, "action": "approve"},
        headers=user_session,
    )
    assert r.status_code == 200
    code = _query(r.json()["redirect_url"])["code"]

    r = await client.post("/api/v1/auth/cli/token", json={"code": code, "session_id": session_id})
    assert r.status_code == 200
    tokens = r.json()
    assert tokens["token_type"] == "Bearer"
    assert tokens["user"]["name"] == "Ada"

    r = await client.post("/api/v1/auth/cli/token", json={"code": code, "session_id": session_id})
    assert r.status_code == 409
    assert r.json() == {"error": "code_already_used"}


@pytest.mark.asyncio
async def test_http_cli_deny(client, user_session):
    r = await client.post("/api/v1/auth/cli/init", json={"callback_url": CALLBACK, "state": STATE})
    session_id = r.json()["session_id"]

    r = await client.post(
        "/api/v1/auth/cli/authorize",
        json={"session_id": session_id, "action": "deny"},
        headers=user_session,
    )
    assert r.status_code == 200
    assert _query(r.json()["redirect_url"]) == {"error": "access_denied", "state": STATE}


@pytest.mark.asyncio
async def test_http_cli_init_bad_callback(client):
    r = await client.post(
        "/api/v1/auth/cli/init",
        json={"callback_url": "https://evil.example.com/callback", "state": STATE},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_callback_url"}


@pytest.mark.asyncio
async def test_http_cli_non_ascii_pkce_is_a_bad_request(client, user_session):
    r = await client.post(
        "/api/v1/auth/cli/init",
        json={
            "callback_url": CALLBACK,
            "state": STATE,
            "code_challenge": "défi",
            "code_challenge_method": "plain",
        },
    )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_code_challenge"}

    r = await client.post(
        "/api/v1/auth/cli/init",
        json={
            "callback_url": CALLBACK,
            "state": STATE,
            "code_challenge": "abc",
            "code_challenge_method": "plain",
        },
    )
    session_id = r.json()["session_id"]
    r = await client.post(
        "/api/v1/auth/cli/authorize",
        json={"session_id": session_id, "action": "approve"},
        headers=user_session,
    )
    code = _query(r.json()["redirect_url"])["code"]

    r = await client.post(
        "/api/v1/auth/cli/token",
        json={"code": code, "session_id": session_id, "code_verifier": "café"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "invalid_code_verifier"}
