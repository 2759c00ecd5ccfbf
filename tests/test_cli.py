"""CLI tests: click commands against a scripted HTTP server.

Learn: The CLI talks to the API through `_client()`. Tests swap it for an
httpx client backed by MockTransport, so each command runs end-to-end
without a server, and `_sleep` is replaced so polling is instant.
Credentials go to a temporary SKILLSAUTH_CONFIG_DIR.
"""

import json
import stat

import httpx
import pytest
from click.testing import CliRunner

from skillsauth.cli import main as cli

ISSUED = {
    "device_code": "d" * 64,
    "user_code": "ABCD-EFGH",
    "verification_uri": "http://test/device",
    "verification_uri_complete": "http://test/device?code=ABCD-EFGH",
    "expires_in": 900,
    "interval": 5,
}

TOKENS = {
    "access_token": "sk_" + "a" * 64,
    "token_type": "Bearer",
    "expires_in": 3600,
    "refresh_token": "srt_" + "r" * 64,
    "refresh_expires_in": 90 * 86400,
    "user": {"id": "u-1", "name": "Ada", "email": "ada@example.com"},
}


class FakeServer:
    """Records requests and answers each path from a queue of responses."""

    def __init__(self, routes: dict):
        self.routes = {key: list(value) for key, value in routes.items()}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes[(request.method, request.url.path)]
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(status, json=body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture()
def config_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("SKILLSAUTH_CONFIG_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture()
def sleeps(monkeypatch):
    waited = []

    async def fake_sleep(seconds):
        waited.append(seconds)

    monkeypatch.setattr(cli, "_sleep", fake_sleep)
    return waited


def _serve(monkeypatch, routes: dict) -> FakeServer:
    server = FakeServer(routes)
    monkeypatch.setattr(
        cli,
        "_client",
        lambda: httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://test"),
    )
    return server


def _store(config_dir, **overrides) -> dict:
    creds = {
        "api_url": "http://test",
        "access_token": TOKENS["access_token"],
        "access_expires_at": 0,
        "refresh_token": TOKENS["refresh_token"],
        "refresh_expires_at": 0,
        "user": TOKENS["user"],
        **overrides,
    }
    (config_dir / "credentials.json").write_text(json.dumps(creds))
    return creds


def _saved(config_dir) -> dict:
    return json.loads((config_dir / "credentials.json").read_text())


# ═══════════════════════════════════════════════════════════
# login
# ═══════════════════════════════════════════════════════════


def test_login_polls_until_approved(monkeypatch, config_dir, sleeps):
    server = _serve(
        monkeypatch,
        {
            ("POST", "/api/v1/device/code"): [(200, ISSUED)],
            ("POST", "/api/v1/device/token"): [
                (400, {"error": "authorization_pending"}),
                (400, {"error": "slow_down"}),
                (400, {"error": "authorization_pending"}),
                (200, TOKENS),
            ],
        },
    )

    result = CliRunner().invoke(cli.main, ["login", "--no-browser"])
    assert result.exit_code == 0, result.output
    assert "ABCD-EFGH" in result.output
    assert "Logged in as Ada" in result.output

    # slow_down adds five seconds to every later wait
    assert sleeps == [5, 5, 10, 10]
    polls = server.calls("POST", "/api/v1/device/token")
    assert all(json.loads(p.content) == {"device_code": ISSUED["device_code"]} for p in polls)

    creds = _saved(config_dir)
    assert creds["access_token"] == TOKENS["access_token"]
    assert creds["refresh_token"] == TOKENS["refresh_token"]
    mode = stat.S_IMODE((config_dir / "credentials.json").stat().st_mode)
    assert mode == 0o600


def test_login_sends_client_info_and_scopes(monkeypatch, config_dir, sleeps):
    server = _serve(
        monkeypatch,
        {
            ("POST", "/api/v1/device/code"): [(200, ISSUED)],
            ("POST", "/api/v1/device/token"): [(200, TOKENS)],
        },
    )
    result = CliRunner().invoke(
        cli.main, ["login", "--no-browser", "--scope", "read", "--scope", "publish"]
    )
    assert result.exit_code == 0, result.output

    body = json.loads(server.calls("POST", "/api/v1/device/code")[0].content)
    assert body["scopes"] == ["read", "publish"]
    assert set(body["client_info"]) == {"os", "hostname", "version"}


@pytest.mark.parametrize(
    "error, message",
    [
        ("access_denied", "denied"),
        ("expired_token", "expired"),
    ],
)
def test_login_stops_on_terminal_errors(monkeypatch, config_dir, sleeps, error, message):
    _serve(
        monkeypatch,
        {
            ("POST", "/api/v1/device/code"): [(200, ISSUED)],
            ("POST", "/api/v1/device/token"): [(400, {"error": error})],
        },
    )
    result = CliRunner().invoke(cli.main, ["login", "--no-browser"])
    assert result.exit_code == 1
    assert message in result.output
    assert not (config_dir / "credentials.json").exists()


def test_login_rate_limited(monkeypatch, config_dir, sleeps):
    _serve(monkeypatch, {("POST", "/api/v1/device/code"): [(429, {"error": "rate_limited"})]})
    result = CliRunner().invoke(cli.main, ["login", "--no-browser"])
    assert result.exit_code == 1
    assert "rate_limited" in result.output


# ═══════════════════════════════════════════════════════════
# refresh
# ═══════════════════════════════════════════════════════════


def test_refresh_without_rotation(monkeypatch, config_dir):
    _store(config_dir)
    new_access = "sk_" + "b" * 64
    _serve(
        monkeypatch,
        {
            ("POST", "/api/v1/device/refresh"): [
                (200, {"access_token": new_access, "token_type": "Bearer", "expires_in": 3600})
            ]
        },
    )
    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 0, result.output
    assert "rotated" not in result.output

    creds = _saved(config_dir)
    assert creds["access_token"] == new_access
    # The old refresh token was consumed; keeping it would only earn an invalid_token.
    assert "refresh_token" not in creds
    assert "refresh_expires_at" not in creds

    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 1
    assert "No refresh token stored" in result.output
    assert _saved(config_dir)["access_token"] == new_access


def test_refresh_with_rotation(monkeypatch, config_dir):
    _store(config_dir)
    rotated = {**TOKENS, "refresh_token": "srt_" + "n" * 64}
    _serve(monkeypatch, {("POST", "/api/v1/device/refresh"): [(200, rotated)]})

    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 0, result.output
    assert "rotated" in result.output
    assert _saved(config_dir)["refresh_token"] == rotated["refresh_token"]


@pytest.mark.parametrize("error", ["invalid_token", "token_expired"])
def test_refresh_rejected_clears_credentials(monkeypatch, config_dir, error):
    _store(config_dir)
    _serve(monkeypatch, {("POST", "/api/v1/device/refresh"): [(401, {"error": error})]})

    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 1
    assert not (config_dir / "credentials.json").exists()


def test_refresh_when_logged_out(config_dir):
    result = CliRunner().invoke(cli.main, ["refresh"])
    assert result.exit_code == 1
    assert "Not logged in" in result.output


# ═══════════════════════════════════════════════════════════
# whoami / logout
# ═══════════════════════════════════════════════════════════


def test_whoami(monkeypatch, config_dir):
    _store(config_dir)
    server = _serve(
        monkeypatch,
        {
            ("GET", "/api/v1/auth/me"): [
                (
                    200,
                    {
                        "authenticated": True,
                        "user_id": "u-1",
                        "auth_method": "token",
                        "scopes": ["read", "write"],
                        "user": TOKENS["user"],
                    },
                )
            ]
        },
    )
    result = CliRunner().invoke(cli.main, ["whoami"])
    assert result.exit_code == 0, result.output
    assert "Ada" in result.output
    assert "read, write" in result.output
    sent = server.calls("GET", "/api/v1/auth/me")[0]
    assert sent.headers["Authorization"] == f"Bearer {TOKENS['access_token']}"


def test_whoami_with_rejected_token(monkeypatch, config_dir):
    _store(config_dir)
    _serve(monkeypatch, {("GET", "/api/v1/auth/me"): [(200, {"authenticated": False})]})
    result = CliRunner().invoke(cli.main, ["whoami"])
    assert result.exit_code == 1
    assert "refresh" in result.output


def test_logout_revokes_and_forgets(monkeypatch, config_dir):
    _store(config_dir)
    server = _serve(
        monkeypatch,
        {
            ("GET", "/api/v1/tokens/validate"): [
                (200, {"valid": True, "user_id": "u-1", "token_id": "t-1", "scopes": ["read"]})
            ],
            ("DELETE", "/api/v1/tokens/t-1"): [(204, None)],
        },
    )
    result = CliRunner().invoke(cli.main, ["logout"])
    assert result.exit_code == 0, result.output
    assert len(server.calls("DELETE", "/api/v1/tokens/t-1")) == 1
    assert not (config_dir / "credentials.json").exists()


def test_logout_when_logged_out(config_dir):
    result = CliRunner().invoke(cli.main, ["logout"])
    assert result.exit_code == 0
    assert "Not logged in" in result.output
