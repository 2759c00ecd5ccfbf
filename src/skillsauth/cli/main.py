"""skillsauth CLI: log a terminal in to the skills marketplace.

Usage:
    skillsauth login                 # Device flow: shows a code, waits for approval
    skillsauth whoami                # Who the stored credentials belong to
    skillsauth refresh               # Trade the refresh token for a new access token
    skillsauth logout                # Revoke the access token and forget credentials
    skillsauth serve                 # Run the API server (uvicorn)

Credentials live in $SKILLSAUTH_CONFIG_DIR/credentials.json
(default ~/.config/skillsauth), readable only by the current user.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import platform
import socket
import sys
import time
from pathlib import Path
from typing import Optional

import click
import httpx

from skillsauth import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"
SLOW_DOWN_STEP = 5


def _api_url() -> str:
    return os.environ.get("SKILLSAUTH_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the auth server."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


def _config_dir() -> Path:
    configured = os.environ.get("SKILLSAUTH_CONFIG_DIR")
    if configured:
        return Path(configured)
    return Path.home() / ".config" / "skillsauth"


def _credentials_path() -> Path:
    return _config_dir() / "credentials.json"


def load_credentials() -> Optional[dict]:
    path = _credentials_path()
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError):
        return None


def save_credentials(creds: dict) -> None:
    path = _credentials_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(creds, indent=2))
    path.chmod(0o600)


def clear_credentials() -> bool:
    path = _credentials_path()
    if path.exists():
        path.unlink()
        return True
    return False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous click handler.

    Offloads to a thread when a loop is already running (e.g. CliRunner
    inside an async test).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _error_code(response: httpx.Response) -> str:
    try:
        return response.json().get("error", "unknown_error")
    except ValueError:
        return "unknown_error"


def _client_info() -> dict:
    return {
        "os": platform.system().lower(),
        "hostname": socket.gethostname(),
        "version": __version__,
    }


def _store_token_response(data: dict) -> dict:
    now = int(time.time())
    creds = {
        "api_url": _api_url(),
        "access_token": data["access_token"],
        "access_expires_at": now + data["expires_in"],
        "refresh_token": data["refresh_token"],
        "refresh_expires_at": now + data["refresh_expires_in"],
        "user": data.get("user"),
    }
    save_credentials(creds)
    return creds


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="skillsauth")
def main():
    """skillsauth: CLI login and API tokens for the skills marketplace."""


# ---------------------------------------------------------------------------
# skillsauth login
# ---------------------------------------------------------------------------


@main.command()
@click.option("--no-browser", is_flag=True, help="Don't try to open the verification page")
@click.option("--scope", "scopes", multiple=True, help="Request only these scopes (repeatable)")
def login(no_browser: bool, scopes: tuple[str, ...]):
    """Log in with the device flow."""
    _run(_login_impl(no_browser, list(scopes)))


async def _login_impl(no_browser: bool, scopes: list[str]):
    body: dict = {"client_info": _client_info()}
    if scopes:
        body["scopes"] = scopes

    async with _client() as c:
        r = await c.post("/api/v1/device/code", json=body)
        if r.status_code != 200:
            _fail(f"Could not start login ({_error_code(r)})")
        issued = r.json()

        click.echo()
        click.echo("Open this page in your browser:")
        click.secho(f"  {issued['verification_uri']}", bold=True)
        click.echo("and enter the code:")
        click.secho(f"  {issued['user_code']}", fg="cyan", bold=True)
        click.echo()
        if not no_browser:
            click.launch(issued["verification_uri_complete"])

        interval = issued["interval"]
        deadline = time.monotonic() + issued["expires_in"]
        click.echo("Waiting for approval...")

        while time.monotonic() < deadline:
            await _sleep(interval)
            r = await c.post("/api/v1/device/token", json={"device_code": issued["device_code"]})
            if r.status_code == 200:
                creds = _store_token_response(r.json())
                user = creds.get("user") or {}
                who = user.get("name") or user.get("email") or user.get("id")
                click.secho(f"Logged in as {who}", fg="green")
                return

            code = _error_code(r)
            if code == "authorization_pending":
                continue
            if code == "slow_down":
                interval += SLOW_DOWN_STEP
                continue
            if code == "access_denied":
                _fail("Login was denied in the browser.")
            if code == "expired_token":
                _fail("The code expired. Run `skillsauth login` again.")
            _fail(f"Login failed ({code})")

        _fail("Timed out waiting for approval.")


# ---------------------------------------------------------------------------
# skillsauth refresh
# ---------------------------------------------------------------------------


@main.command()
def refresh():
    """Exchange the stored refresh token for a new access token."""
    _run(_refresh_impl())


async def _refresh_impl():
    creds = load_credentials()
    if not creds:
        _fail("Not logged in. Run `skillsauth login`.")
    if not creds.get("refresh_token"):
        _fail("No refresh token stored. Run `skillsauth login` when the access token expires.")

    async with _client() as c:
        r = await c.post("/api/v1/device/refresh", json={"refresh_token": creds["refresh_token"]})
    if r.status_code != 200:
        code = _error_code(r)
        if code in ("invalid_token", "token_expired"):
            clear_credentials()
            _fail("Session is no longer valid. Run `skillsauth login` again.")
        _fail(f"Refresh failed ({code})")

    data = r.json()
    now = int(time.time())
    creds["access_token"] = data["access_token"]
    creds["access_expires_at"] = now + data["expires_in"]
    if data.get("refresh_token"):
        creds["refresh_token"] = data["refresh_token"]
        creds["refresh_expires_at"] = now + data["refresh_expires_in"]
    else:
        # The presented refresh token is spent either way.
        creds.pop("refresh_token", None)
        creds.pop("refresh_expires_at", None)
    save_credentials(creds)
    rotated = " (refresh token rotated)" if data.get("refresh_token") else ""
    click.secho(f"Access token refreshed{rotated}", fg="green")


# ---------------------------------------------------------------------------
# skillsauth whoami
# ---------------------------------------------------------------------------


@main.command()
def whoami():
    """Show the identity behind the stored access token."""
    _run(_whoami_impl())


async def _whoami_impl():
    creds = load_credentials()
    if not creds:
        _fail("Not logged in. Run `skillsauth login`.")

    async with _client() as c:
        r = await c.get(
            "/api/v1/auth/me",
            headers={"Authorization": f"Bearer {creds['access_token']}"},
        )
    r.raise_for_status()
    me = r.json()
    if not me.get("authenticated"):
        _fail("Stored access token was rejected. Try `skillsauth refresh`.")

    user = me.get("user") or {}
    click.secho(user.get("name") or user.get("email") or me["user_id"], bold=True)
    if user.get("email"):
        click.echo(f"  Email:  {user['email']}")
    click.echo(f"  User:   {me['user_id']}")
    click.echo(f"  Scopes: {', '.join(me.get('scopes', []))}")


# ---------------------------------------------------------------------------
# skillsauth logout
# ---------------------------------------------------------------------------


@main.command()
def logout():
    """Revoke the stored access token and delete local credentials."""
    _run(_logout_impl())


async def _logout_impl():
    creds = load_credentials()
    if not creds:
        click.echo("Not logged in.")
        return

    headers = {"Authorization": f"Bearer {creds['access_token']}"}
    try:
        async with _client() as c:
            r = await c.get("/api/v1/tokens/validate", headers=headers)
            if r.status_code == 200:
                token_id = r.json()["token_id"]
                await c.delete(f"/api/v1/tokens/{token_id}", headers=headers)
    except httpx.HTTPError as e:
        click.secho(f"Could not reach the server to revoke the token: {e}", fg="yellow", err=True)

    clear_credentials()
    click.secho("Logged out.", fg="green")


# ---------------------------------------------------------------------------
# skillsauth serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default from settings)")
@click.option("--port", default=None, type=int, help="Port (default from settings)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the auth API server."""
    import uvicorn

    from skillsauth.config import settings

    uvicorn.run(
        "skillsauth.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


if __name__ == "__main__":
    main()
