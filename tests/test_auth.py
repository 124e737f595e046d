from __future__ import annotations

import asyncio
import io
import socket
import time
import urllib.error
import urllib.parse
import urllib.request

import pytest

from conftest import get_free_port, make_settings
from spotidial.errors import AuthError, StorageError
from spotidial.spotify import auth as auth_mod
from spotidial.spotify.auth import AuthSession, AuthState
from spotidial.spotify.tokens import TokenStore


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FailingStore(TokenStore):
    def save(self, refresh_token):
        raise StorageError("disk full")


def _refresher(calls, *, rotate=None, delay=0.0):
    def fake_refresh(client_id, refresh_token, client_secret=None):
        if delay:
            time.sleep(delay)
        calls.append(refresh_token)
        result = {"access_token": f"at-{len(calls)}", "expires_in": 3600}
        if rotate:
            result["refresh_token"] = rotate
        return result
    return fake_refresh


def _http_error(code, body):
    return urllib.error.HTTPError(
        "https://accounts.spotify.com/api/token",
        code, "Bad Request", {}, io.BytesIO(body))


async def _ready_session(tmp_path, clock=None, **spotify):
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    store.save("stored-rt")
    session = AuthSession(make_settings(**spotify).spotify, store, clock=clock or Clock())
    await session.initialize()
    return session, store


# -- Renewal --

@pytest.mark.asyncio
async def test_renewal_only_when_grant_missing_or_expired(tmp_path, monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(auth_mod, "refresh_access_token", _refresher(calls))
    clock = Clock(1000.0)
    session, _ = await _ready_session(tmp_path, clock)

    assert session.grant is None
    assert await session.get_token() == "at-1"
    assert await session.get_token() == "at-1"
    assert len(calls) == 1

    # 3600s lifetime minus the 300s margin
    clock.now = 1000.0 + 3300 - 0.001
    assert await session.get_token() == "at-1"
    assert len(calls) == 1

    clock.now = 1000.0 + 3300
    assert await session.get_token() == "at-2"
    assert len(calls) == 2
    assert session.state is AuthState.READY


@pytest.mark.asyncio
async def test_concurrent_renewals_share_one_exchange(tmp_path, monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(auth_mod, "refresh_access_token", _refresher(calls, delay=0.1))
    session, _ = await _ready_session(tmp_path)

    tokens = await asyncio.gather(*(session.get_token() for _ in range(5)))

    assert tokens == ["at-1"] * 5
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalidate_forces_renewal(tmp_path, monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(auth_mod, "refresh_access_token", _refresher(calls))
    session, _ = await _ready_session(tmp_path)

    await session.get_token()
    session.invalidate()
    assert await session.get_token() == "at-2"


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_persisted(tmp_path, monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(auth_mod, "refresh_access_token", _refresher(calls, rotate="rotated-rt"))
    session, store = await _ready_session(tmp_path)

    await session.get_token()

    assert session.refresh_token == "rotated-rt"
    assert store.load().refresh_token == "rotated-rt"


@pytest.mark.asyncio
async def test_revoked_refresh_token_raises_auth_error(tmp_path, monkeypatch) -> None:
    def revoked(client_id, refresh_token, client_secret=None):
        raise _http_error(400, b'{"error": "invalid_grant"}')

    monkeypatch.setattr(auth_mod, "refresh_access_token", revoked)
    session, _ = await _ready_session(tmp_path)

    with pytest.raises(AuthError):
        await session.get_token()
    assert session.revoked is True
    assert session.grant is None


@pytest.mark.asyncio
async def test_network_failure_during_renewal_is_auth_error(tmp_path, monkeypatch) -> None:
    def offline(client_id, refresh_token, client_secret=None):
        raise urllib.error.URLError("no route to host")

    monkeypatch.setattr(auth_mod, "refresh_access_token", offline)
    session, _ = await _ready_session(tmp_path)

    with pytest.raises(AuthError):
        await session.get_token()
    assert session.state is AuthState.READY
    assert session.revoked is False


# -- Refresh token resolution --

@pytest.mark.asyncio
async def test_stored_token_wins_over_configured(tmp_path) -> None:
    session, store = await _ready_session(tmp_path, refresh_token="configured-rt")

    assert session.refresh_token == "stored-rt"
    assert store.load().refresh_token == "stored-rt"


@pytest.mark.asyncio
async def test_configured_token_is_persisted(tmp_path) -> None:
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(make_settings(refresh_token="configured-rt").spotify, store)

    await session.initialize()

    assert session.state is AuthState.READY
    assert session.refresh_token == "configured-rt"
    assert store.load().refresh_token == "configured-rt"


@pytest.mark.asyncio
async def test_storage_failure_does_not_block_startup(tmp_path) -> None:
    store = FailingStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(make_settings(refresh_token="configured-rt").spotify, store)

    await session.initialize()

    assert session.state is AuthState.READY
    assert session.refresh_token == "configured-rt"


@pytest.mark.asyncio
async def test_missing_client_id_is_fatal(tmp_path) -> None:
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(make_settings(client_id="").spotify, store)

    with pytest.raises(AuthError):
        await session.initialize()
    assert session.state is AuthState.FAILED


# -- Interactive flow --

def _browser_hitting_callback(port, **query):
    seen = {}

    def browser(url):
        params = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
        seen.update({k: v[0] for k, v in params.items()})
        q = dict(query, state=seen["state"])
        try:
            with urllib.request.urlopen(
                f"http://127.0.0.1:{port}/callback?{urllib.parse.urlencode(q)}", timeout=5
            ) as resp:
                seen["status"] = resp.status
        except urllib.error.HTTPError as e:
            seen["status"] = e.code
        return True

    return browser, seen


@pytest.mark.asyncio
async def test_interactive_flow_exchanges_code_and_persists(tmp_path, monkeypatch) -> None:
    exchanged = {}

    def fake_exchange(code, client_id, redirect_uri, code_verifier=None, client_secret=None):
        exchanged.update(code=code, verifier=code_verifier, secret=client_secret,
                         redirect_uri=redirect_uri)
        return {"access_token": "at-initial", "refresh_token": "rt-new", "expires_in": 3600}

    def no_refresh(*args, **kwargs):
        raise AssertionError("fresh grant must not be renewed")

    monkeypatch.setattr(auth_mod, "exchange_code", fake_exchange)
    monkeypatch.setattr(auth_mod, "refresh_access_token", no_refresh)
    port = get_free_port()
    browser, seen = _browser_hitting_callback(port, code="the-code")
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(make_settings(oauth_port=port).spotify, store, browser=browser)

    await session.initialize()

    assert seen["status"] == 200
    assert "user-read-playback-state" in seen["scope"]
    assert "user-library-read" in seen["scope"]
    assert seen["code_challenge_method"] == "S256"
    assert exchanged["code"] == "the-code"
    assert exchanged["verifier"]
    assert exchanged["secret"] is None
    assert exchanged["redirect_uri"] == f"http://127.0.0.1:{port}/callback"
    assert store.load().refresh_token == "rt-new"
    assert session.state is AuthState.READY
    assert await session.get_token() == "at-initial"


@pytest.mark.asyncio
async def test_interactive_flow_with_client_secret_skips_pkce(tmp_path, monkeypatch) -> None:
    exchanged = {}

    def fake_exchange(code, client_id, redirect_uri, code_verifier=None, client_secret=None):
        exchanged.update(verifier=code_verifier, secret=client_secret)
        return {"access_token": "at", "refresh_token": "rt", "expires_in": 3600}

    monkeypatch.setattr(auth_mod, "exchange_code", fake_exchange)
    port = get_free_port()
    browser, seen = _browser_hitting_callback(port, code="c")
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(make_settings(oauth_port=port, client_secret="s3cret").spotify,
                          store, browser=browser)

    await session.authorize()

    assert "code_challenge" not in seen
    assert exchanged == {"verifier": None, "secret": "s3cret"}


@pytest.mark.asyncio
async def test_provider_error_fails_authorization(tmp_path) -> None:
    port = get_free_port()
    browser, seen = _browser_hitting_callback(port, error="access_denied")
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(make_settings(oauth_port=port).spotify, store, browser=browser)

    with pytest.raises(AuthError, match="access_denied"):
        await session.initialize()

    assert seen["status"] == 400
    assert session.state is AuthState.FAILED
    assert store.load() is None


@pytest.mark.asyncio
async def test_authorization_wait_times_out_and_releases_port(tmp_path) -> None:
    port = get_free_port()
    store = TokenStore(str(tmp_path / "spotify_token.json"))
    session = AuthSession(
        make_settings(oauth_port=port, auth_timeout=0.2).spotify, store,
        browser=lambda url: False)

    started = time.monotonic()
    with pytest.raises(AuthError, match="no authorization callback"):
        await session.initialize()

    assert time.monotonic() - started < 5
    assert session.state is AuthState.FAILED
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))
