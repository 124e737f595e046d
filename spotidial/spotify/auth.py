# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Spotify token lifecycle: the ONE place for token refresh.

AuthSession resolves a refresh token at startup (token store, then configured
value, then the interactive browser flow) and hands out access tokens,
renewing them on demand.  Concurrent renewals share one in-flight exchange.

    Unauthenticated → Authorizing → Ready ⇄ Renewing
                           ↘ Failed

Token endpoint calls go through pkce.py (blocking urllib) in the executor.
"""

import asyncio
import enum
import json
import logging
import secrets
import time
import urllib.error
import webbrowser
from dataclasses import dataclass
from urllib.parse import urlparse

from aiohttp import web

from ..errors import AuthError, StorageError
from .pkce import (
    SCOPES,
    build_auth_url,
    exchange_code,
    generate_code_challenge,
    generate_code_verifier,
    refresh_access_token,
)

log = logging.getLogger(__name__)

EXPIRY_MARGIN = 300  # renew this many seconds before Spotify's stated expiry

_CALLBACK_OK_HTML = '''<!DOCTYPE html><html><head>
<meta charset="UTF-8"><title>SpotiDial - Connected</title>
<style>body{font-family:sans-serif;background:#000;color:#fff;text-align:center;padding:50px}
h1{font-weight:300;color:#1ED760}</style></head><body>
<h1>Connected to Spotify</h1><p>You can close this page.</p></body></html>'''


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    READY = "ready"
    RENEWING = "renewing"
    FAILED = "failed"


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    expires_at: float  # monotonic clock

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


def _grant_lifetime(expires_in) -> float:
    try:
        expires_in = float(expires_in)
    except (TypeError, ValueError):
        expires_in = 3600.0
    if expires_in > EXPIRY_MARGIN * 2:
        return expires_in - EXPIRY_MARGIN
    return expires_in


def _http_error_reason(exc: urllib.error.HTTPError) -> str:
    try:
        body = json.loads(exc.read().decode())
        return body.get("error", "") if isinstance(body, dict) else ""
    except Exception:
        return ""


def _open_browser(url):
    return webbrowser.open(url)


class AuthSession:
    """Owns the refresh token and the current access grant."""

    def __init__(self, settings, store, *, clock=time.monotonic, browser=_open_browser):
        self.settings = settings
        self.store = store
        self.state = AuthState.UNAUTHENTICATED
        self.revoked = False
        self._clock = clock
        self._browser = browser
        self._refresh_token: str | None = None
        self._grant: AccessGrant | None = None
        self._renewal: asyncio.Future | None = None

    @property
    def grant(self) -> AccessGrant | None:
        return self._grant

    @property
    def refresh_token(self) -> str | None:
        return self._refresh_token

    # -- Startup --

    async def initialize(self):
        """Obtain a refresh token.  Raises AuthError if none can be had."""
        if not self.settings.client_id:
            self.state = AuthState.FAILED
            raise AuthError("spotify.client_id is not configured")

        loop = asyncio.get_running_loop()
        credential = await loop.run_in_executor(None, self.store.load)
        if credential:
            self._refresh_token = credential.refresh_token
            log.info("Using refresh token from token store")
        elif self.settings.refresh_token:
            log.info("Using configured refresh token")
            await self._persist(self.settings.refresh_token)
            self._refresh_token = self.settings.refresh_token
        else:
            log.info("No refresh token available: starting browser authorization")
            await self.authorize()

        self.state = AuthState.READY
        log.info("Spotify auth ready (client_id: %s...)", self.settings.client_id[:8])

    async def authorize(self):
        """Run the interactive authorization-code flow.

        Listens on the callback port until Spotify redirects back with a code,
        reports an error, or the timeout elapses.  The listener is always
        stopped before this returns.
        """
        self.state = AuthState.AUTHORIZING
        settings = self.settings
        redirect_uri = settings.callback_uri
        parsed = urlparse(redirect_uri)
        port = parsed.port or settings.oauth_port
        host = "127.0.0.1" if parsed.hostname in ("127.0.0.1", "localhost") else "0.0.0.0"

        verifier = None
        challenge = None
        if not settings.client_secret:
            verifier = generate_code_verifier()
            challenge = generate_code_challenge(verifier)
        expected_state = secrets.token_urlsafe(16)
        auth_url = build_auth_url(settings.client_id, redirect_uri, SCOPES,
                                  code_challenge=challenge, state=expected_state)

        loop = asyncio.get_running_loop()
        outcome = loop.create_future()

        async def handle_callback(request):
            error = request.query.get("error")
            if error:
                if not outcome.done():
                    outcome.set_exception(AuthError(f"Spotify authorization failed: {error}"))
                return web.Response(text=f"Spotify authorization failed: {error}", status=400)
            if request.query.get("state") != expected_state:
                log.warning("OAuth callback with unexpected state: ignoring")
                return web.Response(text="Unexpected state parameter", status=400)
            code = request.query.get("code", "")
            if not code:
                return web.Response(text="Missing code parameter", status=400)
            if not outcome.done():
                outcome.set_result(code)
            return web.Response(text=_CALLBACK_OK_HTML, content_type="text/html")

        app = web.Application()
        app.router.add_get(parsed.path or "/callback", handle_callback)
        runner = web.AppRunner(app)
        await runner.setup()
        try:
            try:
                site = web.TCPSite(runner, host, port)
                await site.start()
            except OSError as e:
                raise AuthError(f"cannot listen for OAuth callback on port {port}: {e}") from e
            log.info("OAuth callback listening on %s:%d", host, port)
            log.info("Authorize SpotiDial by opening: %s", auth_url)

            if settings.open_browser and self._browser:
                try:
                    opened = await loop.run_in_executor(None, self._browser, auth_url)
                    if not opened:
                        log.warning("Could not open a browser: open the URL above manually")
                except Exception as e:
                    log.warning("Could not open a browser (%s): open the URL above manually", e)

            try:
                code = await asyncio.wait_for(outcome, timeout=settings.auth_timeout)
            except asyncio.TimeoutError:
                raise AuthError(
                    f"no authorization callback within {settings.auth_timeout:.0f}s") from None
        except AuthError:
            self.state = AuthState.FAILED
            raise
        finally:
            await runner.cleanup()
            log.info("OAuth callback listener stopped")

        await self._complete_authorization(code, redirect_uri, verifier)

    async def _complete_authorization(self, code, redirect_uri, verifier):
        loop = asyncio.get_running_loop()
        log.info("OAuth: exchanging authorization code")
        try:
            token_data = await loop.run_in_executor(
                None, lambda: exchange_code(
                    code, self.settings.client_id, redirect_uri,
                    code_verifier=verifier,
                    client_secret=self.settings.client_secret or None))
        except urllib.error.HTTPError as e:
            self.state = AuthState.FAILED
            raise AuthError(f"code exchange rejected (HTTP {e.code}): "
                            f"{_http_error_reason(e) or e.reason}") from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            self.state = AuthState.FAILED
            raise AuthError(f"code exchange failed: {e}") from e

        refresh_token = token_data.get("refresh_token")
        if not refresh_token:
            self.state = AuthState.FAILED
            raise AuthError("no refresh token received")

        await self._persist(refresh_token)
        self._refresh_token = refresh_token
        self.revoked = False
        if token_data.get("access_token"):
            self._grant = AccessGrant(
                token_data["access_token"],
                self._clock() + _grant_lifetime(token_data.get("expires_in", 3600)))
        self.state = AuthState.READY
        log.info("OAuth: authorization complete")

    # -- Access tokens --

    async def get_token(self) -> str:
        """Get a valid access token, renewing only if the grant has expired."""
        grant = self._grant
        if grant is not None and grant.is_valid(self._clock()):
            return grant.access_token
        return await self.renew()

    async def renew(self) -> str:
        """Renew the grant.  Callers arriving mid-renewal share its result."""
        if self._renewal is None or self._renewal.done():
            self._renewal = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._renewal)

    def invalidate(self):
        """Drop the access grant (e.g. after a 401) so the next call renews."""
        self._grant = None

    async def _refresh(self) -> str:
        if not self._refresh_token:
            raise AuthError("no Spotify refresh token")

        self.state = AuthState.RENEWING
        loop = asyncio.get_running_loop()
        refresh_token = self._refresh_token
        try:
            result = await loop.run_in_executor(
                None, refresh_access_token, self.settings.client_id, refresh_token,
                self.settings.client_secret or None)
        except urllib.error.HTTPError as e:
            reason = _http_error_reason(e)
            if e.code == 400 and reason == "invalid_grant":
                self.revoked = True
                self.state = AuthState.FAILED
                log.error("Spotify refresh token revoked: re-authorization required")
            else:
                self.state = AuthState.READY
            raise AuthError(f"token refresh rejected (HTTP {e.code}): {reason or e.reason}") from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            self.state = AuthState.READY
            raise AuthError(f"token refresh failed: {e}") from e

        access_token = result.get("access_token")
        if not access_token:
            self.state = AuthState.READY
            raise AuthError("token refresh returned no access token")

        # Persist rotated refresh token before using it
        new_rt = result.get("refresh_token")
        if new_rt and new_rt != refresh_token:
            await self._persist(new_rt)
            self._refresh_token = new_rt
            log.info("Refresh token rotated")

        self._grant = AccessGrant(
            access_token, self._clock() + _grant_lifetime(result.get("expires_in", 3600)))
        self.state = AuthState.READY
        log.info("Access token refreshed (expires in %ss)", result.get("expires_in", "?"))
        return access_token

    async def _persist(self, refresh_token):
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.store.save, refresh_token)
        except StorageError as e:
            log.warning("Could not persist refresh token (%s): continuing in memory", e)

    async def close(self):
        if self._renewal and not self._renewal.done():
            self._renewal.cancel()
            try:
                await self._renewal
            except (asyncio.CancelledError, AuthError):
                pass
        self._renewal = None
