# SpotiDial Bridge
# SPDX-License-Identifier: GPL-3.0-or-later

"""
OAuth helpers for the Spotify accounts service.

Supports both client styles:
  - PKCE (S256), no client_secret: client_id goes in the request body
  - confidential client: client_id:client_secret as HTTP Basic auth

Uses blocking urllib.request; callers wrap in run_in_executor().

Usage:
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)
    url = build_auth_url(client_id, redirect_uri, SCOPES, code_challenge=challenge)
    # ... user completes auth flow ...
    tokens = exchange_code(code, client_id, redirect_uri, code_verifier=verifier)
    tokens = refresh_access_token(client_id, refresh_token)
"""

import base64
import hashlib
import json
import os
import urllib.parse
import urllib.request

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"

SCOPES = ("user-read-playback-state user-modify-playback-state "
          "user-read-currently-playing playlist-read-private "
          "playlist-read-collaborative user-library-read")


def generate_code_verifier(length=128):
    """Generate a random code verifier string (43-128 chars, URL-safe)."""
    raw = os.urandom(length)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")[:length]


def generate_code_challenge(verifier):
    """Generate a code challenge from a verifier (S256 method)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_auth_url(client_id, redirect_uri, scopes=SCOPES, code_challenge=None, state=None):
    """Build the Spotify authorization URL.  PKCE when code_challenge is given."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": scopes,
    }
    if code_challenge:
        params["code_challenge_method"] = "S256"
        params["code_challenge"] = code_challenge
    if state:
        params["state"] = state
    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


def _post_token(body, client_id, client_secret=None, token_url=TOKEN_URL):
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    if client_secret:
        basic = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode("ascii")
        headers["Authorization"] = f"Basic {basic}"
    else:
        body = dict(body, client_id=client_id)

    data = urllib.parse.urlencode(body).encode()
    req = urllib.request.Request(token_url, data=data, headers=headers)

    with urllib.request.urlopen(req, timeout=10) as resp:
        return json.loads(resp.read().decode())


def exchange_code(code, client_id, redirect_uri, code_verifier=None, client_secret=None):
    """Exchange an authorization code for access + refresh tokens.

    Returns dict with 'access_token', 'refresh_token', 'expires_in', etc.
    Raises urllib.error.HTTPError on failure.
    """
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    }
    if code_verifier:
        body["code_verifier"] = code_verifier
    return _post_token(body, client_id, client_secret)


def refresh_access_token(client_id, refresh_token, client_secret=None):
    """Exchange a refresh token for a new access token.

    Returns dict with 'access_token', 'expires_in', optionally 'refresh_token'
    (rotated).  Raises urllib.error.HTTPError on failure.
    """
    body = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    return _post_token(body, client_id, client_secret)
