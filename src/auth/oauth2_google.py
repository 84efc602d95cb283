"""
Google OAuth2 Token Acquisition

Access tokens for Gmail IMAP through the installed-app flow: a browser opens
for consent and a local HTTP server receives the redirect. Credentials are
cached per client so refreshes need no browser.

Requires the 'google-auth-oauthlib' package: pip install google-auth-oauthlib
"""

from __future__ import annotations

import os

from core.errors import AuthError
from utils.imap_common import safe_print

GMAIL_SCOPES = ["https://mail.google.com/"]

# (client_id, client_secret) -> google.oauth2.credentials.Credentials
_creds_cache = {}


def _refresh_cached(cache_key) -> str | None:
    creds = _creds_cache.get(cache_key)
    if not creds or not creds.refresh_token:
        return None

    import google.auth.exceptions
    import google.auth.transport.requests

    try:
        creds.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.RefreshError as e:
        safe_print(f"Cached Google credentials could not be refreshed: {e}")
        return None
    return creds.token or None


def build_client_config(client_id: str, client_secret: str) -> dict:
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth",
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }


def acquire_token(client_id: str, client_secret: str) -> str | None:
    cache_key = (client_id, client_secret)
    token = _refresh_cached(cache_key)
    if token:
        return token

    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError as e:
        raise AuthError(
            "'google-auth-oauthlib' package is required for Google OAuth2. "
            "Install it with: pip install google-auth-oauthlib"
        ) from e

    flow = InstalledAppFlow.from_client_config(build_client_config(client_id, client_secret), scopes=GMAIL_SCOPES)

    safe_print("Opening browser for Google authentication...")
    safe_print("If the browser does not open, check the terminal for a URL to visit.")
    credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        _creds_cache[cache_key] = credentials
        return credentials.token

    safe_print("Error: Could not acquire Google OAuth2 token.")
    return None
