"""
IMAP OAuth2 Authentication

OAuth2 (XOAUTH2) support for export sessions. The provider is detected from
the IMAP host and the provider modules run the actual token flows.

The token lives in the shared conf dict built by imap_session.build_imap_conf;
worker sessions opening late in a long run refresh it through
refresh_oauth2_token().
"""

from __future__ import annotations

import threading

from auth import oauth2_google, oauth2_microsoft
from core.errors import AuthError
from utils.imap_common import safe_print

_token_refresh_lock = threading.Lock()


def is_token_expired_error(error) -> bool:
    error_str = str(error).lower()
    return "accesstokenexpired" in error_str or "session invalidated" in error_str or "expired" in error_str


def detect_oauth2_provider(host: str) -> str | None:
    """Returns "microsoft", "google", or None if the host is not recognized."""
    host_lower = host.lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return "microsoft"
    if "gmail" in host_lower or "google" in host_lower:
        return "google"
    return None


def acquire_oauth2_token_for_provider(provider, client_id, email, client_secret=None, tenant=None):
    """Runs the provider's token flow. Returns the token or None."""
    if provider == "microsoft":
        return oauth2_microsoft.acquire_token(client_id, email, tenant)
    if provider == "google":
        if not client_secret:
            raise AuthError(
                "OAuth2 client secret is required for Google OAuth2. "
                "Provide --oauth2-client-secret or set SRC_OAUTH2_CLIENT_SECRET."
            )
        return oauth2_google.acquire_token(client_id, client_secret)
    raise AuthError(f"Unknown OAuth2 provider: {provider}")


def acquire_token(host, client_id, email, client_secret=None, tenant=None):
    """
    Detects the provider from ``host`` and acquires a token.

    Returns (token, provider). Raises AuthError when the provider can't be
    detected or no token could be obtained.
    """
    provider = detect_oauth2_provider(host)
    if not provider:
        raise AuthError(f"Could not detect OAuth2 provider from host '{host}'.")

    safe_print(f"Acquiring OAuth2 token ({provider})...")
    token = acquire_oauth2_token_for_provider(provider, client_id, email, client_secret, tenant)
    if not token:
        raise AuthError(f"Failed to acquire OAuth2 token from {provider}.")
    safe_print("OAuth2 token acquired successfully.")
    return token, provider


def build_xoauth2_string(user: str, token: str) -> bytes:
    return f"user={user}\x01auth=Bearer {token}\x01\x01".encode()


def auth_description(provider) -> str:
    if provider:
        return f"OAuth2/{provider} (XOAUTH2)"
    return "Basic (password)"


def refresh_oauth2_token(conf, old_token):
    """
    Thread-safe token refresh using double-checked locking.

    Several workers can see the same expired token at once; only the first
    one through the lock talks to the provider, the others pick up the token
    it stored in ``conf``.

    Returns the current token, or None when the refresh failed.
    """
    oauth2 = conf.get("oauth2")
    if not oauth2:
        return None

    with _token_refresh_lock:
        if conf["oauth2_token"] != old_token:
            return conf["oauth2_token"]

        new_token = acquire_oauth2_token_for_provider(
            oauth2["provider"],
            oauth2["client_id"],
            oauth2["email"],
            oauth2.get("client_secret"),
            oauth2.get("tenant"),
        )
        if new_token:
            conf["oauth2_token"] = new_token
        return new_token
