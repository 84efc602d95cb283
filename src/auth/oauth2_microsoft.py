"""
Microsoft OAuth2 Token Acquisition

Access tokens for Outlook/Office 365 IMAP through the MSAL device code flow.
The MSAL application is cached per (client_id, authority) so later calls
refresh silently from its in-memory token cache.

Requires the 'msal' package: pip install msal
"""

from __future__ import annotations

import os

from core.errors import AuthError
from utils.imap_common import safe_print

DEFAULT_AUTHORITY_BASE = "https://login.microsoftonline.com"
DEFAULT_TENANT = "organizations"
IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]

# (client_id, authority) -> msal.PublicClientApplication
_msal_app_cache = {}


def build_authority(tenant: str | None = None) -> str:
    base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or DEFAULT_AUTHORITY_BASE
    return f"{base.rstrip('/')}/{tenant or DEFAULT_TENANT}"


def _get_app(client_id: str, authority: str):
    try:
        import msal
    except ImportError as e:
        raise AuthError("'msal' package is required for Microsoft OAuth2. Install it with: pip install msal") from e

    cache_key = (client_id, authority)
    app = _msal_app_cache.get(cache_key)
    if app is None:
        app = msal.PublicClientApplication(client_id, authority=authority)
        _msal_app_cache[cache_key] = app
    return app


def acquire_token(client_id: str, email: str, tenant: str | None = None) -> str | None:
    """
    Returns an access token for ``email``, or None when the flow fails.

    Tries a silent refresh for an account already known to the cached app
    first; falls back to the device code flow, which prints a sign-in prompt.
    """
    app = _get_app(client_id, build_authority(tenant))

    accounts = app.get_accounts(username=email) or app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(IMAP_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        safe_print(f"Error: Could not initiate device flow: {flow.get('error_description', 'Unknown error')}")
        return None

    safe_print(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    safe_print(f"Error: Could not acquire token: {result.get('error_description', 'Unknown error')}")
    return None
