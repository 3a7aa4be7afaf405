"""
Google OAuth2 Token Acquisition

Access tokens for Gmail IMAP using the installed-app flow: a browser is
opened for consent and a local HTTP server receives the redirect. The
resulting credentials are cached so later sessions refresh without a browser.

Requires the 'google-auth-oauthlib' package: pip install google-auth-oauthlib
"""

import os

from imap_common import OAuth2Error, safe_print

IMAP_SCOPES = ["https://mail.google.com/"]

# Module-level cache for credentials (holds refresh token)
_creds_cache = {}  # (client_id, client_secret) -> credentials


def _load_flow():
    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError as e:
        raise OAuth2Error(
            "'google-auth-oauthlib' package is required for Google OAuth2. "
            "Install it with: pip install google-auth-oauthlib"
        ) from e
    return InstalledAppFlow


def _refresh(creds):
    """Refresh cached credentials in place. Returns the new access token or None."""
    import google.auth.exceptions
    import google.auth.transport.requests

    try:
        creds.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.GoogleAuthError as e:
        safe_print(f"Google token refresh failed ({e}), signing in again...")
        return None
    return creds.token


def client_config(client_id, client_secret):
    auth_uri = os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth"
    token_uri = os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token"
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": auth_uri,
            "token_uri": token_uri,
            "redirect_uris": ["http://localhost"],
        }
    }


def acquire_token(client_id, client_secret):
    """
    Return a Gmail IMAP access token.

    Cached credentials with a refresh token are refreshed first; the browser
    flow only runs on the first call or when the refresh is refused.

    Raises:
        OAuth2Error: the library is missing or the flow produced no token.
    """
    cache_key = (client_id, client_secret)
    creds = _creds_cache.get(cache_key)
    if creds is not None and creds.refresh_token:
        token = _refresh(creds)
        if token:
            return token

    flow = _load_flow().from_client_config(client_config(client_id, client_secret), scopes=IMAP_SCOPES)

    safe_print("Opening browser for Google authentication...")
    safe_print("If the browser does not open, check the terminal for a URL to visit.")
    credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        _creds_cache[cache_key] = credentials
        return credentials.token

    raise OAuth2Error("Could not acquire Google OAuth2 token.")
