"""
IMAP OAuth2 Authentication

XOAUTH2 token handling for one side of the transfer. The provider is
detected from the server host; the first acquisition may be interactive
(device code or browser), every later one is a silent refresh from the
provider library's cache. Each new session calls refresh_oauth2_token()
so a restarted session never logs in with an expired token.
"""

import threading

import oauth2_google
import oauth2_microsoft
from imap_common import OAuth2Error, parse_address

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"

# Serializes acquisitions; the provider caches are plain dicts
_token_lock = threading.Lock()


def detect_oauth2_provider(address):
    """
    Detects the OAuth2 provider from an IMAP server address.
    Returns "microsoft", "google", or None if unrecognized.
    """
    try:
        host = parse_address(address)[0].lower()
    except ValueError:
        return None
    if "outlook" in host or "office365" in host or "microsoft" in host:
        return PROVIDER_MICROSOFT
    if "gmail" in host or "google" in host:
        return PROVIDER_GOOGLE
    return None


def build_oauth2_config(address, client_id, email, client_secret=None):
    """
    Build the "oauth2" entry of a connection config.

    Raises:
        OAuth2Error: the provider cannot be detected, or Google is missing
            its client secret.
    """
    provider = detect_oauth2_provider(address)
    if not provider:
        raise OAuth2Error(f"Could not detect OAuth2 provider from host '{address}'")
    if provider == PROVIDER_GOOGLE and not client_secret:
        raise OAuth2Error(
            "OAuth2 client secret is required for Google OAuth2. "
            "Provide --src-oauth2-client-secret / --dest-oauth2-client-secret, "
            "or set SRC_OAUTH2_CLIENT_SECRET / DEST_OAUTH2_CLIENT_SECRET."
        )
    return {"provider": provider, "client_id": client_id, "email": email, "client_secret": client_secret}


def acquire_oauth2_token_for_provider(provider, client_id, email, client_secret=None):
    """
    Acquires an OAuth2 token for the specified provider.

    Args:
        provider: "microsoft" or "google"
        client_id: OAuth2 client ID
        email: User's email address (used for Microsoft tenant discovery)
        client_secret: Required for Google, not needed for Microsoft
    """
    if provider == PROVIDER_MICROSOFT:
        return oauth2_microsoft.acquire_token(client_id, email)
    if provider == PROVIDER_GOOGLE:
        return oauth2_google.acquire_token(client_id, client_secret)
    raise OAuth2Error(f"Unknown OAuth2 provider: {provider}")


def refresh_oauth2_token(conf):
    """
    Acquire a token for conf["oauth2"] and store it in conf["oauth2_token"].

    Configs without an "oauth2" entry (password or pre-acquired token) are
    left alone and their current token is returned.
    """
    oauth2 = conf.get("oauth2")
    if not oauth2:
        return conf.get("oauth2_token")

    with _token_lock:
        token = acquire_oauth2_token_for_provider(
            oauth2["provider"], oauth2["client_id"], oauth2["email"], oauth2.get("client_secret")
        )
        conf["oauth2_token"] = token
    return token


def auth_description(conf):
    """Human-readable auth description for config summaries."""
    oauth2 = conf.get("oauth2")
    if oauth2:
        return f"OAuth2/{oauth2['provider']} (XOAUTH2)"
    if conf.get("oauth2_token"):
        return "OAuth2 (XOAUTH2)"
    return "Basic (password)"
