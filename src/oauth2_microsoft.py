"""
Microsoft OAuth2 Token Acquisition

Access tokens for Outlook / Office 365 IMAP using the MSAL device code flow.
The tenant is discovered from the mailbox's email domain. The MSAL app is
cached per (client_id, tenant) so later sessions refresh silently instead of
prompting for a new device code.

Requires the 'msal' package: pip install msal
"""

import http.client
import json
import os
import re
import ssl
import urllib.parse

from imap_common import OAuth2Error, safe_print

IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
DEFAULT_DISCOVERY_HOST = "login.microsoftonline.com"
DEFAULT_AUTHORITY_BASE = "https://login.microsoftonline.com"

_TENANT_RE = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

# Module-level caches
_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id


def _fetch_json_https(host, path, timeout=10):
    """Fetch JSON from an HTTP(S) endpoint. host may carry a scheme and base path."""
    if not host or any(ch in host for ch in "\r\n"):
        raise ValueError("Invalid host")
    if not path.startswith("/"):
        path = f"/{path}"

    use_https = True
    if host.startswith(("http://", "https://")):
        parsed = urllib.parse.urlparse(host)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        use_https = parsed.scheme == "https"
        host = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname
        base_path = parsed.path.rstrip("/")
        if base_path:
            path = f"{base_path}{path}"

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_tenant(email):
    """
    Look up the tenant ID for an email domain via the OpenID Connect
    discovery document (no authentication required). Cached per domain.

    Raises:
        OAuth2Error: the domain is missing or has no resolvable tenant.
    """
    domain = email.split("@")[-1].strip().lower() if email else ""
    if not domain:
        raise OAuth2Error("Could not discover Microsoft tenant: missing email domain")

    if domain in _tenant_cache:
        return _tenant_cache[domain]

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    discovery_host = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or DEFAULT_DISCOVERY_HOST
    try:
        data = _fetch_json_https(discovery_host, path, timeout=10)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        raise OAuth2Error(f"Could not discover Microsoft tenant for domain '{domain}': {e}") from e

    issuer = data.get("issuer", "")
    match = _TENANT_RE.search(issuer)
    if not match:
        raise OAuth2Error(f"Could not extract tenant ID from issuer: {issuer}")

    _tenant_cache[domain] = match.group(1)
    return match.group(1)


def _load_msal():
    try:
        import msal
    except ImportError as e:
        raise OAuth2Error("'msal' package is required for Microsoft OAuth2. Install it with: pip install msal") from e
    return msal


def _get_app(client_id, tenant_id):
    cache_key = (client_id, tenant_id)
    app = _msal_app_cache.get(cache_key)
    if app is None:
        msal = _load_msal()
        authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or DEFAULT_AUTHORITY_BASE
        safe_print(f"Discovered Microsoft tenant: {tenant_id}")
        app = msal.PublicClientApplication(client_id, authority=f"{authority_base.rstrip('/')}/{tenant_id}")
        _msal_app_cache[cache_key] = app
    return app


def acquire_token(client_id, email):
    """
    Return an IMAP access token for the given mailbox.

    A cached account is refreshed silently; otherwise the device code flow
    prints a sign-in prompt and blocks until the user completes it.

    Raises:
        OAuth2Error: on discovery failure, a refused device flow, or no token.
    """
    app = _get_app(client_id, discover_tenant(email))

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(IMAP_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        raise OAuth2Error(f"Could not initiate device flow: {flow.get('error_description', 'Unknown error')}")

    safe_print(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    raise OAuth2Error(f"Could not acquire token: {result.get('error_description', 'Unknown error')}")
