"""
Tests for oauth2_google.py

Tests cover:
- Token acquisition using the installed app flow
- Credentials caching and silent token refresh
"""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import oauth2_google
from imap_common import OAuth2Error


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear module-level caches between tests."""
    oauth2_google._creds_cache.clear()
    yield
    oauth2_google._creds_cache.clear()


def browser_flow(token):
    """Patch target for _load_flow whose flow returns credentials carrying token."""
    credentials = MagicMock()
    credentials.token = token
    flow = MagicMock()
    flow.run_local_server.return_value = credentials
    installed_app_flow = MagicMock()
    installed_app_flow.from_client_config.return_value = flow
    return installed_app_flow


def cached_credentials(refresh_token="refresh_tok", token="refreshed_google_token"):
    creds = MagicMock()
    creds.refresh_token = refresh_token
    creds.token = token
    oauth2_google._creds_cache[("client-id", "client-secret")] = creds
    return creds


class TestAcquireToken:
    def test_browser_flow(self, capsys):
        flow_cls = browser_flow("google_test_token")

        with patch.object(oauth2_google, "_load_flow", return_value=flow_cls):
            assert oauth2_google.acquire_token("client-id", "client-secret") == "google_test_token"

        config = flow_cls.from_client_config.call_args[0][0]
        assert config["installed"]["client_id"] == "client-id"
        assert config["installed"]["token_uri"] == "https://oauth2.googleapis.com/token"
        assert flow_cls.from_client_config.call_args.kwargs["scopes"] == ["https://mail.google.com/"]
        assert ("client-id", "client-secret") in oauth2_google._creds_cache
        assert "Opening browser for Google authentication..." in capsys.readouterr().out

    def test_endpoint_overrides(self):
        env = {"OAUTH2_GOOGLE_AUTH_URL": "http://localhost:1/auth", "OAUTH2_GOOGLE_TOKEN_URL": "http://localhost:1/token"}
        with patch.dict(os.environ, env):
            config = oauth2_google.client_config("cid", "secret")

        assert config["installed"]["auth_uri"] == "http://localhost:1/auth"
        assert config["installed"]["token_uri"] == "http://localhost:1/token"

    def test_missing_library(self):
        with patch.dict("sys.modules", {"google_auth_oauthlib": None, "google_auth_oauthlib.flow": None}):
            with pytest.raises(OAuth2Error, match="pip install google-auth-oauthlib"):
                oauth2_google.acquire_token("client-id", "client-secret")

    def test_no_token_returned(self):
        with patch.object(oauth2_google, "_load_flow", return_value=browser_flow(None)):
            with pytest.raises(OAuth2Error, match="Could not acquire Google OAuth2 token"):
                oauth2_google.acquire_token("client-id", "client-secret")

        assert oauth2_google._creds_cache == {}

    def test_cached_credentials_refreshed(self):
        creds = cached_credentials()
        load_flow = MagicMock()

        with patch.object(oauth2_google, "_refresh", return_value="refreshed_google_token") as refresh:
            with patch.object(oauth2_google, "_load_flow", load_flow):
                assert oauth2_google.acquire_token("client-id", "client-secret") == "refreshed_google_token"

        refresh.assert_called_once_with(creds)
        load_flow.assert_not_called()

    def test_falls_back_to_browser_if_refresh_fails(self):
        cached_credentials()

        with patch.object(oauth2_google, "_refresh", return_value=None):
            with patch.object(oauth2_google, "_load_flow", return_value=browser_flow("new_browser_token")):
                assert oauth2_google.acquire_token("client-id", "client-secret") == "new_browser_token"

    def test_no_refresh_without_refresh_token(self):
        cached_credentials(refresh_token=None)

        with patch.object(oauth2_google, "_refresh") as refresh:
            with patch.object(oauth2_google, "_load_flow", return_value=browser_flow("new_browser_token")):
                assert oauth2_google.acquire_token("client-id", "client-secret") == "new_browser_token"

        refresh.assert_not_called()


class TestRefresh:
    def test_returns_new_token(self):
        creds = MagicMock()
        creds.token = "fresh"

        assert oauth2_google._refresh(creds) == "fresh"
        creds.refresh.assert_called_once()

    def test_refused_refresh_returns_none(self, capsys):
        creds = MagicMock()
        creds.refresh.side_effect = RefreshError("invalid_grant: Token has been expired or revoked.")

        assert oauth2_google._refresh(creds) is None
        assert "Google token refresh failed" in capsys.readouterr().out
