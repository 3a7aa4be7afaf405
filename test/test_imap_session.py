"""
Tests for imap_session.py

Tests cover:
- build_imap_conf() with password and OAuth2 token
- open_mailbox() dial + login sequence
- Stage-tagged errors for authorization, dial and login failures
"""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_session
from conftest import imap_address
from imap_common import OAuth2Error, TransferError
from imap_mailbox import MailboxAuthError, MailboxConnectionError


class TestBuildImapConf:
    """Tests for build_imap_conf function."""

    def test_password_auth_returns_correct_dict(self):
        conf = imap_session.build_imap_conf("imap.example.com", "user@example.com", "pass123", label="src")

        assert conf == {
            "address": "imap.example.com",
            "user": "user@example.com",
            "password": "pass123",
            "oauth2_token": None,
            "oauth2": None,
            "label": "src",
        }

    def test_oauth2_token_kept(self):
        conf = imap_session.build_imap_conf("imap.example.com", "user", oauth2_token="tok")
        assert conf["oauth2_token"] == "tok"
        assert conf["password"] is None

    def test_empty_token_treated_as_none(self):
        conf = imap_session.build_imap_conf("imap.example.com", "user", "pass", oauth2_token="")
        assert conf["oauth2_token"] is None

    def test_describe_auth(self):
        assert imap_session.describe_auth({"oauth2_token": "tok"}) == "OAuth2 (XOAUTH2)"
        assert imap_session.describe_auth({"password": "pw"}) == "Basic (password)"
        assert imap_session.describe_auth({"oauth2": {"provider": "google"}}) == "OAuth2/google (XOAUTH2)"


class TestOpenMailbox:
    """Tests for open_mailbox with an injected connect function."""

    def test_dials_and_logs_in(self):
        mailbox = MagicMock()
        connect = MagicMock(return_value=mailbox)
        conf = imap_session.build_imap_conf("imap.example.com", "user", "pw", label="src")

        result = imap_session.open_mailbox(conf, timeout=7, connect=connect)

        assert result is mailbox
        connect.assert_called_once_with("imap.example.com", timeout=7, label="src", log_fn=None)
        mailbox.login.assert_called_once_with("user", "pw", oauth2_token=None)

    def test_dial_failure_tagged(self):
        connect = MagicMock(side_effect=MailboxConnectionError("refused"))
        conf = imap_session.build_imap_conf("imap.example.com", "user", "pw", label="dst")

        with pytest.raises(TransferError) as exc_info:
            imap_session.open_mailbox(conf, connect=connect)

        assert exc_info.value.stage == "dialing dst"
        assert str(exc_info.value) == "dialing dst: refused"

    def test_login_failure_tagged_and_logged_out(self):
        mailbox = MagicMock()
        mailbox.login.side_effect = MailboxAuthError("invalid credentials")
        conf = imap_session.build_imap_conf("imap.example.com", "user", "pw", label="src")

        with pytest.raises(TransferError) as exc_info:
            imap_session.open_mailbox(conf, connect=MagicMock(return_value=mailbox))

        assert exc_info.value.stage == "login to src"
        mailbox.logout.assert_called_once()

    def test_oauth2_token_refreshed_before_login(self):
        mailbox = MagicMock()
        oauth2 = {"provider": "microsoft", "client_id": "cid", "email": "user@contoso.com", "client_secret": None}
        conf = imap_session.build_imap_conf("outlook.office365.com", "user@contoso.com", oauth2=oauth2, label="src")

        with patch.object(imap_session.imap_oauth2, "acquire_oauth2_token_for_provider", return_value="fresh") as acquire:
            imap_session.open_mailbox(conf, connect=MagicMock(return_value=mailbox))

        acquire.assert_called_once_with("microsoft", "cid", "user@contoso.com", None)
        assert conf["oauth2_token"] == "fresh"
        mailbox.login.assert_called_once_with("user@contoso.com", None, oauth2_token="fresh")

    def test_oauth2_failure_tagged_before_dialing(self):
        connect = MagicMock()
        oauth2 = {"provider": "google", "client_id": "cid", "email": "u@gmail.com", "client_secret": "s"}
        conf = imap_session.build_imap_conf("imap.gmail.com", "u@gmail.com", oauth2=oauth2, label="dst")

        with patch.object(
            imap_session.imap_oauth2, "acquire_oauth2_token_for_provider", side_effect=OAuth2Error("consent denied")
        ):
            with pytest.raises(TransferError) as exc_info:
                imap_session.open_mailbox(conf, connect=connect)

        assert str(exc_info.value) == "authorizing dst: consent denied"
        connect.assert_not_called()

    def test_label_defaults_to_address(self):
        connect = MagicMock(side_effect=MailboxConnectionError("refused"))
        conf = imap_session.build_imap_conf("imap.example.com", "user", "pw")

        with pytest.raises(TransferError, match="dialing imap.example.com"):
            imap_session.open_mailbox(conf, connect=connect)


class TestOpenMailboxLive:
    """open_mailbox against the mock IMAP server."""

    def test_password_login(self, single_mock_server):
        server, port = single_mock_server()
        conf = imap_session.build_imap_conf(imap_address(port), "alice", "secret", label="src")

        mailbox = imap_session.open_mailbox(conf, timeout=5)
        mailbox.logout()

        assert server.logins == [("alice", "LOGIN")]

    def test_oauth2_login(self, single_mock_server):
        server, port = single_mock_server()
        conf = imap_session.build_imap_conf(imap_address(port), "alice@example.com", oauth2_token="tok", label="dst")

        mailbox = imap_session.open_mailbox(conf, timeout=5)
        mailbox.logout()

        assert server.logins == [("alice@example.com", "XOAUTH2")]

    def test_bad_password(self, single_mock_server):
        _, port = single_mock_server()
        conf = imap_session.build_imap_conf(imap_address(port), "alice", "bad", label="src")

        with pytest.raises(TransferError) as exc_info:
            imap_session.open_mailbox(conf, timeout=5)

        assert exc_info.value.stage == "login to src"
        assert isinstance(exc_info.value.cause, MailboxAuthError)

    def test_bad_token(self, single_mock_server):
        _, port = single_mock_server()
        conf = imap_session.build_imap_conf(imap_address(port), "alice", oauth2_token="bad", label="dst")

        with pytest.raises(TransferError, match="login to dst"):
            imap_session.open_mailbox(conf, timeout=5)

    def test_nothing_listening(self, single_mock_server):
        server, port = single_mock_server()
        server.shutdown()
        server.server_close()
        conf = imap_session.build_imap_conf(imap_address(port), "alice", "secret", label="src")

        with pytest.raises(TransferError) as exc_info:
            imap_session.open_mailbox(conf, timeout=5)

        assert exc_info.value.stage == "dialing src"
