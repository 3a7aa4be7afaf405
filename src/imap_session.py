"""
IMAP Session Management

Connection config dicts and the dial + login sequence for one side of a
transfer. Failures come back as TransferError tagged with the faulted
stage ("dialing src", "login to dst", ...).
"""

import imap_oauth2
from imap_common import OAuth2Error, TransferError
from imap_mailbox import MailboxError, RemoteMailbox


def build_imap_conf(address, user, password=None, oauth2_token=None, oauth2=None, label=None):
    """
    Build a standard IMAP connection config dict.

    Args:
        address: "host[:port]", "imaps://host[:port]" or "imap://host[:port]"
        user: IMAP username / email
        password: IMAP password (ignored when a token is available)
        oauth2_token: Pre-acquired OAuth2 bearer token for XOAUTH2
        oauth2: Optional dict from imap_oauth2.build_oauth2_config(); when set
            a fresh token is acquired at the start of every session
        label: Short side name used in error stages, "src" or "dst"

    Returns:
        Dict with keys: address, user, password, oauth2_token, oauth2, label
    """
    return {
        "address": address,
        "user": user,
        "password": password,
        "oauth2_token": oauth2_token or None,
        "oauth2": oauth2,
        "label": label,
    }


def describe_auth(conf):
    return imap_oauth2.auth_description(conf)


def open_mailbox(conf, log_fn=None, timeout=None, connect=RemoteMailbox.connect):
    """
    Dial and authenticate one side of the session pair.

    Returns:
        A logged-in RemoteMailbox. On a login failure the connection is
        logged out before the TransferError is raised.
    """
    label = conf.get("label") or conf["address"]
    if conf.get("oauth2"):
        try:
            imap_oauth2.refresh_oauth2_token(conf)
        except OAuth2Error as e:
            raise TransferError(f"authorizing {label}", e) from e

    try:
        mailbox = connect(conf["address"], timeout=timeout, label=label, log_fn=log_fn)
    except MailboxError as e:
        raise TransferError(f"dialing {label}", e) from e

    try:
        mailbox.login(conf["user"], conf.get("password"), oauth2_token=conf.get("oauth2_token"))
    except MailboxError as e:
        mailbox.logout()
        raise TransferError(f"login to {label}", e) from e
    return mailbox
