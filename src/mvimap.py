"""
mvimap - Move (or copy) messages from IMAP to IMAP

Watches a source IMAP folder and transfers every message that arrives into a
destination folder, deleting it from the source unless --copy is given. With
--once a single pass is made and the process exits; otherwise the source is
watched with IMAP IDLE until the process is stopped. Any failure drops both
connections, waits --retry-delay seconds and starts over from scratch.

Configuration (Environment Variables):
  Source Account:
    SRC_IMAP_HOST       : Source server, "host[:port]" (TLS, default port 993),
                          "imaps://host[:port]" or "imap://host[:port]" (plain)
    SRC_IMAP_USERNAME   : Source Username/Email
    SRC_IMAP_PASSWORD   : Source Password (or App Password)
    SRC_OAUTH2_TOKEN    : Source OAuth2 access token (XOAUTH2, instead of password)
    SRC_OAUTH2_CLIENT_ID     : Source OAuth2 Client ID (Microsoft or Google, token acquired at startup)
    SRC_OAUTH2_CLIENT_SECRET : Source OAuth2 Client Secret (required for Google)
    SRC_FOLDER          : Source folder (default: INBOX)

  Destination Account:
    DEST_IMAP_HOST      : Destination server
    DEST_IMAP_USERNAME  : Destination Username/Email
    DEST_IMAP_PASSWORD  : Destination Password
    DEST_OAUTH2_TOKEN   : Destination OAuth2 access token
    DEST_OAUTH2_CLIENT_ID     : Destination OAuth2 Client ID
    DEST_OAUTH2_CLIENT_SECRET : Destination OAuth2 Client Secret (required for Google)
    DEST_FOLDER         : Destination folder (default: same as source folder)

  Options:
    RUN_ONCE            : "true" to make a single pass and exit.
    COPY_ONLY           : "true" to keep messages on the source (copy semantics).
    VERBOSE             : "true" to print progress to stdout.
    RETRY_DELAY         : Seconds to wait before reconnecting after an error (default: 60).
    IDLE_TIMEOUT        : Seconds before an IDLE is re-issued (default: 1740).

Usage Example:
    # Move new INBOX mail from one server to another, forever
    python3 mvimap.py imap.example.com src@example.com SRC_PW mail.example.org dst@example.org DST_PW

    # Move from Office 365 using the device code flow instead of a password
    python3 mvimap.py --src-oauth2-client-id CLIENT_ID \
        outlook.office365.com src@contoso.com "" mail.example.org dst@example.org DST_PW

    # Copy the Archive folder once, into Archive/2024 on the destination
    python3 mvimap.py --once --copy --frombox Archive --tobox Archive/2024 \
        imap.example.com src@example.com SRC_PW mail.example.org:1993 dst@example.org DST_PW
"""

import argparse
import os
import signal
import sys

import imap_common
import imap_oauth2
import imap_session
from imap_common import OAuth2Error
from imap_mailbox import DEFAULT_IDLE_TIMEOUT
from imap_supervisor import RETRY_DELAY_SECONDS, RunSupervisor, SyncOptions

__version__ = "0.1.0"
NAME = "mvimap"

POSITIONALS = ("FROM_SERVER", "FROM_USER", "FROM_PW", "TO_SERVER", "TO_USER", "TO_PW")


def _env_flag(name):
    return os.getenv(name, "false").lower() == "true"


def build_parser():
    parser = argparse.ArgumentParser(
        prog=NAME,
        description="Move (or copy) messages from IMAP to IMAP.",
        epilog="If FROM_SERVER or TO_SERVER does not use port 993, then append :PORT",
    )

    parser.add_argument("src_host", nargs="?", metavar="FROM_SERVER", default=os.getenv("SRC_IMAP_HOST"))
    parser.add_argument("src_user", nargs="?", metavar="FROM_USER", default=os.getenv("SRC_IMAP_USERNAME"))
    parser.add_argument("src_pass", nargs="?", metavar="FROM_PW", default=os.getenv("SRC_IMAP_PASSWORD"))
    parser.add_argument("dest_host", nargs="?", metavar="TO_SERVER", default=os.getenv("DEST_IMAP_HOST"))
    parser.add_argument("dest_user", nargs="?", metavar="TO_USER", default=os.getenv("DEST_IMAP_USERNAME"))
    parser.add_argument("dest_pass", nargs="?", metavar="TO_PW", default=os.getenv("DEST_IMAP_PASSWORD"))

    parser.add_argument(
        "--once",
        action="store_true",
        default=_env_flag("RUN_ONCE"),
        help="Only do this once [default: keep watching the source folder]",
    )
    parser.add_argument(
        "--copy",
        action="store_true",
        default=_env_flag("COPY_ONLY"),
        help="Copy messages [default: move messages]",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=_env_flag("VERBOSE"),
        help="Print verbose progress logs to stdout",
    )
    parser.add_argument(
        "--frombox",
        default=os.getenv("SRC_FOLDER", imap_common.FOLDER_INBOX),
        help="The source folder [default: INBOX]",
    )
    parser.add_argument(
        "--tobox",
        default=os.getenv("DEST_FOLDER"),
        help="The destination folder [default: same as the source folder]",
    )
    parser.add_argument(
        "--src-oauth2-token",
        default=os.getenv("SRC_OAUTH2_TOKEN"),
        help="Source OAuth2 access token, used instead of FROM_PW (or SRC_OAUTH2_TOKEN)",
    )
    parser.add_argument(
        "--dest-oauth2-token",
        default=os.getenv("DEST_OAUTH2_TOKEN"),
        help="Destination OAuth2 access token, used instead of TO_PW (or DEST_OAUTH2_TOKEN)",
    )
    parser.add_argument(
        "--src-oauth2-client-id",
        dest="src_client_id",
        default=os.getenv("SRC_OAUTH2_CLIENT_ID"),
        help="Source OAuth2 Client ID; acquire XOAUTH2 tokens instead of using FROM_PW (or SRC_OAUTH2_CLIENT_ID)",
    )
    parser.add_argument(
        "--src-oauth2-client-secret",
        dest="src_client_secret",
        default=os.getenv("SRC_OAUTH2_CLIENT_SECRET"),
        help="Source OAuth2 Client Secret (if required) (or SRC_OAUTH2_CLIENT_SECRET)",
    )
    parser.add_argument(
        "--dest-oauth2-client-id",
        dest="dest_client_id",
        default=os.getenv("DEST_OAUTH2_CLIENT_ID"),
        help="Destination OAuth2 Client ID; acquire XOAUTH2 tokens instead of using TO_PW (or DEST_OAUTH2_CLIENT_ID)",
    )
    parser.add_argument(
        "--dest-oauth2-client-secret",
        dest="dest_client_secret",
        default=os.getenv("DEST_OAUTH2_CLIENT_SECRET"),
        help="Destination OAuth2 Client Secret (if required) (or DEST_OAUTH2_CLIENT_SECRET)",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=os.getenv("RETRY_DELAY", str(RETRY_DELAY_SECONDS)),
        help="Seconds to wait before starting over after an error [default: 60]",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=os.getenv("IDLE_TIMEOUT", str(DEFAULT_IDLE_TIMEOUT)),
        help="Seconds before an IDLE is re-issued [default: 1740]",
    )
    parser.add_argument("-V", "--version", action="version", version=f"{NAME} {__version__}")
    return parser


def missing_arguments(args):
    """Names of the positional values that were neither given nor set in the environment."""
    values = {
        "FROM_SERVER": args.src_host,
        "FROM_USER": args.src_user,
        "FROM_PW": args.src_pass or args.src_oauth2_token or args.src_client_id,
        "TO_SERVER": args.dest_host,
        "TO_USER": args.dest_user,
        "TO_PW": args.dest_pass or args.dest_oauth2_token or args.dest_client_id,
    }
    return [name for name in POSITIONALS if not values[name]]


def _oauth2_config(host, client_id, user, client_secret):
    if not client_id:
        return None
    return imap_oauth2.build_oauth2_config(host, client_id, user, client_secret)


def options_from_args(args):
    """
    Build SyncOptions from parsed arguments.

    Raises:
        OAuth2Error: a client ID was given for a host whose provider is unknown.
    """
    src_conf = imap_session.build_imap_conf(
        args.src_host,
        args.src_user,
        args.src_pass,
        oauth2_token=args.src_oauth2_token,
        oauth2=_oauth2_config(args.src_host, args.src_client_id, args.src_user, args.src_client_secret),
        label="src",
    )
    dest_conf = imap_session.build_imap_conf(
        args.dest_host,
        args.dest_user,
        args.dest_pass,
        oauth2_token=args.dest_oauth2_token,
        oauth2=_oauth2_config(args.dest_host, args.dest_client_id, args.dest_user, args.dest_client_secret),
        label="dst",
    )
    return SyncOptions(
        src_conf=src_conf,
        dest_conf=dest_conf,
        src_folder=args.frombox,
        dest_folder=args.tobox or args.frombox,
        once=args.once,
        copy=args.copy,
        retry_delay=args.retry_delay,
        idle_timeout=args.idle_timeout,
    )


def print_summary(options, log_fn):
    log_fn("--- Configuration Summary ---")
    log_fn(f"Source Host     : {options.src_conf['address']}")
    log_fn(f"Source User     : {options.src_conf['user']}")
    log_fn(f"Source Auth     : {imap_session.describe_auth(options.src_conf)}")
    log_fn(f"Source Folder   : {options.src_folder}")
    log_fn(f"Destination Host: {options.dest_conf['address']}")
    log_fn(f"Destination User: {options.dest_conf['user']}")
    log_fn(f"Destination Auth: {imap_session.describe_auth(options.dest_conf)}")
    log_fn(f"Dest Folder     : {options.target_folder}")
    log_fn(f"Mode            : {'copy' if options.copy else 'move'}{' (once)' if options.once else ''}")
    log_fn(f"Retry Delay     : {options.retry_delay}s")
    log_fn("-----------------------------")


def acquire_tokens(options):
    """
    Run the (possibly interactive) OAuth2 sign-in for each side that needs it,
    so later sessions only ever refresh silently.
    """
    for name, conf in (("source", options.src_conf), ("destination", options.dest_conf)):
        oauth2 = conf.get("oauth2")
        if not oauth2:
            continue
        imap_common.safe_print(f"Acquiring OAuth2 token for {name} ({oauth2['provider']})...")
        imap_oauth2.refresh_oauth2_token(conf)
        imap_common.safe_print(f"{name.capitalize()} OAuth2 token acquired successfully.")


def install_signal_handlers(supervisor):
    """Route SIGINT/SIGTERM to supervisor.stop(). Returns the previous handlers."""

    def handle(signum, frame):
        imap_common.safe_print(f"Received signal {signum}, finishing current step and exiting...")
        supervisor.stop()

    previous = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, handle)
    return previous


def restore_signal_handlers(previous):
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    missing = missing_arguments(args)
    if missing:
        imap_common.log_error(f"Need 6 arguments: {' '.join(POSITIONALS)} (missing: {', '.join(missing)})")
        return 1
    if args.retry_delay < 0:
        imap_common.log_error("--retry-delay must be >= 0")
        return 1
    if args.idle_timeout <= 0:
        imap_common.log_error("--idle-timeout must be > 0")
        return 1

    log_fn = imap_common.progress_logger(args.verbose)
    try:
        options = options_from_args(args)
        if args.verbose:
            print_summary(options, log_fn)
        acquire_tokens(options)
    except OAuth2Error as e:
        imap_common.log_error(str(e))
        return 1

    supervisor = RunSupervisor(options, log_fn=log_fn)
    try:
        previous = install_signal_handlers(supervisor)
    except ValueError:
        # signal handlers can only be installed from the main thread
        previous = {}

    try:
        return supervisor.run()
    except KeyboardInterrupt:
        imap_common.safe_print("\n\nProcess terminated by user.")
        return 0
    finally:
        restore_signal_handlers(previous)


if __name__ == "__main__":
    sys.exit(main())
