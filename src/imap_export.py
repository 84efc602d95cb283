"""
IMAP Account Export Script

Exports a whole IMAP account into a single ZIP archive laid out as a Maildir
tree: every folder becomes "<folder>/cur/" and every message one file in it.
The archive can be extracted straight into a mail client's Maildir store.

Features:
- Full Account: Lists every folder and downloads every message.
- Parallel Downloads: A small pool of IMAP sessions (default 3) fetches folders concurrently.
- Bounded Memory: Folders and messages flow through bounded queues to a single archive writer.
- Folder Naming: The "INBOX/" namespace prefix is stripped; server delimiters become "/".
- Skips non-content folders: dovecot.sieve, Spam, Trash, Junk.
- Fault Tolerant: A folder that fails to select or fetch is logged and the export continues.

Configuration (Environment Variables):
    SRC_IMAP_HOST: Server address: "host", "host:port", "imap://host:port" or "imaps://host:port".
        Without a scheme TLS is used on port 993; otherwise STARTTLS when offered.
    SRC_IMAP_USERNAME, SRC_IMAP_PASSWORD: Credentials.

    OAuth2 (Optional - instead of password):
    SRC_OAUTH2_CLIENT_ID: OAuth2 Client ID
    SRC_OAUTH2_CLIENT_SECRET: OAuth2 Client Secret (required for Google)
    SRC_OAUTH2_TENANT: Microsoft tenant (default: organizations)

    EXPORT_ZIP_PATH: Output ZIP file.
    MAX_WORKERS: Number of concurrent IMAP sessions (default: 3).
    BATCH_SIZE: Messages requested per FETCH (default: 10).
    IMAP_TIMEOUT: Socket timeout in seconds (default: 120).

Usage:
    python3 imap_export.py \
        --src-host "imap.example.com:993" \
        --src-user "you@example.com" \
        --src-pass "your-app-password" \
        --dest-file "./account.zip"
"""

import argparse
import os
import sys

from auth import imap_oauth2
from core import imap_session
from core.errors import ConfigError, FatalExportError
from core.export_pipeline import DEFAULT_WORKERS, ExportPipeline

DEFAULT_TIMEOUT = 120


def build_parser():
    parser = argparse.ArgumentParser(description="Export a whole IMAP account to a Maildir-layout ZIP file.")

    # Source
    parser.add_argument(
        "--src-host", "--server", dest="src_host", default=os.getenv("SRC_IMAP_HOST"), help="IMAP server address"
    )
    parser.add_argument("--src-user", "--user", dest="src_user", default=os.getenv("SRC_IMAP_USERNAME"), help="Username")
    parser.add_argument(
        "--src-pass", "--password", dest="src_pass", default=os.getenv("SRC_IMAP_PASSWORD"), help="Password"
    )
    parser.add_argument(
        "--oauth2-client-id", default=os.getenv("SRC_OAUTH2_CLIENT_ID"), help="OAuth2 client ID (instead of password)"
    )
    parser.add_argument(
        "--oauth2-client-secret",
        default=os.getenv("SRC_OAUTH2_CLIENT_SECRET"),
        help="OAuth2 client secret (required for Google)",
    )
    parser.add_argument("--oauth2-tenant", default=os.getenv("SRC_OAUTH2_TENANT"), help="Microsoft tenant ID")

    # Destination
    parser.add_argument(
        "--dest-file", "--outfile", dest="dest_file", default=os.getenv("EXPORT_ZIP_PATH"), help="Output ZIP file"
    )

    # Config
    parser.add_argument(
        "--workers", type=int, default=int(os.getenv("MAX_WORKERS", DEFAULT_WORKERS)), help="Concurrent IMAP sessions"
    )
    parser.add_argument(
        "--batch",
        type=int,
        default=int(os.getenv("BATCH_SIZE", imap_session.FETCH_BATCH_SIZE)),
        help="Messages per FETCH",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.getenv("IMAP_TIMEOUT", DEFAULT_TIMEOUT)),
        help="Socket timeout in seconds",
    )
    return parser


def validate_args(args):
    """Raises ConfigError describing everything missing or out of range."""
    missing = []
    if not args.src_host:
        missing.append("SRC_IMAP_HOST (--src-host)")
    if not args.src_user:
        missing.append("SRC_IMAP_USERNAME (--src-user)")
    if not args.src_pass and not args.oauth2_client_id:
        missing.append("SRC_IMAP_PASSWORD (--src-pass) or SRC_OAUTH2_CLIENT_ID (--oauth2-client-id)")
    if not args.dest_file:
        missing.append("EXPORT_ZIP_PATH (--dest-file)")
    if missing:
        raise ConfigError(f"Missing configuration: {', '.join(missing)}")

    if args.workers < 1:
        raise ConfigError(f"--workers must be at least 1, got {args.workers}")
    if args.batch < 1:
        raise ConfigError(f"--batch must be at least 1, got {args.batch}")
    if args.timeout <= 0:
        raise ConfigError(f"--timeout must be positive, got {args.timeout}")

    # Fail on a malformed address before anything touches the network
    imap_session.parse_server_address(args.src_host)


def print_summary(args, dest_path):
    provider = imap_oauth2.detect_oauth2_provider(args.src_host) if args.oauth2_client_id else None
    print("\n--- Configuration Summary ---")
    print(f"Source Host     : {args.src_host}")
    print(f"Source User     : {args.src_user}")
    print(f"Authentication  : {imap_oauth2.auth_description(provider)}")
    print(f"Destination File: {dest_path}")
    print(f"Workers         : {args.workers}")
    print(f"Batch Size      : {args.batch}")
    print("-----------------------------\n")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        validate_args(args)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    dest_path = os.path.expanduser(args.dest_file)
    print_summary(args, dest_path)

    pipeline = None
    try:
        conf = imap_session.build_imap_conf(
            args.src_host,
            args.src_user,
            args.src_pass,
            client_id=args.oauth2_client_id,
            client_secret=args.oauth2_client_secret,
            tenant=args.oauth2_tenant,
            timeout=args.timeout,
        )
        pipeline = ExportPipeline(conf, dest_path, workers=args.workers, batch_size=args.batch)
        pipeline.run()
    except KeyboardInterrupt:
        if pipeline is not None:
            pipeline.cancel()
        print("\nExport interrupted by user.")
        sys.exit(130)
    except FatalExportError as e:
        print(f"Fatal Error: {e}")
        sys.exit(1)

    print("\nExport completed successfully.")


if __name__ == "__main__":
    main()
