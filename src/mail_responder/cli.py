"""Command-line entry point for Mail Responder."""

from __future__ import annotations

import argparse
import threading
from pathlib import Path

import uvicorn

from mail_responder.core import AppSettings, configure_logging, load_app_settings
from mail_responder.monitor import MonitorDependencies, MonitorSupervisor, StatusRegistry
from mail_responder.replies import send_message
from mail_responder.responders import WebhookResponder
from mail_responder.storage import SqliteStateStore, StoreError
from mail_responder.web import create_app


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="IMAP/SMTP automatic responder")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "run", "accounts", "send", "state"],
        help="Operation to execute.",
    )
    parser.add_argument(
        "--account",
        dest="account",
        default=None,
        help="Account id for send/state (default: the default account).",
    )
    parser.add_argument("--to", dest="to", default=None, help="Recipient for send.")
    parser.add_argument(
        "--message", dest="message", default=None, help="Body text for send."
    )
    parser.add_argument(
        "--subject", dest="subject", default=None, help="Subject line for send."
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="With run, also serve the status and send API.",
    )
    parser.add_argument(
        "--host", dest="host", default="127.0.0.1", help="API bind address."
    )
    parser.add_argument(
        "--port", dest="port", type=int, default=8000, help="API port."
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    command = args.command
    if command == "info":
        print("Mail Responder is ready. Configure an account to get started.")
        print(f"Accounts configured: {len(settings.accounts)}")
        print(f"State database: {settings.storage.db_path}")
        print(f"Agent webhook: {settings.responder.webhook_url or '(not set)'}")
        return 0
    if command == "run":
        return _run_monitor(settings, args)
    if command == "accounts":
        return _list_accounts(settings)
    if command == "send":
        return _send(settings, args)
    if command == "state":
        return _show_state(settings, args.account)
    return 2


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def _run_monitor(settings: AppSettings, args: argparse.Namespace) -> int:
    """Start every enabled account and block until interrupted.

    With ``--serve`` the HTTP API shares the monitors' status registry and
    runs in the foreground until the server exits.
    """
    if not settings.responder.webhook_url:
        print("Set MAIL_RESPONDER_RESPONDER__WEBHOOK_URL to an agent endpoint first.")
        return 1

    registry = StatusRegistry()
    supervisor = MonitorSupervisor(
        settings,
        MonitorDependencies(
            processor=WebhookResponder(settings.responder),
            status_sink=registry,
        ),
    )
    started = supervisor.start_all()
    if not started:
        print("No enabled and configured accounts found.")
        return 1

    print(f"Monitoring {len(started)} account(s): {', '.join(started)}. Ctrl-C to stop.")
    try:
        if args.serve:
            app = create_app(settings, registry)
            uvicorn.run(app, host=args.host, port=args.port)
        else:
            threading.Event().wait()
    except KeyboardInterrupt:
        print("Stopping monitors...")
    finally:
        supervisor.stop_all(timeout=30)
    return 0


def _list_accounts(settings: AppSettings) -> int:
    if not settings.accounts:
        print("No accounts configured.")
        return 0
    for account_id, account in sorted(settings.accounts.items()):
        resolved = account.resolved()
        state = "enabled" if account.enabled and resolved.configured else "disabled"
        print(f"{account_id:<12} {resolved.email or '-':<32} {state}")
        for issue in resolved.status_issues():
            print(f"{'':<12} ! {issue}")
    return 0


def _send(settings: AppSettings, args: argparse.Namespace) -> int:
    if not args.to or not args.message:
        print("send requires --to and --message.")
        return 2
    try:
        account = settings.resolve_account(args.account)
    except KeyError as exc:
        print(exc.args[0])
        return 1
    result = send_message(account, args.to, args.message, subject=args.subject)
    if result.ok:
        print(f"Email sent to {args.to} ({result.message_id})")
        return 0
    print(f"Send failed: {result.error}")
    return 1


def _show_state(settings: AppSettings, account_id: str | None) -> int:
    key = account_id or settings.default_account_id()
    folder = settings.accounts[key].folder if key in settings.accounts else "INBOX"
    try:
        with SqliteStateStore(settings.storage, key, folder) as store:
            snapshot = store.snapshot()
            checkpoint = store.get_checkpoint()
    except StoreError as exc:
        print(f"Unable to read state: {exc}")
        return 1

    print(f"Account: {key}")
    print(f"Processed messages: {len(snapshot.processed_ids)}")
    print(f"Senders tracked: {len(snapshot.rate_limits)}")
    print(f"Last UID: {checkpoint.last_uid if checkpoint else '-'}")
    print(f"Last poll (epoch ms): {snapshot.last_poll_time or '-'}")
    return 0


if __name__ == "__main__":
    main()
