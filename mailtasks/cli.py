import argparse
import logging
import sys
import time
from typing import Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from .config import Config, load_config
from .credentials import CredentialStore, TokenCipher
from .daily_runner import (
    generate_and_store_briefing,
    record_briefing_feedback,
    render_briefing_markdown,
    write_briefing_to_file,
)
from .errors import ConfigError, MailtasksError
from .llm_client import LLMClient
from .logging_config import setup_logging
from .mailbox import build_mailbox_adapters, get_mailbox_adapter
from .models import TERMINAL_STATUSES, EmailProvider, ScanLog, TaskStatus
from .scan_engine import ScanDependencies, run_scan, run_scheduled_sweep
from .scheduler import ScanDispatcher, start_scheduler, stop_scheduler
from .settings_service import (
    authorization_url,
    connect_mailbox,
    disconnect_mailbox,
    get_briefing_preferences,
    get_scan_status,
    update_briefing_preferences,
    update_scan_settings,
)
from .storage import JsonStore

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _open_store(config: Config) -> JsonStore:
    store = JsonStore.from_config(config)
    store.ensure_data_files_exist()
    return store


def _setup() -> tuple[Config, JsonStore]:
    config = load_config()
    return config, _open_store(config)


def _briefing_llm(config: Config) -> Optional[LLMClient]:
    try:
        return LLMClient.from_config(config)
    except ConfigError as e:
        logging.warning("%s; briefings will be generated without the LLM.", e)
        return None


def _render_scan_logs(logs: list[ScanLog]) -> None:
    table = Table(title="Recent Scans")

    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Scanned")
    table.add_column("Extracted")
    table.add_column("For Review")
    table.add_column("Errors")

    for log in logs:
        table.add_row(
            log.started_at.isoformat(timespec="seconds"),
            log.status.value,
            str(log.emails_scanned),
            str(log.tasks_extracted),
            str(log.tasks_for_review),
            str(len(log.errors)),
        )

    console.print(table)


def _print_scan_result(log: Optional[ScanLog]) -> None:
    if log is None:
        print("Scan skipped (disabled, quiet hours, or weekend).")
        return
    _render_scan_logs([log])
    for error in log.errors:
        console.print(f"[red]- {error}[/red]")


# ---------------------------------------------------------------------------
# Commands: scanning
# ---------------------------------------------------------------------------


def cmd_scan(args: argparse.Namespace) -> None:
    config, store = _setup()
    deps = ScanDependencies.from_config(config, store)

    try:
        if args.background:
            dispatcher = ScanDispatcher(deps, max_workers=1)
            future = dispatcher.request_scan(args.config_id)
            print(f"Scan for {args.config_id!r} queued.")
            dispatcher.shutdown(wait=True)
            _print_scan_result(future.result())
            return

        _print_scan_result(run_scan(deps, args.config_id))
    finally:
        deps.close()


def cmd_scan_all(args: argparse.Namespace) -> None:
    config, store = _setup()
    deps = ScanDependencies.from_config(config, store)

    try:
        counts = run_scheduled_sweep(deps, max_workers=config.scan_max_workers)
    finally:
        deps.close()
    print(
        f"Processed {counts['processed']} config(s): {counts['scanned']} scanned, "
        f"{counts['skipped']} skipped, {counts['failed']} failed."
    )


def cmd_scheduler(args: argparse.Namespace) -> None:
    config, store = _setup()
    deps = ScanDependencies.from_config(config, store)

    scheduler = start_scheduler(config, deps, _briefing_llm(config))
    print("Scheduler running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logging.info("Shutting down scheduler...")
    finally:
        stop_scheduler(scheduler, deps)


def cmd_scan_status(args: argparse.Namespace) -> None:
    config, store = _setup()

    status = get_scan_status(store, args.workspace, args.user)
    if not status.connected:
        print("No mailbox connected.")
        return

    print(f"Config:    {status.config_id}")
    print(f"Provider:  {status.provider.value}")
    print(f"Mailbox:   {status.email or '-'}")
    print(f"Enabled:   {'yes' if status.enabled else 'no'}")
    print(f"Last scan: {status.last_scan_at.isoformat() if status.last_scan_at else 'never'}")
    if status.logs:
        _render_scan_logs(status.logs)


def cmd_scan_settings(args: argparse.Namespace) -> None:
    config, store = _setup()

    updates = {
        "scan_interval_hours": args.interval,
        "confidence_threshold": args.threshold,
        "quiet_hours_start": args.quiet_start,
        "quiet_hours_end": args.quiet_end,
        "weekend_scan": args.weekend,
        "enabled": args.enabled,
    }
    updates = {k: v for k, v in updates.items() if v is not None}
    if args.clear_quiet_hours:
        updates["quiet_hours_start"] = None
        updates["quiet_hours_end"] = None

    updated = update_scan_settings(
        store,
        args.workspace,
        args.user,
        updates,
        provider=EmailProvider(args.provider) if args.provider else None,
    )
    quiet = (
        f"{updated.quiet_hours_start}-{updated.quiet_hours_end}"
        if updated.quiet_hours_start and updated.quiet_hours_end
        else "none"
    )
    print(
        f"Updated config {updated.id!r}: enabled={updated.enabled}, "
        f"interval={updated.scan_interval_hours}h, threshold={updated.confidence_threshold}, "
        f"quiet={quiet}, weekend={updated.weekend_scan}"
    )


# ---------------------------------------------------------------------------
# Commands: mailbox connection
# ---------------------------------------------------------------------------


def cmd_auth_url(args: argparse.Namespace) -> None:
    config = load_config()

    adapter = get_mailbox_adapter(EmailProvider(args.provider), config)
    try:
        print(authorization_url(adapter, args.workspace, args.user))
    finally:
        adapter.close()


def cmd_connect(args: argparse.Namespace) -> None:
    config, store = _setup()

    cipher = TokenCipher.from_config(config)
    adapters = build_mailbox_adapters(config)
    credentials = CredentialStore(cipher, adapters)
    adapter = adapters[EmailProvider(args.provider)]

    try:
        scan_config = connect_mailbox(store, credentials, adapter, args.code, args.state, args.user)
    finally:
        for a in adapters.values():
            a.close()
    print(
        f"Connected {scan_config.provider.value} mailbox "
        f"{scan_config.email_address or ''} as config {scan_config.id!r}."
    )


def cmd_disconnect(args: argparse.Namespace) -> None:
    config, store = _setup()

    removed = disconnect_mailbox(store, args.workspace, args.user, EmailProvider(args.provider))
    if removed:
        print(f"Disconnected {args.provider} mailbox.")
    else:
        print(f"No {args.provider} mailbox was connected.")


# ---------------------------------------------------------------------------
# Commands: briefings & tasks
# ---------------------------------------------------------------------------


def cmd_briefing(args: argparse.Namespace) -> None:
    config, store = _setup()

    briefing = generate_and_store_briefing(store, _briefing_llm(config), args.workspace, args.user)
    text = render_briefing_markdown(briefing)
    console.print(Markdown(text))

    if args.write:
        path = write_briefing_to_file(config.briefing_output_path, text)
        logging.info("Briefing written to %s", path)


def cmd_briefing_history(args: argparse.Namespace) -> None:
    config, store = _setup()

    table = Table(title="Briefings")

    table.add_column("ID")
    table.add_column("Date")
    table.add_column("Must Do")
    table.add_column("Overdue")
    table.add_column("AI")
    table.add_column("Feedback")

    for b in store.list_briefings(args.workspace, args.user, limit=args.limit):
        table.add_row(
            b.id,
            b.briefing_date.isoformat(),
            str(len(b.content.must_do)),
            str(len(b.content.overdue)),
            "yes" if b.content.ai_generated else "no",
            b.feedback.value if b.feedback else "",
        )

    console.print(table)


def cmd_briefing_feedback(args: argparse.Namespace) -> None:
    config, store = _setup()

    briefing = record_briefing_feedback(
        store, args.id, args.workspace, args.user, args.feedback, args.notes
    )
    print(f"Recorded {briefing.feedback.value} for briefing {briefing.id!r}.")


def cmd_briefing_prefs(args: argparse.Namespace) -> None:
    config, store = _setup()

    updates = {
        "delivery_time": args.delivery_time,
        "timezone": args.timezone,
        "enabled": args.enabled,
        "include_email": args.include_email,
    }
    if args.project or args.priority:
        updates["filters"] = {"projects": args.project or [], "priorities": args.priority or []}
    updates = {k: v for k, v in updates.items() if v is not None}

    if updates:
        pref = update_briefing_preferences(store, args.workspace, args.user, updates)
    else:
        pref = get_briefing_preferences(store, args.workspace, args.user)

    print(f"Delivery time: {pref.delivery_time} ({pref.timezone})")
    print(f"Enabled:       {'yes' if pref.enabled else 'no'}")
    print(f"Include email: {'yes' if pref.include_email else 'no'}")
    if pref.filters.projects:
        print(f"Projects:      {', '.join(pref.filters.projects)}")
    if pref.filters.priorities:
        print(f"Priorities:    {', '.join(p.value for p in pref.filters.priorities)}")


def cmd_show_tasks(args: argparse.Namespace) -> None:
    config, store = _setup()

    statuses = None if args.all else [s for s in TaskStatus if s not in TERMINAL_STATUSES]
    tasks = store.list_tasks(args.workspace, statuses=statuses)
    if args.review:
        tasks = [t for t in tasks if t.needs_review]

    table = Table(title="Tasks")

    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Due Date")
    table.add_column("Confidence")
    table.add_column("Title")

    for t in tasks:
        confidence = f"{t.confidence_score:.2f}" if t.confidence_score is not None else ""
        if t.needs_review:
            confidence += " (review)"
        table.add_row(
            t.id,
            t.status.value,
            t.priority.value,
            t.due_date.isoformat() if t.due_date else "",
            confidence,
            t.title,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Main CLI entrypoint
# ---------------------------------------------------------------------------


def _add_owner_args(p: argparse.ArgumentParser, user: bool = True) -> None:
    p.add_argument("--workspace", "-w", required=True, help="Workspace ID.")
    if user:
        p.add_argument("--user", "-u", required=True, help="User ID.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailtasks",
        description="Turn email into tasks and deliver daily briefings.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--log-file",
        action="store_true",
        help="Also write logs to logs/mailtasks.log.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    providers = [p.value for p in EmailProvider]

    # scan
    p_scan = subparsers.add_parser("scan", help="Run one scan for a scan config.")
    p_scan.add_argument("config_id", type=str, help="Scan config ID.")
    p_scan.add_argument(
        "--background",
        action="store_true",
        help="Queue the scan on the dispatcher and wait for it to finish.",
    )
    p_scan.set_defaults(func=cmd_scan)

    # scan-all
    p_all = subparsers.add_parser("scan-all", help="Scan every enabled config once.")
    p_all.set_defaults(func=cmd_scan_all)

    # scheduler
    p_sched = subparsers.add_parser(
        "scheduler",
        help="Run the periodic scan sweep and hourly briefing sweep until interrupted.",
    )
    p_sched.set_defaults(func=cmd_scheduler)

    # scan-status
    p_status = subparsers.add_parser("scan-status", help="Show connection and recent scans.")
    _add_owner_args(p_status)
    p_status.set_defaults(func=cmd_scan_status)

    # scan-settings
    p_settings = subparsers.add_parser("scan-settings", help="Update scan settings.")
    _add_owner_args(p_settings)
    p_settings.add_argument("--provider", choices=providers, default=None)
    p_settings.add_argument("--interval", type=int, default=None, help="Hours between scans (1-24).")
    p_settings.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Confidence below which tasks need review (0-1).",
    )
    p_settings.add_argument("--quiet-start", default=None, help="Quiet hours start, HH:MM.")
    p_settings.add_argument("--quiet-end", default=None, help="Quiet hours end, HH:MM.")
    p_settings.add_argument("--clear-quiet-hours", action="store_true")
    p_settings.add_argument("--weekend", dest="weekend", action="store_true", default=None)
    p_settings.add_argument("--no-weekend", dest="weekend", action="store_false")
    p_settings.add_argument("--enable", dest="enabled", action="store_true", default=None)
    p_settings.add_argument("--disable", dest="enabled", action="store_false")
    p_settings.set_defaults(func=cmd_scan_settings)

    # auth-url
    p_auth = subparsers.add_parser("auth-url", help="Print the OAuth consent URL.")
    _add_owner_args(p_auth)
    p_auth.add_argument("--provider", choices=providers, default=EmailProvider.GMAIL.value)
    p_auth.set_defaults(func=cmd_auth_url)

    # connect
    p_connect = subparsers.add_parser(
        "connect",
        help="Finish OAuth with the code and state from the redirect.",
    )
    p_connect.add_argument("--user", "-u", required=True, help="User ID.")
    p_connect.add_argument("--provider", choices=providers, default=EmailProvider.GMAIL.value)
    p_connect.add_argument("--code", required=True)
    p_connect.add_argument("--state", required=True)
    p_connect.set_defaults(func=cmd_connect)

    # disconnect
    p_disconnect = subparsers.add_parser("disconnect", help="Remove a connected mailbox.")
    _add_owner_args(p_disconnect)
    p_disconnect.add_argument("--provider", choices=providers, default=EmailProvider.GMAIL.value)
    p_disconnect.set_defaults(func=cmd_disconnect)

    # briefing
    p_brief = subparsers.add_parser("briefing", help="Generate and store today's briefing.")
    _add_owner_args(p_brief)
    p_brief.add_argument(
        "--write",
        action="store_true",
        help="Also write the markdown to BRIEFING_OUTPUT_PATH.",
    )
    p_brief.set_defaults(func=cmd_briefing)

    # briefing-history
    p_hist = subparsers.add_parser("briefing-history", help="List recent briefings.")
    _add_owner_args(p_hist)
    p_hist.add_argument("--limit", type=int, default=30)
    p_hist.set_defaults(func=cmd_briefing_history)

    # briefing-feedback
    p_fb = subparsers.add_parser("briefing-feedback", help="Rate a briefing.")
    _add_owner_args(p_fb)
    p_fb.add_argument("id", type=str, help="Briefing ID.")
    p_fb.add_argument("feedback", choices=["thumbs_up", "thumbs_down"])
    p_fb.add_argument("--notes", default=None)
    p_fb.set_defaults(func=cmd_briefing_feedback)

    # briefing-prefs
    p_prefs = subparsers.add_parser(
        "briefing-prefs",
        help="Show briefing preferences, or update them if options are given.",
    )
    _add_owner_args(p_prefs)
    p_prefs.add_argument("--delivery-time", default=None, help="HH:MM in the user's timezone.")
    p_prefs.add_argument("--timezone", default=None, help="IANA timezone, e.g. Europe/Paris.")
    p_prefs.add_argument("--enable", dest="enabled", action="store_true", default=None)
    p_prefs.add_argument("--disable", dest="enabled", action="store_false")
    p_prefs.add_argument("--include-email", dest="include_email", action="store_true", default=None)
    p_prefs.add_argument("--exclude-email", dest="include_email", action="store_false")
    p_prefs.add_argument("--project", action="append", default=None, help="Filter by project ID.")
    p_prefs.add_argument(
        "--priority",
        action="append",
        default=None,
        choices=["urgent", "high", "medium", "low", "none"],
        help="Filter by priority.",
    )
    p_prefs.set_defaults(func=cmd_briefing_prefs)

    # show-tasks
    p_tasks = subparsers.add_parser("show-tasks", help="Show tasks in a workspace.")
    _add_owner_args(p_tasks, user=False)
    p_tasks.add_argument("--all", action="store_true", help="Include done and cancelled tasks.")
    p_tasks.add_argument("--review", action="store_true", help="Only tasks that need review.")
    p_tasks.set_defaults(func=cmd_show_tasks)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        log_to_file=args.log_file,
    )

    try:
        args.func(args)
    except MailtasksError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
