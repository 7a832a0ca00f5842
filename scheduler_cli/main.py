#!/usr/bin/env python3
"""
agent-scheduler command line.

Usage:
    agent-scheduler add SCHEDULE INSTRUCTION   Schedule a job
    agent-scheduler list [--all]               List jobs
    agent-scheduler show ID                    Show one job
    agent-scheduler history ID                 Show a job's runs
    agent-scheduler conversations [--all]      List result conversations
    agent-scheduler run ID                     Run a job now
    agent-scheduler enable|disable|delete ID   Change a job
    agent-scheduler status                     Is the daemon running, what is next
    agent-scheduler tick                       Run due periodic work once and exit
    agent-scheduler daemon                     Run the scheduler in the foreground
    agent-scheduler prune [--days N]           Drop old execution history
    agent-scheduler config set KEY VALUE       Set a config.yaml value
"""

import argparse
import sys

from rich.console import Console

from scheduler.errors import SchedulerError
from scheduler_cli.config import load_env, set_config_value

_console = Console(stderr=True)


def _runtime():
    from scheduler.daemon import build_runtime
    load_env()
    return build_runtime()


def _with_runtime(fn, *args, **kwargs):
    runtime = _runtime()
    try:
        return fn(runtime, *args, **kwargs)
    finally:
        runtime.dispatcher.shutdown(wait=True)
        runtime.close()


def cmd_add(args):
    from scheduler_cli.jobs import do_add
    _with_runtime(
        do_add,
        args.schedule,
        args.instruction,
        title=args.title or "",
        max_runs=args.max_runs,
        requires_network=args.requires_network,
        requires_charging=args.requires_charging,
        notify=not args.no_notify,
        conversation_id=args.conversation,
        agent_name=args.agent,
    )


def cmd_list(args):
    from scheduler_cli.jobs import do_list
    _with_runtime(do_list, show_all=args.all)


def cmd_show(args):
    from scheduler_cli.jobs import do_show
    _with_runtime(do_show, args.job_id)


def cmd_history(args):
    from scheduler_cli.jobs import do_history
    _with_runtime(do_history, args.job_id, limit=args.limit)


def cmd_conversations(args):
    from scheduler_cli.jobs import do_conversations
    _with_runtime(do_conversations, show_all=args.all, limit=args.limit)


def cmd_run(args):
    from scheduler_cli.jobs import do_run
    _with_runtime(do_run, args.job_id)


def cmd_enable(args):
    from scheduler_cli.jobs import do_set_enabled
    _with_runtime(do_set_enabled, args.job_id, True)


def cmd_disable(args):
    from scheduler_cli.jobs import do_set_enabled
    _with_runtime(do_set_enabled, args.job_id, False)


def cmd_delete(args):
    from scheduler_cli.jobs import do_delete
    _with_runtime(do_delete, args.job_id)


def cmd_status(args):
    from scheduler_cli.jobs import do_status
    _with_runtime(do_status)


def cmd_tick(args):
    from scheduler_cli.jobs import do_tick
    _with_runtime(do_tick)


def cmd_prune(args):
    from scheduler_cli.jobs import do_prune
    _with_runtime(do_prune, days=args.days)


def cmd_daemon(args):
    from scheduler.daemon import run_daemon
    run_daemon(verbose=args.verbose)


def cmd_config(args):
    if args.config_command == "set":
        value = set_config_value(args.key, args.value)
        print(f"Set {args.key} = {value!r}")
    else:
        print("Usage: agent-scheduler config set KEY VALUE")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-scheduler",
        description="Schedule autonomous agent jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Schedules:
    30m                  Once, 30 minutes from now
    2026-02-03T14:00     Once at that local time
    every 2h             Every 2 hours (15 minutes minimum)
    "0 9 * * *"          Cron expression (runs hourly; the expression is informational)
    conditional          Every 15 minutes
""",
    )
    subparsers = parser.add_subparsers(dest="command")

    # =========================================================================
    # add
    # =========================================================================
    add_parser = subparsers.add_parser("add", help="Schedule a job")
    add_parser.add_argument("schedule", help="When to run (see Schedules below)")
    add_parser.add_argument("instruction", help="What the agent should do")
    add_parser.add_argument("--title", help="Short name shown in listings")
    add_parser.add_argument("--max-runs", type=int, help="Disable the job after this many runs")
    add_parser.add_argument("--requires-network", action="store_true", help="Only run when online")
    add_parser.add_argument("--requires-charging", action="store_true", help="Only run on AC power")
    add_parser.add_argument("--no-notify", action="store_true", help="No completion notification")
    add_parser.add_argument("--conversation", help="Conversation ID to post results to")
    add_parser.add_argument("--agent", help="Agent profile to run with (default: active agent)")
    add_parser.set_defaults(func=cmd_add)

    # =========================================================================
    # list / show / history / conversations
    # =========================================================================
    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("--all", action="store_true", help="Include disabled jobs")
    list_parser.set_defaults(func=cmd_list)

    show_parser = subparsers.add_parser("show", help="Show a job")
    show_parser.add_argument("job_id", help="Job ID or unique prefix")
    show_parser.set_defaults(func=cmd_show)

    history_parser = subparsers.add_parser("history", help="Show a job's execution history")
    history_parser.add_argument("job_id", help="Job ID or unique prefix")
    history_parser.add_argument("--limit", type=int, default=20, help="Number of runs (default: 20)")
    history_parser.set_defaults(func=cmd_history)

    conversations_parser = subparsers.add_parser("conversations", help="List conversations results are posted to")
    conversations_parser.add_argument("--all", action="store_true", help="Include hidden sessions of running jobs")
    conversations_parser.add_argument("--limit", type=int, default=20, help="Max conversations to show")
    conversations_parser.set_defaults(func=cmd_conversations)

    # =========================================================================
    # run / enable / disable / delete
    # =========================================================================
    for name, help_text, func in (
        ("run", "Run a job now and wait for it", cmd_run),
        ("enable", "Enable a job and reinstall its schedule", cmd_enable),
        ("disable", "Disable a job and remove its schedule", cmd_disable),
        ("delete", "Delete a job and its history", cmd_delete),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("job_id", help="Job ID or unique prefix")
        sub.set_defaults(func=func)

    # =========================================================================
    # status / tick / daemon / prune
    # =========================================================================
    subparsers.add_parser("status", help="Show scheduler status").set_defaults(func=cmd_status)
    subparsers.add_parser("tick", help="Run due periodic work once and exit").set_defaults(func=cmd_tick)

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler in the foreground")
    daemon_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    daemon_parser.set_defaults(func=cmd_daemon)

    prune_parser = subparsers.add_parser("prune", help="Delete old execution history")
    prune_parser.add_argument("--days", type=int, help="Keep this many days (default: scheduler.log_retention_days)")
    prune_parser.set_defaults(func=cmd_prune)

    # =========================================================================
    # config
    # =========================================================================
    config_parser = subparsers.add_parser("config", help="Change configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_set = config_subparsers.add_parser("set", help="Set a dotted config key")
    config_set.add_argument("key", help="e.g. scheduler.max_workers")
    config_set.add_argument("value")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv=None):
    """Main entry point for agent-scheduler."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return

    try:
        args.func(args)
    except SchedulerError as e:
        _console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
