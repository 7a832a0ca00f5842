"""
Job commands for the agent-scheduler CLI.

Each do_* function takes an already-built SchedulerRuntime and a rich
Console, so the same logic can be driven from main() or from tests.
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scheduler.backends.periodic import unique_work_name
from scheduler.daemon import SchedulerRuntime, find_daemon_pid
from scheduler.errors import NotFoundError
from scheduler.formatting import format_schedule, parse_schedule
from scheduler.models import Constraints, ExecutionStatus, Job, new_job

_console = Console()

STATUS_STYLES = {
    ExecutionStatus.SUCCESS: "green",
    ExecutionStatus.FAILED: "red",
    ExecutionStatus.CANCELLED: "yellow",
}


def _fmt_time(dt) -> str:
    if dt is None:
        return "-"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def _runs(job: Job) -> str:
    if job.max_executions:
        return f"{job.execution_count}/{job.max_executions}"
    return str(job.execution_count)


def _next_run(runtime: SchedulerRuntime, job: Job):
    if not job.enabled:
        return None
    if job.schedule_kind == "one_time":
        return job.schedule.execute_at
    work = runtime.work_queue.get_unique_work(unique_work_name(job.id))
    return work.next_run_at if work is not None else None


def _resolve_job(runtime: SchedulerRuntime, job_id: str) -> Job:
    """Exact ID, or a unique prefix of one (IDs are shown truncated)."""
    job = runtime.manager.get_by_id(job_id)
    if job is not None:
        return job
    matches = [j for j in runtime.manager.list_all() if j.id.startswith(job_id)]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise NotFoundError(f"Job ID prefix '{job_id}' is ambiguous ({len(matches)} matches)")
    raise NotFoundError(f"Job not found: {job_id}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def do_add(
    runtime: SchedulerRuntime,
    schedule: str,
    instruction: str,
    title: str = "",
    max_runs: Optional[int] = None,
    requires_network: bool = False,
    requires_charging: bool = False,
    notify: bool = True,
    conversation_id: Optional[str] = None,
    agent_name: Optional[str] = None,
    console: Optional[Console] = None,
) -> Job:
    c = console or _console
    job = new_job(
        instruction=instruction,
        schedule=parse_schedule(schedule, now=runtime.clock),
        title=title,
        constraints=Constraints(requires_network=requires_network, requires_charging=requires_charging),
        max_executions=max_runs,
        notify_on_completion=notify,
        origin_conversation_id=conversation_id,
        agent_name=agent_name,
    )
    runtime.manager.schedule(job)
    c.print(f"[green]Scheduled[/] [bold cyan]{job.id[:8]}[/] {format_schedule(job)}")
    if find_daemon_pid(runtime.home) is None:
        c.print("[yellow]The scheduler daemon is not running; start it with: agent-scheduler daemon[/]")
    return job


def do_list(runtime: SchedulerRuntime, show_all: bool = False, console: Optional[Console] = None) -> None:
    c = console or _console
    jobs = runtime.manager.list_all() if show_all else runtime.manager.list_enabled()
    if not jobs:
        c.print("[dim]No scheduled jobs.[/]")
        c.print("[dim]Create one with: agent-scheduler add \"every 1h\" \"...\"[/]")
        return

    table = Table(title=f"Scheduled Jobs ({len(jobs)})")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name", max_width=40)
    table.add_column("Schedule")
    table.add_column("Runs", justify="right")
    table.add_column("Last run", style="dim")
    table.add_column("State")
    for job in jobs:
        state = "[green]active[/]" if job.enabled else "[red]disabled[/]"
        table.add_row(
            job.id[:8],
            job.display_name,
            format_schedule(job),
            _runs(job),
            _fmt_time(job.last_executed_at),
            state,
        )
    c.print(table)


def do_show(runtime: SchedulerRuntime, job_id: str, console: Optional[Console] = None) -> Job:
    c = console or _console
    job = _resolve_job(runtime, job_id)
    constraints = [name for name, on in (
        ("network", job.constraints.requires_network),
        ("charging", job.constraints.requires_charging),
    ) if on]
    lines = [
        f"[bold]ID:[/]           {job.id}",
        f"[bold]Title:[/]        {job.title or '-'}",
        f"[bold]Instruction:[/]  {job.instruction}",
        f"[bold]Schedule:[/]     {format_schedule(job)}",
        f"[bold]Enabled:[/]      {'yes' if job.enabled else 'no'}",
        f"[bold]Runs:[/]         {_runs(job)}",
        f"[bold]Last run:[/]     {_fmt_time(job.last_executed_at)}",
        f"[bold]Next run:[/]     {_fmt_time(_next_run(runtime, job))}",
        f"[bold]Created:[/]      {_fmt_time(job.created_at)}",
        f"[bold]Constraints:[/]  {', '.join(constraints) or 'none'}",
        f"[bold]Notify:[/]       {'yes' if job.notify_on_completion else 'no'}",
        f"[bold]Agent:[/]        {job.agent_name or '(active)'}",
        f"[bold]Post to:[/]      {job.origin_conversation_id or '-'}",
    ]
    c.print(Panel("\n".join(lines), title=job.display_name[:60]))
    return job


def do_history(runtime: SchedulerRuntime, job_id: str, limit: int = 20, console: Optional[Console] = None) -> None:
    c = console or _console
    job = _resolve_job(runtime, job_id)
    logs = runtime.manager.logs_for_job(job.id, limit=limit)
    if not logs:
        c.print(f"[dim]No runs recorded for {job.id[:8]}.[/]")
        return

    table = Table(title=f"History: {job.display_name[:50]}")
    table.add_column("Started", style="dim")
    table.add_column("Duration", justify="right")
    table.add_column("Status")
    table.add_column("Result", max_width=60)
    for log in logs:
        style = STATUS_STYLES.get(log.status, "dim")
        duration = log.duration_seconds
        table.add_row(
            _fmt_time(log.started_at),
            f"{duration:.1f}s" if duration is not None else "-",
            f"[{style}]{log.status.value}[/]",
            (log.error_message or log.result_summary or "")[:200],
        )
    c.print(table)


def do_run(runtime: SchedulerRuntime, job_id: str, console: Optional[Console] = None):
    """Run a job now, in this process, and wait for it."""
    c = console or _console
    job = _resolve_job(runtime, job_id)
    c.print(f"[dim]Running {job.id[:8]}...[/]")
    result = runtime.dispatcher.run_now(job.id).result()
    logs = runtime.manager.logs_for_job(job.id, limit=1)
    if logs and logs[0].status == ExecutionStatus.SUCCESS:
        c.print(f"[green]Done:[/] {logs[0].result_summary or ''}")
    elif logs:
        c.print(f"[bold red]Failed:[/] {logs[0].error_message or logs[0].status.value}")
    return result


def do_set_enabled(runtime: SchedulerRuntime, job_id: str, enabled: bool, console: Optional[Console] = None) -> Job:
    c = console or _console
    job = _resolve_job(runtime, job_id)
    job = runtime.manager.set_enabled(job.id, enabled)
    c.print(f"{'[green]Enabled' if enabled else '[yellow]Disabled'}[/] [bold cyan]{job.id[:8]}[/]")
    return job


def do_delete(runtime: SchedulerRuntime, job_id: str, console: Optional[Console] = None) -> bool:
    c = console or _console
    job = _resolve_job(runtime, job_id)
    deleted = runtime.manager.delete(job.id)
    if deleted:
        c.print(f"[green]Deleted[/] [bold cyan]{job.id[:8]}[/]")
    return deleted


def do_status(runtime: SchedulerRuntime, console: Optional[Console] = None) -> None:
    c = console or _console
    c.print()
    pid = find_daemon_pid(runtime.home)
    if pid:
        c.print(f"[green]✓ Scheduler daemon is running[/] (PID {pid})")
    else:
        c.print("[red]✗ Scheduler daemon is not running; jobs will NOT fire[/]")
        c.print("  Start it with: agent-scheduler daemon")
    c.print()

    jobs = runtime.manager.list_enabled()
    c.print(f"  {len(jobs)} active job(s)")
    work = runtime.work_queue.list_work()
    if work:
        next_run = min(w.next_run_at for w in work)
        c.print(f"  Next periodic run: {_fmt_time(next_run)}")
    one_shots = [j for j in jobs if j.schedule_kind == "one_time" and j.schedule.execute_at > runtime.clock()]
    if one_shots:
        next_once = min(j.schedule.execute_at for j in one_shots)
        c.print(f"  Next one-time run: {_fmt_time(next_once)}")
    recent = runtime.store.recent_logs(limit=1)
    if recent:
        c.print(f"  Last run: {_fmt_time(recent[0].started_at)} ({recent[0].status.value})")
    c.print()


def do_tick(runtime: SchedulerRuntime, console: Optional[Console] = None) -> int:
    """Run due periodic work once, waiting for the runs to finish."""
    c = console or _console
    dispatched = runtime.tick_once()
    runtime.dispatcher.shutdown(wait=True)
    c.print(f"{dispatched} periodic run(s) executed")
    return dispatched


def do_prune(runtime: SchedulerRuntime, days: Optional[int] = None, console: Optional[Console] = None) -> int:
    c = console or _console
    removed = runtime.prune_logs(days)
    c.print(f"Removed {removed} execution log row(s)")
    return removed


def do_conversations(runtime: SchedulerRuntime, show_all: bool = False, limit: int = 20,
                     console: Optional[Console] = None) -> None:
    """Conversations that scheduled results are posted to, newest first."""
    c = console or _console
    conversations = runtime.conversations.list_conversations(include_hidden=show_all)[:limit]
    if not conversations:
        c.print("[dim]No conversations.[/]")
        return

    table = Table(title=f"Conversations ({len(conversations)})")
    table.add_column("ID", style="bold cyan")
    table.add_column("Title", max_width=40)
    table.add_column("Updated", style="dim")
    table.add_column("Messages", justify="right")
    table.add_column("Last message", max_width=60)
    for conversation in conversations:
        title = conversation.title or "-"
        if conversation.hidden:
            title += " [dim](in progress)[/]"
        table.add_row(
            conversation.id,
            title,
            _fmt_time(conversation.updated_at),
            str(conversation.message_count),
            conversation.last_message_preview,
        )
    c.print(table)

__all__ = [
    "do_add",
    "do_conversations",
    "do_delete",
    "do_history",
    "do_list",
    "do_prune",
    "do_run",
    "do_set_enabled",
    "do_show",
    "do_status",
    "do_tick",
]
