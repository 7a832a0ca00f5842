"""
Scheduler runtime - wiring, ticker and daemon entry point.

build_runtime() assembles every component explicitly (store, backends,
manager, accountant, worker, dispatcher, executor) so nothing is reached
through a global. The daemon then:

- restores exact alarms from the job store and starts the alarm thread;
- ticks every 60 seconds: claims due periodic work and dispatches it,
  and picks up one-shot jobs added from the CLI.

Uses a file-based lock (~/.agent-scheduler/.tick.lock) so only one tick
runs at a time if a daemon and a manual `agent-scheduler tick` overlap.
"""

import atexit
import functools
import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

# fcntl is Unix-only; on Windows use msvcrt for file locking
try:
    import fcntl
except ImportError:
    fcntl = None
    try:
        import msvcrt
    except ImportError:
        msvcrt = None

from agent.conversations import ConversationStore
from agent.coordinator import ScheduledAgentExecutor
from agent.preferences import ModelPreferences
from agent.profiles import AgentProfileRepository
from agent.skills import SkillRepository
from agent.tool_registry import ToolRegistry
from scheduler.accounting import ExecutionAccountant
from scheduler.backends.alarm import AlarmClock
from scheduler.backends.base import RetryPolicy
from scheduler.backends.periodic import PeriodicWorkQueue
from scheduler.dispatcher import TriggerDispatcher
from scheduler.executor import AgentExecutor
from scheduler.manager import JobManager
from scheduler.models import utcnow
from scheduler.store import JobStore
from scheduler.worker import AgentTaskWorker, TaskCompletionNotifier
from scheduler_cli.config import (
    ensure_scheduler_home,
    get_config_value,
    get_conversations_db_path,
    get_jobs_db_path,
    get_lock_path,
    get_work_db_path,
    load_config,
    load_env,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class SchedulerRuntime:
    home: Path
    config: Dict[str, Any]
    store: JobStore
    work_queue: PeriodicWorkQueue
    alarms: AlarmClock
    manager: JobManager
    accountant: ExecutionAccountant
    worker: AgentTaskWorker
    dispatcher: TriggerDispatcher
    conversations: ConversationStore
    registry: ToolRegistry
    clock: Callable[[], datetime] = utcnow
    _ticker: Optional[threading.Thread] = field(default=None, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def lock_path(self) -> Path:
        return get_lock_path(self.home)

    @property
    def tick_interval(self) -> int:
        return int(get_config_value(self.config, "scheduler.tick_interval", 60))

    # =========================================================================
    # Ticking
    # =========================================================================

    def tick(self, now: Optional[datetime] = None) -> List[Any]:
        """Claim due periodic work and hand it to the dispatcher. Returns the futures."""
        self.manager.sync_alarms()
        futures = []
        for work in self.work_queue.claim_due(now or self.clock()):
            future = self.dispatcher.on_periodic_work_due(work)
            if future is not None:
                futures.append(future)
        return futures

    def tick_once(self) -> int:
        """
        Run tick() under the cross-process lock.

        Returns the number of runs dispatched (0 if another tick holds the lock).
        """
        self.home.mkdir(parents=True, exist_ok=True)

        # Cross-platform file locking: fcntl on Unix, msvcrt on Windows
        try:
            lock_fd = open(self.lock_path, "w")
        except OSError as e:
            logger.warning("Cannot open tick lock %s: %s", self.lock_path, e)
            return 0
        try:
            if fcntl:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            elif msvcrt:
                msvcrt.locking(lock_fd.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            lock_fd.close()
            logger.debug("Tick skipped: another instance holds the lock")
            return 0

        try:
            futures = self.tick()
            if futures:
                logger.info("%d periodic run(s) dispatched", len(futures))
            return len(futures)
        finally:
            if fcntl:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
            elif msvcrt:
                try:
                    msvcrt.locking(lock_fd.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass
            lock_fd.close()

    def _ticker_loop(self) -> None:
        interval = self.tick_interval
        logger.info("Ticker started (interval=%ds)", interval)
        while not self._stop_event.is_set():
            try:
                self.tick_once()
            except Exception as e:
                logger.error("Tick error: %s", e)
            self._stop_event.wait(timeout=interval)
        logger.info("Ticker stopped")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, ticker: bool = True) -> None:
        recovered = self.work_queue.recover_interrupted()
        if recovered:
            logger.info("Recovered %d interrupted periodic run(s)", recovered)
        self.manager.reschedule_alarms()
        self.alarms.set_receiver(self.dispatcher.on_alarm_fired)
        self.alarms.start()
        if ticker:
            self._stop_event.clear()
            self._ticker = threading.Thread(target=self._ticker_loop, name="scheduler-ticker", daemon=True)
            self._ticker.start()

    def stop(self, wait: bool = True) -> None:
        """Stop ticking and alarms, then wait for in-flight runs."""
        self._stop_event.set()
        if self._ticker is not None:
            self._ticker.join(timeout=5)
            self._ticker = None
        self.alarms.stop()
        running = self.dispatcher.in_flight()
        if running and wait:
            logger.info("Waiting for %d in-flight run(s): %s", len(running), ", ".join(running))
        self.dispatcher.shutdown(wait=wait)

    def close(self) -> None:
        self.store.close()
        self.work_queue.close()
        self.conversations.close()

    def prune_logs(self, days: Optional[int] = None) -> int:
        """Delete execution-log rows older than `days` (config default)."""
        if days is None:
            days = int(get_config_value(self.config, "scheduler.log_retention_days", 30))
        removed = self.store.delete_logs_older_than(self.clock() - timedelta(days=days))
        if removed:
            logger.info("Pruned %d execution log row(s) older than %d days", removed, days)
        return removed


def build_runtime(
    home: Optional[Path] = None,
    executor: Optional[AgentExecutor] = None,
    config: Optional[Dict[str, Any]] = None,
    notifier: Optional[TaskCompletionNotifier] = None,
    registry: Optional[ToolRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
) -> SchedulerRuntime:
    """
    Assemble a runtime rooted at `home` (default: the scheduler home).

    Without an `executor` the default ScheduledAgentExecutor is built, which
    re-reads config.yaml and .env before every run.
    """
    home = ensure_scheduler_home(home)
    if config is None:
        config = load_config(home)
        config_loader = functools.partial(load_config, home)
    else:
        config_loader = None

    retry_policy = RetryPolicy.from_config(get_config_value(config, "scheduler.retry", {}) or {})

    store = JobStore(get_jobs_db_path(home))
    work_queue = PeriodicWorkQueue(get_work_db_path(home), retry_policy=retry_policy, clock=clock)
    alarms = AlarmClock(clock=clock)
    conversations = ConversationStore(get_conversations_db_path(home))
    registry = registry if registry is not None else ToolRegistry()

    manager = JobManager(store, alarms, work_queue, clock=clock)
    accountant = ExecutionAccountant(store, manager.cancel, clock=clock)

    if executor is None:
        preferences = ModelPreferences(config=config, loader=config_loader)
        executor = ScheduledAgentExecutor(
            conversations=conversations,
            registry=registry,
            preferences=preferences,
            profiles=AgentProfileRepository(home / "agents"),
            skills=SkillRepository(home / "skills", disabled=preferences.disabled_skills()),
            memory_dir=home / "memories",
            env_loader=functools.partial(load_env, home),
        )

    worker = AgentTaskWorker(store, executor, accountant, notifier=notifier)
    dispatcher = TriggerDispatcher(
        store,
        worker,
        alarms,
        work_queue,
        retry_policy=retry_policy,
        max_workers=int(get_config_value(config, "scheduler.max_workers", 2)),
        allow_overlap=bool(get_config_value(config, "scheduler.allow_overlap", False)),
        clock=clock,
    )

    return SchedulerRuntime(
        home=home,
        config=config,
        store=store,
        work_queue=work_queue,
        alarms=alarms,
        manager=manager,
        accountant=accountant,
        worker=worker,
        dispatcher=dispatcher,
        conversations=conversations,
        registry=registry,
        clock=clock,
    )


def get_pid_path(home: Path) -> Path:
    return Path(home) / "scheduler.pid"


def write_pid_file(home: Path) -> None:
    get_pid_path(home).write_text(str(os.getpid()))


def remove_pid_file(home: Path) -> None:
    try:
        get_pid_path(home).unlink()
    except FileNotFoundError:
        pass


def find_daemon_pid(home: Path) -> Optional[int]:
    """PID of the running daemon for this home, or None (stale PID files are ignored)."""
    try:
        pid = int(get_pid_path(home).read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if psutil.pid_exists(pid) else None


def setup_logging(home: Path, verbose: bool = False) -> None:
    """Rotating file log under logs/ plus console output."""
    log_dir = Path(home) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "scheduler.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Reduce OpenAI client logging
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def run_daemon(runtime: Optional[SchedulerRuntime] = None, verbose: bool = False) -> None:
    """Run the scheduler in the foreground until SIGINT/SIGTERM."""
    load_env()
    runtime = runtime or build_runtime()
    setup_logging(runtime.home, verbose=verbose)

    shutdown = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, signal_handler)

    write_pid_file(runtime.home)
    atexit.register(remove_pid_file, runtime.home)

    runtime.start()
    runtime.prune_logs()
    logger.info("Scheduler running (home=%s)", runtime.home)
    try:
        while not shutdown.is_set():
            shutdown.wait(timeout=1.0)
    finally:
        runtime.stop(wait=True)
        runtime.close()
        logger.info("Scheduler stopped")
