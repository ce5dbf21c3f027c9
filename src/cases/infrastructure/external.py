"""
Case External Service Integrations
==================================

External services for the case engine:
- YAML SLA config file watcher
- Slack webhook notifier
- APScheduler for the background sweeps
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from config import settings, NotificationKind
from core import NotFoundError, NotificationError, ConfigurationException
from cases.application import INotifier, ISLAConfigProvider, SweepReport
from cases.domain import SLAConfig
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("SLA config file changed", extra={"path": event.src_path})
            self.config_manager.reload()

    def on_created(self, event):
        # Replaced files arrive as create events
        self.on_modified(event)


class SLAConfigManager(ISLAConfigProvider):
    """
    Thread-safe SLA configuration manager with hot-reload support.

    Uses watchdog to monitor file changes and reload configuration
    without restarting the service. A reload that fails to parse keeps
    the previous configuration.
    """

    def __init__(self):
        self._config: Optional[SLAConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: If the file exists but cannot be parsed
        """
        self._path = Path(path)
        try:
            config = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid SLA configuration: {e}", {"path": str(self._path)}
            ) from e
        with self._lock:
            self._config = config
        logger.info(
            "SLA configuration loaded",
            extra={"path": str(self._path), "deadline_hours": config.deadline_hours}
        )
        return config

    def _load_from_file(self, path: Path) -> SLAConfig:
        """Load and parse YAML config file."""
        if not path.exists():
            logger.warning("SLA config file not found, using defaults", extra={"path": str(path)})
            return SLAConfig()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return SLAConfig(**data)

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValidationError, TypeError) as e:
            logger.error(
                "Failed to reload SLA config, keeping previous configuration",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("SLA configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """
        Start watching configuration file for changes.

        Skips watching if:
        - File doesn't exist (defaults are in use)
        - Running in a containerized environment where inotify doesn't work
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(
                handler,
                str(self._path.parent.resolve()),
                recursive=False
            )
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            # File watching not supported (e.g., in Docker containers)
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> SLAConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("SLA configuration not loaded")
            return self._config

    def get_config(self) -> SLAConfig:
        return self.config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        timer: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._timer = timer
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            elapsed = self._timer() - self._last_failure_time
            if elapsed >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        """Check if request should be allowed."""
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        """Record successful request."""
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        """Record failed request."""
        self._failure_count += 1
        self._last_failure_time = self._timer()

        if self._failure_count >= self.failure_threshold or self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class SlackNotifier(INotifier):
    """
    Slack webhook notifier with circuit breaker and retry logic.

    Handles sending case notifications to Slack with:
    - Circuit breaker to prevent cascade failures
    - Exponential backoff retry
    - Timeout handling

    Without a webhook URL every notification is skipped silently.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        link_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._link_base_url = (link_base_url or settings.case_link_base_url).rstrip("/")
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def _case_link(self, case: Dict[str, Any]) -> str:
        case_id = case.get("case_id") or case.get("id") or "unknown"
        return f"<{self._link_base_url}/{case.get('id') or case_id}|{case_id}>"

    def build_message(self, recipient_user_id: str, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        if kind == NotificationKind.DAILY_DIGEST:
            stats = payload.get("stats", {})
            header_text = ":bar_chart: Daily Case Digest"
            fields = [
                {"type": "mrkdwn", "text": f"*Open:*\n{stats.get('open_cases', 0)}"},
                {"type": "mrkdwn", "text": f"*In Progress:*\n{stats.get('in_progress_cases', 0)}"},
                {"type": "mrkdwn", "text": f"*Overdue:*\n{stats.get('overdue_cases', 0)}"},
            ]
            context = f"For {payload.get('recipient_name', recipient_user_id)} | {payload.get('date', '')}"
        else:
            case = payload.get("case", {})
            if kind == NotificationKind.ESCALATION:
                header_text = ":rotating_light: Case Escalated"
                target = payload.get("escalated_to_name", recipient_user_id)
                fields = [
                    {"type": "mrkdwn", "text": f"*Case:*\n{self._case_link(case)}"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{case.get('priority', '-')}"},
                    {"type": "mrkdwn", "text": f"*Escalated To:*\n{target}"},
                    {"type": "mrkdwn", "text": f"*Overdue By:*\n{payload.get('overdue_minutes', 0)} min"},
                ]
            else:
                header_text = ":inbox_tray: Case Assigned"
                fields = [
                    {"type": "mrkdwn", "text": f"*Case:*\n{self._case_link(case)}"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{case.get('priority', '-')}"},
                    {"type": "mrkdwn", "text": f"*Assignee:*\n{recipient_user_id}"},
                    {"type": "mrkdwn", "text": f"*Due:*\n{case.get('due_date') or '-'}"},
                ]
            context = f"{case.get('title', '')} | Status: {case.get('status', '-')}"

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": header_text,
                    "emoji": True
                }
            },
            {
                "type": "section",
                "fields": fields
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": context}]
            }
        ]

        return {
            "channel": self._channel,
            "text": header_text,
            "blocks": blocks
        }

    async def notify(self, recipient_user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        """
        Send a notification to the Slack webhook.

        Raises:
            NotificationError: If the circuit is open or all retries failed
        """
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification", extra={"kind": kind})
            return

        if not self._circuit_breaker.allow_request():
            logger.warning(
                "Circuit breaker open, skipping Slack notification",
                extra={"kind": kind, "recipient": recipient_user_id}
            )
            raise NotificationError("Slack circuit breaker open", {"kind": kind})

        message = self.build_message(recipient_user_id, kind, payload)
        last_error: Optional[str] = None

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info(
                        "Slack notification sent",
                        extra={"kind": kind, "recipient": recipient_user_id}
                    )
                    return

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "Slack webhook returned non-200",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1
                    }
                )

            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.error(
                    "Slack notification failed",
                    extra={
                        "error": last_error,
                        "attempt": attempt + 1,
                        "kind": kind
                    }
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._base_delay * 2 ** attempt)

        self._circuit_breaker.record_failure()
        raise NotificationError(
            f"Slack delivery failed after {self._max_retries} attempts",
            {"kind": kind, "last_error": last_error}
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


@dataclass
class ScheduledJob:
    """A sweep registered with the scheduler."""
    name: str
    func: Callable[[], Awaitable[SweepReport]]
    description: str
    trigger: str
    trigger_args: Dict[str, Any]
    runs: int = 0
    last_report: Optional[SweepReport] = None
    last_error: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class CaseScheduler:
    """
    Wrapper for APScheduler running the sweep jobs.

    Manages the lifecycle of the scheduler and jobs. A job never overlaps
    itself: scheduled runs use ``max_instances=1`` and manual runs wait for
    an in-flight run of the same job.
    """

    def __init__(self, timezone: str = "UTC", misfire_grace_time: int = 60):
        self._scheduler = AsyncIOScheduler(timezone=timezone)
        self._misfire_grace_time = misfire_grace_time
        self._jobs: Dict[str, ScheduledJob] = {}
        self._paused: Set[str] = set()
        self._running = False

    def register(
        self,
        name: str,
        func: Callable[[], Awaitable[SweepReport]],
        trigger: str,
        description: str = "",
        **trigger_args: Any
    ) -> None:
        """Register a job under ``name`` with an APScheduler trigger."""
        job = ScheduledJob(
            name=name,
            func=func,
            description=description or name,
            trigger=trigger,
            trigger_args=trigger_args,
        )
        self._jobs[name] = job
        self._scheduler.add_job(
            self._runner(job),
            trigger,
            id=name,
            name=job.description,
            misfire_grace_time=self._misfire_grace_time,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **trigger_args
        )
        logger.info(
            "Job registered",
            extra={"job": name, "trigger": trigger, **{f"trigger_{k}": v for k, v in trigger_args.items()}}
        )

    def _runner(self, job: ScheduledJob) -> Callable[[], Awaitable[Optional[SweepReport]]]:
        async def run() -> Optional[SweepReport]:
            async with job.lock:
                try:
                    report = await job.func()
                except Exception as e:
                    job.last_error = str(e)
                    logger.error("Job failed", extra={"job": job.name, "error": str(e)})
                    return None
                job.runs += 1
                job.last_report = report
                job.last_error = report.error if report is not None else None
                return report
        return run

    def _require(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise NotFoundError("Job", name)
        return job

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self._running:
            logger.warning("Case scheduler already running")
            return

        self._scheduler.start()
        self._running = True
        logger.info("Case scheduler started", extra={"jobs": sorted(self._jobs)})

    def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Case scheduler stopped")

    def pause_job(self, name: str) -> None:
        """Stop scheduling a job until resumed."""
        self._require(name)
        self._scheduler.pause_job(name)
        self._paused.add(name)
        logger.info("Job paused", extra={"job": name})

    def resume_job(self, name: str) -> None:
        """Resume a paused job."""
        self._require(name)
        self._scheduler.resume_job(name)
        self._paused.discard(name)
        logger.info("Job resumed", extra={"job": name})

    async def run_job_now(self, name: str) -> Optional[SweepReport]:
        """Run a job immediately, outside its schedule."""
        job = self._require(name)
        logger.info("Manually executing job", extra={"job": name})
        return await self._runner(job)()

    def jobs_status(self) -> List[Dict[str, Any]]:
        """Status of every registered job."""
        status = []
        for name, job in self._jobs.items():
            aps_job = self._scheduler.get_job(name)
            next_run = getattr(aps_job, "next_run_time", None) if aps_job else None
            status.append({
                "name": name,
                "description": job.description,
                "trigger": str(aps_job.trigger) if aps_job else job.trigger,
                "paused": name in self._paused,
                "next_run_time": next_run,
                "runs": job.runs,
                "last_error": job.last_error,
                "last_report": job.last_report.to_dict() if job.last_report else None,
            })
        return status

    def job_names(self) -> List[str]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
