"""
Automation External Service Integrations
=========================================

Everything the engine talks to outside its own process:
- engine tuning file (YAML, hot-reloaded through watchdog)
- ticket service REST API
- notification service, mirrored to a Slack webhook
- APScheduler job driving the time-based/SLA scan
"""

import asyncio
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel, ConfigDict, Field, field_validator
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from src.automation.application import (
    IAutomationConfigProvider, INotificationService, ITicketService,
)
from src.automation.domain import AutomationConfig, TicketSnapshot
from src.config import TagOperation
from src.core import (
    ConfigurationException, ExternalServiceException,
    NotificationServiceException, TicketServiceException,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


# ========== Configuration ==========

class ConfigFileHandler(FileSystemEventHandler):
    """
    Reloads the engine tuning when its file changes.

    Editors often save by writing a temp file and renaming it over the
    original, so moves onto the path count as changes too.
    """

    def __init__(self, config_manager: "AutomationConfigManager", config_path: Path):
        super().__init__()
        self._manager = config_manager
        self._target = config_path.resolve()

    def _is_target(self, path: Any) -> bool:
        return Path(str(path)).resolve() == self._target

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_target(event.src_path):
            self._manager.reload()

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_target(event.dest_path):
            self._manager.reload()


class AutomationConfigManager(IAutomationConfigProvider):
    """
    Provides the current AutomationConfig.

    Precedence: YAML file, then the defaults given at construction
    (environment settings), then the model defaults. Each reload builds a
    new immutable config and swaps it in; a file that fails validation is
    logged and ignored, so evaluation passes always see a valid config.
    """

    def __init__(self, defaults: Optional[Dict[str, Any]] = None):
        self._defaults = dict(defaults or {})
        self._config: Optional[AutomationConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer: Optional[Observer] = None

    def load(self, path: Path) -> AutomationConfig:
        """
        Initial load at startup.

        Raises:
            ConfigurationException: The file exists but is not a valid config
        """
        self._path = Path(path)
        try:
            config = self._read(self._path)
        except Exception as e:
            raise ConfigurationException(
                f"Invalid automation config {self._path}: {e}",
                {"path": str(self._path)}
            )
        with self._lock:
            self._config = config
        logger.info(
            "Automation config loaded",
            extra={"path": str(self._path), "max_event_depth": config.max_event_depth}
        )
        return config

    def reload(self) -> bool:
        """Re-read the file; returns False (keeping the old config) on any error."""
        if self._path is None:
            return False

        try:
            config = self._read(self._path)
        except Exception as e:
            logger.error(
                "Automation config reload rejected, keeping previous values",
                extra={"path": str(self._path), "error": str(e)}
            )
            return False

        with self._lock:
            self._config = config
        logger.info("Automation config reloaded", extra={"path": str(self._path)})
        return True

    def _read(self, path: Path) -> AutomationConfig:
        if not path.exists():
            logger.warning(
                "Automation config file missing, using defaults",
                extra={"path": str(path)}
            )
            return AutomationConfig(**self._defaults)

        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError("top level of the config file must be a mapping")
        return AutomationConfig(**{**self._defaults, **data})

    def start_watching(self) -> None:
        """
        Watch the config file's directory for edits.

        A missing file or an unavailable inotify backend leaves the current
        config static.
        """
        if self._path is None:
            raise RuntimeError("Automation config not loaded; call load() first")
        if not self._path.exists():
            logger.info("No automation config file to watch", extra={"path": str(self._path)})
            return

        observer = Observer()
        observer.schedule(
            ConfigFileHandler(self, self._path),
            str(self._path.resolve().parent),
            recursive=False
        )
        try:
            observer.start()
        except OSError as e:
            logger.warning(
                "Config file watching unavailable, config is static",
                extra={"error": str(e)}
            )
            return
        self._observer = observer
        logger.info("Watching automation config", extra={"path": str(self._path)})

    def stop_watching(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)

    def get_config(self) -> AutomationConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Automation configuration not loaded")
            return self._config


# ========== Resilience ==========

class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a collaborator that keeps failing.

    After `failure_threshold` consecutive failed requests the circuit opens
    and calls fail fast. Once `recovery_timeout` seconds have passed a
    single probe request is let through; its outcome closes or re-opens
    the circuit.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and time.monotonic() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
        return self._state

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Circuit breaker closed", extra={"circuit": self.name})
        self._failures = 0
        self._state = CircuitState.CLOSED
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        self._probe_in_flight = False
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "circuit": self.name,
                    "consecutive_failures": self._failures,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class ResilientHTTPClient:
    """
    httpx.AsyncClient behind a circuit breaker, with retries.

    Transport errors and 5xx responses are retried with exponential backoff;
    other 4xx responses fail at once. A 404 is returned to the caller, which
    decides whether "not found" is an error.
    """

    def __init__(
        self,
        service_name: str,
        base_url: str,
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
        max_retries: int = 2,
        backoff_seconds: float = 0.25,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.service_name = service_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = headers or {}
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._transport = transport
        self._breaker = CircuitBreaker(service_name)
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport
            )
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Send a request; 2xx and 404 responses are returned.

        Raises:
            ExternalServiceException: Circuit open, client error, or retries exhausted
        """
        if not self._breaker.allow_request():
            raise ExternalServiceException(self.service_name, "circuit breaker open")

        last_error = "no attempt made"
        for attempt in range(1, self._max_retries + 2):
            try:
                response = await self._http().request(method, path, json=json, params=params)
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "Outbound request failed",
                    extra={"service": self.service_name, "path": path,
                           "attempt": attempt, "error": last_error}
                )
            else:
                if response.status_code < 400 or response.status_code == 404:
                    self._breaker.record_success()
                    return response

                last_error = f"HTTP {response.status_code}"
                if response.status_code < 500:
                    # The service answered; only the request was wrong
                    self._breaker.record_success()
                    raise ExternalServiceException(self.service_name, last_error, {"path": path})
                logger.warning(
                    "Outbound request got a server error",
                    extra={"service": self.service_name, "path": path,
                           "status_code": response.status_code, "attempt": attempt}
                )

            if attempt <= self._max_retries:
                await asyncio.sleep(self._backoff_seconds * (2 ** (attempt - 1)))

        self._breaker.record_failure()
        raise ExternalServiceException(self.service_name, last_error, {"path": path})

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


# ========== Ticket service ==========

def _ref(value: Any) -> Optional[str]:
    """Populated references arrive as objects; bare references as ids."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        ref = value.get("_id") or value.get("id") or value.get("name")
        return str(ref) if ref is not None else None
    return str(value)


def _ref_name(value: Any) -> Optional[str]:
    """Display name of a populated reference; bare ids carry none."""
    if isinstance(value, dict) and value.get("name"):
        return str(value["name"])
    return None


class TicketPayload(BaseModel):
    """Ticket document as returned by the ticket service."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="_id")
    status: str
    priority: str
    subject: str = ""
    description: str = ""
    category: Optional[Any] = None
    assigned_to: Optional[Any] = Field(default=None, alias="assignedTo")
    created_by: Optional[Any] = Field(default=None, alias="createdBy")
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    first_response_at: Optional[datetime] = Field(default=None, alias="firstResponseAt")
    sla: Dict[str, Any] = Field(default_factory=dict)
    sla_status: Optional[str] = Field(default=None, alias="slaStatus")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("created_at", "updated_at", "first_response_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def sla_due_at(self) -> Optional[datetime]:
        """Response deadline until first response, resolution deadline after."""
        key = "resolutionDeadline" if self.first_response_at else "responseDeadline"
        raw = self.sla.get(key)
        if not raw:
            return None
        due = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        return due if due.tzinfo else due.replace(tzinfo=timezone.utc)

    def to_snapshot(self) -> TicketSnapshot:
        return TicketSnapshot(
            id=self.id,
            status=self.status,
            priority=self.priority,
            subject=self.subject,
            description=self.description,
            category=_ref(self.category),
            assigned_to=_ref(self.assigned_to),
            created_by=_ref(self.created_by),
            category_name=_ref_name(self.category),
            assigned_to_name=_ref_name(self.assigned_to),
            created_by_name=_ref_name(self.created_by),
            tags=tuple(self.tags),
            created_at=self.created_at,
            updated_at=self.updated_at,
            sla_due_at=self.sla_due_at(),
            sla_status=self.sla_status
        )


def _unwrap(body: Any) -> Any:
    """The ticket API wraps payloads as {"success": ..., "data": ...}."""
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class HTTPTicketService(ITicketService):
    """
    Ticket service client over the help-desk REST API.

    Every failure surfaces as TicketServiceException so the action executor
    can record it.
    """

    def __init__(self, client: ResilientHTTPClient, page_size: int = 100):
        self._client = client
        self._page_size = page_size

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, json=json, params=params)
        except ExternalServiceException as e:
            raise TicketServiceException(e.reason, e.details)

    async def _mutate(self, method: str, path: str, json: Dict[str, Any]) -> None:
        response = await self._send(method, path, json=json)
        if response.status_code == 404:
            raise TicketServiceException("ticket not found", {"path": path})

    async def get_ticket_snapshot(self, ticket_id: str) -> Optional[TicketSnapshot]:
        response = await self._send("GET", f"/tickets/{ticket_id}")
        if response.status_code == 404:
            return None
        return TicketPayload.model_validate(_unwrap(response.json())).to_snapshot()

    async def list_open_tickets(self, statuses: List[str]) -> List[TicketSnapshot]:
        snapshots: List[TicketSnapshot] = []
        for status in statuses:
            page = 1
            while True:
                response = await self._send(
                    "GET", "/tickets",
                    params={"status": status, "page": page, "limit": self._page_size}
                )
                items = _unwrap(response.json()) if response.status_code != 404 else []
                if isinstance(items, dict):
                    items = items.get("tickets", [])
                snapshots.extend(TicketPayload.model_validate(i).to_snapshot() for i in items)
                if len(items) < self._page_size:
                    break
                page += 1
        return snapshots

    async def assign_ticket(self, ticket_id: str, assignee: Optional[str]) -> None:
        await self._mutate("POST", f"/tickets/{ticket_id}/assign", {"assignedTo": assignee or ""})

    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> None:
        await self._mutate("PUT", f"/tickets/{ticket_id}", fields)

    async def update_tags(self, ticket_id: str, tag: str, operation: TagOperation) -> None:
        snapshot = await self.get_ticket_snapshot(ticket_id)
        if snapshot is None:
            raise TicketServiceException("ticket not found", {"ticket_id": ticket_id})

        tags = list(snapshot.tags)
        if operation == TagOperation.ADD and tag not in tags:
            tags.append(tag)
        elif operation == TagOperation.REMOVE:
            tags = [t for t in tags if t != tag]
        await self._mutate("PUT", f"/tickets/{ticket_id}", {"tags": tags})

    async def escalate(self, ticket_id: str, to: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {
            "escalated": True,
            "escalationReason": "Escalated by automation rule",
        }
        if to:
            payload["escalatedTo"] = to
        await self._mutate("PUT", f"/tickets/{ticket_id}", payload)

    async def add_comment(self, ticket_id: str, text: str) -> None:
        await self._mutate(
            "POST", f"/tickets/{ticket_id}/comments",
            {"content": text, "isInternal": True}
        )

    async def close(self) -> None:
        await self._client.close()


# ========== Notifications ==========

class SlackClient:
    """Slack webhook poster for mirrored in-app notifications."""

    def __init__(self, webhook_url: str, channel: str, client: ResilientHTTPClient):
        self._webhook_url = webhook_url
        self._channel = channel
        self._client = client

    def _build_message(self, message: str, context: Dict[str, Any]) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        return {
            "channel": self._channel,
            "text": message,
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": message}},
                {
                    "type": "context",
                    "elements": [{
                        "type": "mrkdwn",
                        "text": (
                            f"Ticket {context.get('ticket_id')} | "
                            f"Priority: {context.get('priority')} | "
                            f"Rule: {context.get('rule_id')}"
                        )
                    }]
                }
            ]
        }

    async def post(self, message: str, context: Dict[str, Any]) -> None:
        await self._client.request("POST", self._webhook_url, json=self._build_message(message, context))

    async def close(self) -> None:
        await self._client.close()


class HTTPNotificationService(INotificationService):
    """
    Notification service client.

    Emails and in-app notifications go to the notification service; in-app
    notifications are also mirrored to Slack when a webhook is configured.
    With neither channel configured, sends fail.
    """

    def __init__(
        self,
        client: Optional[ResilientHTTPClient] = None,
        slack: Optional[SlackClient] = None
    ):
        self._client = client
        self._slack = slack

    async def send_email(
        self,
        template: str,
        recipient_spec: str,
        context: Dict[str, Any]
    ) -> None:
        if self._client is None:
            raise NotificationServiceException("email channel not configured")
        await self._post("/notifications/email", {
            "template": template,
            "to": recipient_spec,
            "context": context,
        })

    async def send_notification(
        self,
        message: str,
        recipient_spec: str,
        context: Dict[str, Any]
    ) -> None:
        if self._client is None and self._slack is None:
            raise NotificationServiceException("no notification channel configured")

        if self._client is not None:
            await self._post("/notifications", {
                "message": message,
                "to": recipient_spec,
                "context": context,
            })

        if self._slack is not None:
            try:
                await self._slack.post(message, context)
            except ExternalServiceException as e:
                if self._client is None:
                    raise NotificationServiceException(e.reason, e.details)
                logger.warning(
                    "Slack mirror failed",
                    extra={"ticket_id": context.get("ticket_id"), "error": e.message}
                )

    async def _post(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            response = await self._client.request("POST", path, json=payload)
        except ExternalServiceException as e:
            raise NotificationServiceException(e.reason, e.details)
        if response.status_code == 404:
            raise NotificationServiceException("endpoint not found", {"path": path})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        if self._slack is not None:
            await self._slack.close()


# ========== Scheduling ==========

class AutomationScheduler:
    """
    Runs the periodic time-based/SLA scan on an AsyncIOScheduler.

    At most one scan runs at a time; scans missed while one was running
    are coalesced into a single catch-up run.
    """

    JOB_ID = "automation_scan"

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self, scan: Callable[[], Awaitable[Any]]) -> None:
        """Schedule `scan` every interval. Must be called inside the running loop."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            scan,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Automation time-based/SLA scan",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds,
            replace_existing=True
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Automation scheduler started",
            extra={"job_id": self.JOB_ID, "interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is None:
            return
        scheduler.shutdown(wait=False)
        logger.info("Automation scheduler stopped", extra={"job_id": self.JOB_ID})
