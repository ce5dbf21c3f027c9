"""
Notification Dispatch
=====================

Fire-and-forget delivery of notifications.

Lifecycle operations and sweeps hand a notification to the dispatcher and
carry on; delivery runs as a separate asyncio task bounded by a timeout.
Failures are logged here and never reach the caller.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

from config import VALID_NOTIFICATION_KINDS
from core import NotificationError
from cases.domain import Case
from shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class INotifier(ABC):
    """Interface for outbound notifications."""

    @abstractmethod
    async def notify(self, recipient_user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        """
        Deliver one notification.

        Raises:
            NotificationError: If delivery failed
        """


def case_payload(case: Case) -> Dict[str, Any]:
    """Summary of a case carried in notification payloads."""
    return {
        "id": case.id,
        "case_id": case.case_id,
        "title": case.title,
        "priority": case.priority,
        "status": case.status,
        "severity": case.severity,
        "assigned_to": case.assigned_to,
        "due_date": case.sla.due_date.isoformat() if case.sla.due_date else None,
        "is_overdue": case.sla.is_overdue,
    }


class NotificationDispatcher:
    """
    Schedules notifier calls without awaiting them.

    Each delivery is wrapped in ``asyncio.wait_for`` so a hung notifier
    cannot pile up tasks. ``drain()`` waits for in-flight deliveries on
    shutdown.
    """

    def __init__(self, notifier: Optional[INotifier], timeout_seconds: float = 5.0):
        self._notifier = notifier
        self._timeout = timeout_seconds
        self._pending: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def dispatch(
        self,
        recipient_user_id: str,
        kind: str,
        payload: Dict[str, Any]
    ) -> Optional[asyncio.Task]:
        """
        Start delivering a notification in the background.

        Returns:
            The delivery task, or None when nothing was scheduled
        """
        if self._notifier is None:
            logger.debug("No notifier configured, dropping notification", extra={"kind": kind})
            return None

        if kind not in VALID_NOTIFICATION_KINDS:
            logger.error(
                "Unknown notification kind",
                extra={"kind": kind, "recipient": recipient_user_id}
            )
            return None

        task = asyncio.get_running_loop().create_task(
            self._deliver(recipient_user_id, kind, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, recipient_user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        context = {"recipient": recipient_user_id, "kind": kind}
        try:
            await asyncio.wait_for(
                self._notifier.notify(recipient_user_id, kind, payload),
                timeout=self._timeout
            )
        except asyncio.TimeoutError:
            self.failed += 1
            logger.warning(
                "Notification timed out",
                extra={**context, "timeout_seconds": self._timeout}
            )
        except NotificationError as e:
            self.failed += 1
            logger.warning("Notification failed", extra={**context, "error": e.message})
        except Exception as e:
            self.failed += 1
            logger.error(
                "Unexpected notifier error",
                extra={**context, "error": str(e), "error_type": type(e).__name__}
            )
        else:
            self.delivered += 1
            logger.info("Notification delivered", extra=context)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries to finish."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
