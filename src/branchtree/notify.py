"""In-process notification side channel for scan and branch events."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Union

import structlog

logger = structlog.get_logger(__name__)

SCAN_COMPLETED = "scan.completed"
SCAN_FAILED = "scan.failed"
BRANCH_CREATED = "branch.created"
BRANCH_PUSHED = "branch.pushed"
BRANCH_REBASED = "branch.rebased"
BRANCH_DELETED = "branch.deleted"


@dataclass
class Notification:
    """One event broadcast to observers."""

    type: str
    repo_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "repoId": self.repo_id,
            "data": self.data,
            "createdAt": self.created_at.isoformat(),
        }


Subscriber = Callable[[Notification], Union[None, Awaitable[None]]]


class Notifier:
    """Fans notifications out to subscribers.

    Subscribers may be plain functions or coroutine functions. A failing
    subscriber is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a function that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, notification: Notification) -> None:
        logger.debug("notification_published", type=notification.type, repo_id=notification.repo_id)
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(notification)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    "subscriber_failed", type=notification.type, repo_id=notification.repo_id
                )

    async def broadcast(self, type: str, repo_id: str, **data: Any) -> Notification:
        """Build and publish a notification."""
        notification = Notification(type=type, repo_id=repo_id, data=data)
        await self.publish(notification)
        return notification
