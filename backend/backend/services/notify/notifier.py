from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from app.db.models.notifications import Notification
from app.db.session import SessionLocal
from app.events import bus

logger = logging.getLogger(__name__)


@dataclass
class Message:
    title: str
    content: str
    type: str = "info"
    entity_id: str | None = None
    entity_type: str | None = None


class Notifier(Protocol):
    def notify(self, user_id: str, message: Message) -> None: ...


class DbNotifier:
    """Stores an in-app notification and announces it on the event bus.

    Opens its own session: it runs after the caller's transaction has committed.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    def notify(self, user_id: str, message: Message) -> None:
        db = self.session_factory()
        try:
            n = Notification(
                user_id=user_id,
                title=message.title,
                content=message.content,
                type=message.type,
                entity_id=message.entity_id,
                entity_type=message.entity_type,
                is_read=False,
            )
            db.add(n)
            db.flush()
            bus.publish(
                db,
                "notification.created",
                {"notification_id": n.id, "user_id": user_id, "title": n.title, "type": n.type},
                aggregate_type="user",
                aggregate_id=user_id,
                commit=False,
            )
            db.commit()
        finally:
            db.close()


class BackgroundNotifier:
    """Defers delivery until after the HTTP response has been sent."""

    def __init__(self, tasks: BackgroundTasks, inner: Notifier):
        self.tasks = tasks
        self.inner = inner

    def notify(self, user_id: str, message: Message) -> None:
        self.tasks.add_task(notify_safely, self.inner, user_id, message)


@dataclass
class RecordingNotifier:
    """Keeps messages in memory. Useful for scripts and tests."""

    sent: list[tuple[str, Message]] = field(default_factory=list)

    def notify(self, user_id: str, message: Message) -> None:
        self.sent.append((user_id, message))


def notify_safely(notifier: Notifier | None, user_id: str, message: Message) -> bool:
    """Best-effort delivery: failures are logged and never reach the caller."""
    if notifier is None:
        return False
    try:
        notifier.notify(user_id, message)
        return True
    except Exception:
        logger.exception("notification %r to user %s failed", message.title, user_id)
        return False


def notify_all(notifier: Notifier | None, user_ids, message: Message) -> int:
    return sum(1 for uid in user_ids if notify_safely(notifier, uid, message))


def get_notifier(background: BackgroundTasks) -> Notifier:
    """FastAPI dependency: persist notifications once the response is sent."""
    return BackgroundNotifier(background, DbNotifier())
