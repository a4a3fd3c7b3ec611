"""
Outbound domain events.

The core never sends notifications or emails itself; it emits events and the
notification/email collaborators subscribe. Handlers run after the triggering
state change is committed, so a failing handler is logged and never rolls
anything back.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, Field

from marketplace.core.logging import get_logger

log = get_logger(__name__)


class NotificationRequested(BaseModel):
    name: Literal["notification_requested"] = "notification_requested"
    account_id: str
    type: str  # lead_contacted, auto_topup_disabled, low_credits, credits_purchased
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class EmailRequested(BaseModel):
    name: Literal["email_requested"] = "email_requested"
    template: str
    to: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


DomainEvent = Union[NotificationRequested, EmailRequested]
EventHandler = Callable[[DomainEvent], Awaitable[None]]

_handlers: list[EventHandler] = []


def subscribe(handler: EventHandler) -> None:
    if handler not in _handlers:
        _handlers.append(handler)


def unsubscribe(handler: EventHandler) -> None:
    if handler in _handlers:
        _handlers.remove(handler)


async def emit(event: DomainEvent) -> None:
    log.info("event_emitted", event_name=event.name, **_summary(event))
    for handler in list(_handlers):
        try:
            await handler(event)
        except Exception:
            log.exception("event_handler_failed", event_name=event.name, handler=getattr(handler, "__name__", repr(handler)))


def _summary(event: DomainEvent) -> dict[str, Any]:
    if isinstance(event, NotificationRequested):
        return {"account_id": event.account_id, "type": event.type}
    return {"template": event.template, "to": event.to}
