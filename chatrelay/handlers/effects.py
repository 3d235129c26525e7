"""
chatrelay: Effects returned by the pure trigger planners.

A planner looks at the trigger's before/after state and says what should
happen; the handler that called it carries the effect out.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from chatrelay.services.payloads import Category, NotificationPayload


@dataclass(frozen=True)
class SendNotification:
    category: Optional[Category]
    recipients: tuple[str, ...]
    payload: NotificationPayload = field(compare=False)
    # Operator broadcasts skip preference filtering
    respect_preferences: bool = True


@dataclass(frozen=True)
class NoOp:
    reason: str = ""


@dataclass(frozen=True)
class LogWarning:
    message: str


Effect = Union[SendNotification, NoOp, LogWarning]
