"""
External collaborator interfaces.

The core never reaches the user directory or the notification system
directly; it receives objects satisfying these protocols.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID


class RoleDirectory(Protocol):
    """Role lookup owned by the external user/session layer."""

    def get_role(self, user_id: UUID) -> str:
        """Return the raw role string assigned to ``user_id``."""
        ...


@dataclass(frozen=True)
class Notification:
    """A notification to enqueue with the external dispatcher."""

    kind: str
    subject_type: str
    subject_id: str
    message: str
    recipients_role: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    """Notification delivery owned by the external notification layer."""

    def dispatch(self, notification: Notification) -> None:
        """Enqueue ``notification``.  May raise; callers treat it best-effort."""
        ...
