"""
Best-effort notification delivery.

The engine and the batch processor queue notifications on the session with
``notify_on_commit()``.  They are dispatched once the outermost transaction
commits, and discarded if it rolls back, so nobody hears about an approval
or a payout that never committed.

Delivery problems are logged at WARNING and never reach the caller: an
approval or a disbursement must not fail because a mail queue is down.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from budget_kernel.domain.collaborators import Notification, NotificationDispatcher
from budget_kernel.logging_config import get_logger

logger = get_logger("services.notifier")

_PENDING = "budget_pending_notifications"
_HOOKED = "budget_notification_hooks"


def _deliver_pending(session: Session) -> None:
    for notifier, notification in session.info.pop(_PENDING, []):
        notifier.notify(notification)


def _discard_pending(session: Session, transaction: SessionTransaction) -> None:
    # after_commit has already emptied the queue when the transaction committed.
    if transaction.parent is not None:
        return
    dropped = session.info.pop(_PENDING, [])
    if dropped:
        logger.info(
            "notifications_discarded",
            extra={"count": len(dropped), "kinds": [n.kind for _, n in dropped]},
        )


class BestEffortNotifier:
    """Wraps a NotificationDispatcher; a missing dispatcher means no delivery."""

    def __init__(self, dispatcher: NotificationDispatcher | None = None):
        self._dispatcher = dispatcher

    def notify_on_commit(self, session: Session, notification: Notification) -> None:
        """Queue ``notification`` until ``session``'s transaction commits."""
        if not session.info.get(_HOOKED):
            event.listen(session, "after_commit", _deliver_pending)
            event.listen(session, "after_transaction_end", _discard_pending)
            session.info[_HOOKED] = True
        session.info.setdefault(_PENDING, []).append((self, notification))
        logger.debug(
            "notification_queued",
            extra={"kind": notification.kind, "subject_id": notification.subject_id},
        )

    def notify(self, notification: Notification) -> bool:
        """Dispatch ``notification`` now.  Returns False if delivery failed."""
        if self._dispatcher is None:
            return False
        try:
            self._dispatcher.dispatch(notification)
        except Exception as exc:
            logger.warning(
                "notification_dispatch_failed",
                extra={
                    "kind": notification.kind,
                    "subject_type": notification.subject_type,
                    "subject_id": notification.subject_id,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            return False
        logger.debug(
            "notification_dispatched",
            extra={"kind": notification.kind, "subject_id": notification.subject_id},
        )
        return True
