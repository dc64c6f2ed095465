"""
auth/notifications.py -- Boundary to the external "create notification" collaborator.

The core only invokes the collaborator after security-relevant events (wallet
login, two-factor enabled/disabled, password changed or reset). Notification
storage and delivery live elsewhere. A failing notifier must never fail the
flow that triggered it; SessionOrchestrator catches and logs any error it
raises.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger("ledgergate.notifications")

WALLET_LOGIN = "wallet_login"
TWO_FACTOR_ENABLED = "two_factor_enabled"
TWO_FACTOR_DISABLED = "two_factor_disabled"
PASSWORD_CHANGED = "password_changed"


class NotificationError(Exception):
    pass


class Notifier(Protocol):
    def create_notification(
        self,
        account_id: int,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None: ...


class LoggingNotifier:
    """Default notifier: records the event in the application log only."""

    def create_notification(
        self,
        account_id: int,
        kind: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        logger.info("notification account=%s kind=%s title=%r", account_id, kind, title)
