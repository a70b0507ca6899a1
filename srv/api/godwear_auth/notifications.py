from __future__ import annotations

import logging
from typing import Protocol


logger = logging.getLogger(__name__)


class WelcomeNotifier(Protocol):
    def send_welcome_email(self, *, email: str, name: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier; records the welcome message instead of delivering it."""

    def send_welcome_email(self, *, email: str, name: str) -> None:
        logger.info("Welcome email queued for %s (%s)", email, name)
