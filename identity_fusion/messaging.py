from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .models import FormInstance
from .platform import Messenger

logger = logging.getLogger(__name__)


class MessagingService:
    """Best-effort review notifications; failures are logged and never raised."""

    def __init__(self, messenger: Messenger) -> None:
        self.messenger = messenger
        self.sender: Optional[str] = None
        self.sent = 0
        self.failed = 0

    async def fetch_sender(self) -> Optional[str]:
        try:
            self.sender = await self.messenger.get_sender()
        except Exception as exc:
            logger.warning("Unable to resolve notification sender: %s", exc)
            self.sender = None
        if not self.sender:
            logger.debug("No notification sender configured")
        return self.sender

    async def notify_review(self, instance: FormInstance, payload: Dict[str, Any]) -> List[str]:
        """Notify every recipient of ``instance``; returns the recipients reached."""
        reached: List[str] = []
        body = dict(payload)
        body.setdefault("url", instance.url)
        if self.sender:
            body.setdefault("sender", self.sender)
        for recipient in instance.recipients:
            try:
                await self.messenger.send_review_notification(instance, recipient, body)
            except Exception as exc:
                self.failed += 1
                logger.warning("Failed to notify %s about review %s: %s", recipient, instance.id, exc)
                continue
            self.sent += 1
            reached.append(recipient)
        return reached
