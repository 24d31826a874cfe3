"""Outbound send capability used by the compliance jobs.

``Messenger.send(recipient, template_kind, payload)`` is the only seam the
jobs depend on. ``ChannelMessenger`` routes a template to email (MailerSend)
or SMS (Twilio); in test mode it logs the message and reports success.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class Recipient:
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    cc: tuple[str, ...] = field(default_factory=tuple)


class RecipientMissingError(ValueError):
    """Raised when an item has no address on the channel it needs."""


class DeliveryError(RuntimeError):
    """Raised when the provider rejected or failed a send."""


class Messenger(ABC):

    @abstractmethod
    async def send(self, recipient: Recipient, template_kind: str, payload: dict[str, Any]) -> SendResult:
        ...


class ChannelMessenger(Messenger):
    """Production messenger backed by the email and SMS services."""

    def __init__(self, email_service=None, sms_service=None, test_mode: Optional[bool] = None):
        from ..config import get_settings
        from .email import EmailService
        from .sms import SmsService

        settings = get_settings()
        self.email_service = email_service or EmailService()
        self.sms_service = sms_service or SmsService()
        self.test_mode = settings.cron_test_mode if test_mode is None else test_mode

    async def send(self, recipient: Recipient, template_kind: str, payload: dict[str, Any]) -> SendResult:
        from .sms import SMS_TEMPLATES

        if template_kind in SMS_TEMPLATES:
            if not recipient.phone:
                return SendResult(success=False, error="Recipient has no phone number")
            if self.test_mode:
                logger.info("[TEST MODE] Would send %s SMS to %s", template_kind, recipient.phone)
                return SendResult(success=True, id="test-mode")
            return await self.sms_service.send_template(recipient.phone, template_kind, payload)

        if not recipient.email:
            return SendResult(success=False, error="Recipient has no email address")
        if self.test_mode:
            logger.info(
                "[TEST MODE] Would send %s email to %s (cc: %s) subject=%r",
                template_kind,
                recipient.email,
                ", ".join(recipient.cc) or "none",
                payload.get("subject"),
            )
            return SendResult(success=True, id="test-mode")
        return await self.email_service.send_template(
            recipient.email,
            recipient.name,
            template_kind,
            payload,
            cc=list(recipient.cc) or None,
        )
