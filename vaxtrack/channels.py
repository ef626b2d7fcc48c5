"""Channel sender interface and the dry-run sender.

A sender delivers one message on one channel and reports a ``SendOutcome``.
Provider integrations (SMTP, SMS gateway, push service) implement
``ChannelSender`` outside this package; the engine only needs the protocol.
Senders own their timeouts. Raising is allowed and is treated as a failed
send by the delivery orchestrator.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Protocol, Tuple

from . import content
from .data_models import Notification, RecipientContact, SendOutcome
from .enums import Channel

LOG = logging.getLogger(__name__)

SMS_MAX_LENGTH = 160

_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


class ChannelSender(Protocol):
    channel: Channel

    def send(self, address: str, subject: str, body: str) -> SendOutcome:
        """Send one message to a channel-specific address (email, phone or device token)."""
        ...


def format_phone_number(phone: str) -> str:
    """Normalize a phone number to E.164, assuming North America for 10 digits.

    Examples
    --------
    >>> format_phone_number("(613) 555-0100")
    '+16135550100'
    """
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        digits = "1" + digits
    return "+" + digits


def is_valid_phone_number(phone: str) -> bool:
    return bool(_PHONE_PATTERN.match(format_phone_number(phone)))


def truncate_message(message: str, max_length: int = SMS_MAX_LENGTH) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."


def prepare_message(
    channel: Channel, contact: RecipientContact, notification: Notification
) -> Tuple[str, str]:
    """Subject and body for one channel, in the recipient's language."""
    language = content.resolve_language(contact.language)
    subject, body = content.channel_body(
        channel, notification.title, notification.message, contact.name, language
    )
    if channel is Channel.SMS:
        body = truncate_message(body)
    return subject, body


class LoggingChannelSender:
    """Dry-run sender: logs the message and reports success.

    Used by the CLI sweep so a state file can be processed without provider
    credentials.
    """

    def __init__(self, channel: Channel | str) -> None:
        self.channel = Channel.from_string(channel)

    def send(self, address: str, subject: str, body: str) -> SendOutcome:
        if self.channel is Channel.SMS and not is_valid_phone_number(address):
            return SendOutcome(success=False, error=f"Invalid phone number: {address}")
        LOG.info("[dry-run %s] to=%s subject=%s", self.channel.value, address, subject)
        LOG.debug("[dry-run %s] body=%s", self.channel.value, body)
        return SendOutcome(success=True, provider_message_id=f"dry-run-{uuid.uuid4().hex[:12]}")
