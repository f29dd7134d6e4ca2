"""
Digest rendering and delivery.

Partitions are stored newest-first; the digest reverses that so the
notification reads chronologically. Delivery is single-shot: a failed send
raises DigestDeliveryError and the caller decides whether to retry.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from adapter.errors import TransientIOError
from adapter.models import Item

logger = logging.getLogger(__name__)

SUBJECT_TEMPLATE = "Posts from the past 24h ({count})"
ENTRY_SEPARATOR = "\n\n--\n"


class DigestDeliveryError(TransientIOError):
    """Raised when a digest could not be handed to the transport."""
    pass


class DigestMessage(BaseModel):
    """A rendered digest ready for delivery."""
    subject: str
    body: str
    item_count: int = Field(ge=0)


class DigestSender(Protocol):
    def send(self, items: Sequence[Item]) -> None:
        ...


def format_entry(item: Item) -> str:
    """One digest entry: handle, body and permalink."""
    return f"@{item.author}: {item.text}\n{item.permalink}"


def render_digest(items: Sequence[Item]) -> DigestMessage:
    """
    Render ``items`` (stored newest-first) as an oldest-first digest.

    The order is the reverse of the given sequence, not a sort by id, so the
    digest follows arrival order even if ids and arrival disagree.
    """
    entries: List[str] = [format_entry(item) + ENTRY_SEPARATOR for item in reversed(items)]
    return DigestMessage(
        subject=SUBJECT_TEMPLATE.format(count=len(items)),
        body="".join(entries),
        item_count=len(items),
    )


class EmailDigestSender:
    """Sends the digest as a plaintext email over SMTP (STARTTLS)."""

    def __init__(
        self,
        recipient: Optional[str],
        smtp_host: Optional[str],
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_email: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.recipient = recipient
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user or recipient
        self.timeout = timeout

        if not all([self.recipient, self.smtp_host, self.from_email]):
            logger.warning("Digest email not fully configured. Set DIGEST_RECIPIENT and SMTP_* settings.")
            self.enabled = False
        else:
            self.enabled = True
            logger.info(f"Digest delivery configured: {self.from_email} -> {self.recipient} via {self.smtp_host}:{self.smtp_port}")

    def build_message(self, digest: DigestMessage) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = digest.subject
        message["From"] = self.from_email
        message["To"] = self.recipient
        message.set_content(digest.body, charset="utf-8")
        return message

    def send(self, items: Sequence[Item]) -> None:
        """
        Render and email ``items``.

        Raises:
            DigestDeliveryError: If delivery is not configured or SMTP fails
        """
        if not self.enabled:
            raise DigestDeliveryError("Digest email not configured - set DIGEST_RECIPIENT and SMTP_HOST")

        digest = render_digest(items)
        message = self.build_message(digest)

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DigestDeliveryError(f"Failed to send digest to {self.recipient}: {e}") from e

        logger.info(f"Digest sent to {self.recipient}: {digest.subject}")


__all__ = [
    "DigestSender",
    "DigestMessage",
    "DigestDeliveryError",
    "EmailDigestSender",
    "render_digest",
    "format_entry",
    "SUBJECT_TEMPLATE",
]
