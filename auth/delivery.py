"""
auth/delivery.py -- Out-of-band delivery adapters for OTP and password reset codes.

The core only *requests* delivery. Message transport belongs to an external
provider; this module is the seam:

  OtpSender          -- the protocol TwoFactorController depends on.
  ResetCodeSender    -- the protocol PasswordResetService depends on.
  WhatsAppOtpSender  -- WhatsApp Cloud API over requests, with a bounded timeout.
  EmailResetSender   -- transactional email HTTP API (Resend) over requests.
  OutboxSender       -- keeps the latest messages in memory; used in
                        development and tests. Implements both protocols.

Senders raise DeliveryError on any failure. They never retry; the caller
decides what a failed delivery means for its flow.

Codes, full phone numbers and email addresses are never logged.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Protocol

import requests

from auth.models import TwoFactorChannel

logger = logging.getLogger("ledgergate.delivery")

EMAIL_CHANNEL = "email"


class DeliveryError(Exception):
    """The provider did not accept the message (network error, timeout, non-2xx)."""


def mask_destination(destination: str) -> str:
    """Keep only the last 4 characters of a phone number for logs."""
    if len(destination) <= 4:
        return "****"
    return f"{'*' * (len(destination) - 4)}{destination[-4:]}"


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


def _minutes(ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def render_otp_message(code: str, ttl_seconds: int) -> str:
    return f"Your verification code is: {code}. It expires in {_minutes(ttl_seconds)}."


def render_reset_message(code: str, ttl_seconds: int, reset_url: str = "") -> str:
    body = f"Your password reset code is: {code}. It expires in {_minutes(ttl_seconds)}."
    if reset_url:
        body += f"\n\nReset your password here: {reset_url}?code={code}"
    return body


class OtpSender(Protocol):
    def send(self, channel: TwoFactorChannel, destination: str, message: str, *, timeout: float) -> None: ...


class ResetCodeSender(Protocol):
    def send_reset_code(self, email: str, code: str, ttl_seconds: int, *, timeout: float) -> None: ...


class WhatsAppOtpSender:
    """Send text messages through the WhatsApp Cloud API.

    POST {api_url}/{phone_number_id}/messages with a bearer access token.
    Each sender owns its requests.Session.
    """

    def __init__(self, api_url: str, phone_number_id: str, access_token: str) -> None:
        self.url = f"{api_url.rstrip('/')}/{phone_number_id}/messages"
        self._access_token = access_token
        self._session = requests.Session()
        self._session.max_redirects = 3

    def send(self, channel: TwoFactorChannel, destination: str, message: str, *, timeout: float) -> None:
        if channel is not TwoFactorChannel.whatsapp:
            raise DeliveryError(f"Channel {channel.value} is not supported by the WhatsApp sender")
        payload = {
            "messaging_product": "whatsapp",
            "to": destination,
            "type": "text",
            "text": {"body": message},
        }
        try:
            resp = self._session.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("WhatsApp delivery to %s failed: %s", mask_destination(destination), e)
            raise DeliveryError(str(e)) from e
        logger.info("OTP dispatched via whatsapp to %s", mask_destination(destination))


class EmailResetSender:
    """Send password reset emails through the Resend HTTP API."""

    def __init__(self, api_url: str, api_key: str, from_address: str, reset_url: str = "") -> None:
        self.url = api_url
        self.from_address = from_address
        self.reset_url = reset_url
        self._api_key = api_key
        self._session = requests.Session()
        self._session.max_redirects = 3

    def send_reset_code(self, email: str, code: str, ttl_seconds: int, *, timeout: float) -> None:
        payload = {
            "from": self.from_address,
            "to": [email],
            "subject": "Reset your password",
            "text": render_reset_message(code, ttl_seconds, self.reset_url),
        }
        try:
            resp = self._session.post(
                self.url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Reset email to %s failed: %s", mask_email(email), e)
            raise DeliveryError(str(e)) from e
        logger.info("Password reset email dispatched to %s", mask_email(email))


@dataclass
class OutboundMessage:
    channel: str
    destination: str
    body: str


class OutboxSender:
    """In-memory sender for development and tests. Nothing leaves the process.

    Only the newest `maxlen` messages are kept.
    """

    def __init__(self, maxlen: int = 100) -> None:
        self.outbox: deque[OutboundMessage] = deque(maxlen=maxlen)

    def send(self, channel: TwoFactorChannel, destination: str, message: str, *, timeout: float) -> None:
        self.outbox.append(OutboundMessage(channel=channel.value, destination=destination, body=message))
        logger.info("OTP queued in outbox for %s via %s", mask_destination(destination), channel.value)

    def send_reset_code(self, email: str, code: str, ttl_seconds: int, *, timeout: float) -> None:
        self.outbox.append(
            OutboundMessage(channel=EMAIL_CHANNEL, destination=email, body=render_reset_message(code, ttl_seconds))
        )
        logger.info("Password reset code queued in outbox for %s", mask_email(email))

    def _last_body(self, destination: str, channel: str | None = None) -> str | None:
        for msg in reversed(self.outbox):
            if msg.destination == destination and (channel is None or msg.channel == channel):
                return msg.body
        return None

    def last_code(self, destination: str) -> str | None:
        """Return the digits of the newest OTP sent to destination."""
        body = self._last_body(destination)
        if body is None:
            return None
        return "".join(ch for ch in body.split(":", 1)[1].split(".", 1)[0] if ch.isdigit())

    def last_reset_code(self, email: str) -> str | None:
        body = self._last_body(email, EMAIL_CHANNEL)
        if body is None:
            return None
        return body.split(":", 1)[1].split(".", 1)[0].strip()
