"""
Email transport backed by the Resend API.

The Resend SDK is synchronous, so sends run in a worker thread under their own
timeout, independent of queue and store timeouts.
"""

import asyncio
import re
from typing import Protocol

import resend

from portfolio_api.errors import ConfigurationError, EmailDeliveryError
from portfolio_api.infrastructure.observability.logging import get_logger
from portfolio_api.security.hashing import mask_email
from portfolio_api.services.email.templates import RenderedEmail

logger = get_logger(__name__)

# Sandbox/unverified-domain rejections get their own user-facing message
_NOT_VERIFIED_RE = re.compile(r"not verified|verify a domain|only send testing emails", re.IGNORECASE)


class EmailTransport(Protocol):
    async def send(self, to: str, email: RenderedEmail) -> str | None: ...


class ResendEmailTransport:
    def __init__(self, api_key: str | None, from_address: str | None, timeout_s: float = 10.0):
        self.api_key = api_key
        self.from_address = from_address
        self.timeout_s = timeout_s

    def _require_config(self) -> None:
        if not self.from_address:
            raise ConfigurationError("EMAIL_FROM_ADDRESS not configured")
        if not self.api_key:
            raise ConfigurationError("RESEND_API_KEY not configured")

    def _send_sync(self, to: str, email: RenderedEmail) -> dict:
        resend.api_key = self.api_key
        return resend.Emails.send(
            {
                "from": self.from_address,
                "to": [to],
                "subject": email.subject,
                "html": email.html,
                "text": email.text,
            }
        )

    async def send(self, to: str, email: RenderedEmail) -> str | None:
        """
        Send one email.

        Returns:
            Provider message id, when the provider returns one

        Raises:
            ConfigurationError: sender identity or API key missing
            EmailDeliveryError: provider rejected the message, errored or timed out
        """
        self._require_config()

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self._send_sync, to, email), timeout=self.timeout_s
            )
        except TimeoutError as e:
            logger.error("Email send timed out", to=mask_email(to), timeout_s=self.timeout_s)
            raise EmailDeliveryError("Email provider timed out") from e
        except Exception as e:
            message = str(e)
            logger.error(
                "Email send failed",
                to=mask_email(to),
                error=message,
                error_type=type(e).__name__,
            )
            raise EmailDeliveryError(
                message or "Email send failed",
                recipient_not_verified=bool(_NOT_VERIFIED_RE.search(message)),
            ) from e

        message_id = response.get("id") if isinstance(response, dict) else None
        logger.debug("Email sent", to=mask_email(to), message_id=message_id)
        return message_id
