"""
Credentials email through the external email-delivery service.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ciliosclick.core.config import get_settings
from ciliosclick.core.prometheus_metrics import notifications_total
from ciliosclick.services.allocator import AllocationResult

settings = get_settings()
logger = logging.getLogger(__name__)


class EmailNotifier:
    """Client for the email-delivery collaborator. Never raises to the caller."""

    def __init__(
        self,
        service_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize notifier.

        Args:
            service_url: Endpoint accepting {to, template_id, variables}
            api_key: Bearer token for the service
            timeout: Request timeout in seconds
            transport: httpx transport override (tests use httpx.MockTransport)
        """
        self.service_url = service_url
        self.api_key = api_key
        self.timeout = timeout or settings.EMAIL_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.service_url)

    async def send(
        self,
        recipient_email: str,
        template_id: str,
        variables: Dict[str, Any],
    ) -> bool:
        """
        Ask the service to send one templated email.

        Returns:
            True if the service accepted the message, False otherwise
        """
        if not self.configured:
            logger.warning(
                f"Email service not configured, skipping {template_id}",
                extra={"template_id": template_id},
            )
            notifications_total.labels(template=template_id, status="skipped").inc()
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.service_url,
                    json={
                        "to": recipient_email,
                        "template_id": template_id,
                        "variables": variables,
                    },
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Email service rejected {template_id}: HTTP {e.response.status_code}",
                extra={"template_id": template_id, "status_code": e.response.status_code},
            )
            notifications_total.labels(template=template_id, status="failed").inc()
            return False
        except httpx.HTTPError as e:
            logger.error(
                f"Email service request failed for {template_id}: {type(e).__name__}: {e}",
                extra={"template_id": template_id},
            )
            notifications_total.labels(template=template_id, status="failed").inc()
            return False

        logger.info(
            f"Email {template_id} accepted by email service",
            extra={"template_id": template_id},
        )
        notifications_total.labels(template=template_id, status="sent").inc()
        return True

    async def send_welcome(self, allocation: AllocationResult) -> bool:
        """Send login credentials for a fresh allocation to the buyer."""
        if not allocation.temporary_password:
            logger.warning(
                f"No temporary password for transaction {allocation.transaction_id}, "
                f"welcome email not sent",
                extra={"transaction_id": allocation.transaction_id},
            )
            return False

        return await self.send(
            recipient_email=allocation.buyer_email,
            template_id=settings.WELCOME_TEMPLATE_ID,
            variables={
                "buyer_name": allocation.buyer_name or "",
                "username": allocation.username,
                "login_email": allocation.login_email,
                "temporary_password": allocation.temporary_password,
                "login_url": settings.APP_LOGIN_URL,
            },
        )


# Global instance
_email_notifier: Optional[EmailNotifier] = None


def get_email_notifier() -> EmailNotifier:
    """Get or create the global email notifier instance."""
    global _email_notifier
    if _email_notifier is None:
        api_key = settings.EMAIL_SERVICE_API_KEY
        _email_notifier = EmailNotifier(
            service_url=settings.EMAIL_SERVICE_URL,
            api_key=api_key.get_secret_value() if api_key else None,
        )
    return _email_notifier
