# /driftly/services/email_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, Optional

from driftly.config.settings import settings
from driftly.exceptions import PermanentDeliveryFailure, TransientDeliveryFailure
from driftly.models.domain import DeliveryReceipt
from driftly.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from driftly.utils.metrics import email_deliveries_counter
from driftly.workflows.templating import html_to_text

logger = logging.getLogger(__name__)

DEFAULT_TEXT = "This email requires HTML to view properly"
INVALID_RECIPIENT_FIELDS = {"personalizations.0.to", "personalizations.0.to.0.email", "to"}
TRANSIENT_STATUS_CODES = {401, 403, 408, 429}


class EmailService:
    """
    Sends transactional mail through the SendGrid v3 /mail/send API.

    send() either returns a DeliveryReceipt or raises:
    - PermanentDeliveryFailure when the recipient can never receive mail
      (bounced or invalid address); the contact is marked bounced.
    - TransientDeliveryFailure for everything that might succeed later
      (auth/config problems, throttling, provider outages, network errors).
    """

    def __init__(
        self,
        api_key: str,
        api_url: str,
        from_email: str,
        from_name: Optional[str] = None,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.send_url = f"{api_url.rstrip('/')}/mail/send"
        self.from_email = from_email
        self.from_name = from_name
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker("sendgrid", counted_exceptions=(httpx.RequestError,))

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=0.5, max=5),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def build_payload(self, to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, Any]:
        sender: Dict[str, str] = {"email": self.from_email}
        if self.from_name:
            sender["name"] = self.from_name
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text or html_to_text(html) or DEFAULT_TEXT},
                {"type": "text/html", "value": html or DEFAULT_TEXT},
            ],
            "tracking_settings": {
                "click_tracking": {"enable": True, "enable_text": True},
                "open_tracking": {"enable": True},
            },
        }

    async def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> DeliveryReceipt:
        if not self.api_key:
            email_deliveries_counter.labels(result="transient").inc()
            raise TransientDeliveryFailure("SendGrid API key is not configured")

        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = self.build_payload(to, subject, html, text)
        try:
            response = await self.resilient_api_call(self.http_client.post, self.send_url, json=payload, headers=headers)
        except CircuitOpenError as e:
            email_deliveries_counter.labels(result="transient").inc()
            raise TransientDeliveryFailure(str(e)) from e
        except httpx.HTTPError as e:
            email_deliveries_counter.labels(result="transient").inc()
            logger.error(f"email_send_network_error to {to}: {type(e).__name__}: {e}")
            raise TransientDeliveryFailure(f"Network error while sending email: {type(e).__name__}") from e

        return self._classify(response, to)

    def _classify(self, response: httpx.Response, to: str) -> DeliveryReceipt:
        if response.status_code in (200, 202):
            email_deliveries_counter.labels(result="sent").inc()
            message_id = response.headers.get("X-Message-Id")
            logger.info(f"Email sent to {to}, message id: {message_id}")
            return DeliveryReceipt(to=to, message_id=message_id, status_code=response.status_code)

        errors = self._provider_errors(response)
        message = "; ".join(e.get("message") or "" for e in errors).strip() or f"HTTP {response.status_code}"
        details = {"errors": errors}
        invalid_recipient = any(e.get("field") in INVALID_RECIPIENT_FIELDS for e in errors)

        if "bounce" in message.lower() or (response.status_code == 400 and invalid_recipient):
            email_deliveries_counter.labels(result="bounced").inc()
            logger.warning(f"email_permanent_failure to {to}: {response.status_code} - {message}")
            raise PermanentDeliveryFailure(message, status_code=response.status_code, details=details)

        email_deliveries_counter.labels(result="transient").inc()
        if response.status_code in TRANSIENT_STATUS_CODES or response.status_code >= 500:
            logger.error(f"email_send_failed to {to}: {response.status_code} - {message}")
        else:
            logger.warning(f"email_send_rejected to {to}: {response.status_code} - {message}")
        raise TransientDeliveryFailure(message, status_code=response.status_code, details=details)

    @staticmethod
    def _provider_errors(response: httpx.Response) -> list:
        try:
            data = response.json()
        except ValueError:
            return [{"message": response.text[:500]}] if response.text else []
        errors = data.get("errors") if isinstance(data, dict) else None
        return [e for e in errors if isinstance(e, dict)] if isinstance(errors, list) else []

    async def close(self):
        await self.http_client.aclose()


email_service = EmailService(
    api_key=settings.sendgrid_api_key,
    api_url=settings.sendgrid_api_url,
    from_email=settings.from_email,
    from_name=settings.from_name,
    timeout=settings.email_timeout_seconds,
)
