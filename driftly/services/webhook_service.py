# /driftly/services/webhook_service.py

import httpx
import json
import logging
from typing import Any, Dict, Optional

from driftly.config.settings import settings
from driftly.exceptions import WebhookFailure
from driftly.models.contact import Contact
from driftly.models.domain import WebhookResponse
from driftly.utils.metrics import webhook_calls_counter

logger = logging.getLogger(__name__)

MAX_RESPONSE_CHARS = 2000
BODYLESS_METHODS = {"GET", "DELETE"}


def contact_payload(contact: Contact) -> Dict[str, Any]:
    """The contact snapshot every webhook body carries under `contact`."""
    return {
        "id": contact.id,
        "email": contact.email,
        "firstName": contact.first_name,
        "lastName": contact.last_name,
        "metadata": contact.metadata,
        "tags": contact.tags,
    }


def build_body(webhook_body: Optional[Dict[str, Any]], contact: Contact) -> Dict[str, Any]:
    return {**(webhook_body or {}), "contact": contact_payload(contact)}


def _truncate(data: Any) -> Any:
    """Keep response bodies small enough to live in the audit log."""
    if isinstance(data, str):
        return data[:MAX_RESPONSE_CHARS]
    try:
        encoded = json.dumps(data, default=str)
    except (TypeError, ValueError):
        return str(data)[:MAX_RESPONSE_CHARS]
    if len(encoded) > MAX_RESPONSE_CHARS:
        return encoded[:MAX_RESPONSE_CHARS]
    return data


class WebhookClient:
    """
    Outbound webhook calls. One attempt per step execution with an explicit
    timeout; failures surface as WebhookFailure and are handled by the
    executor's best-effort policy.
    """

    def __init__(self, timeout: float = 10.0, http_client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def call(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> WebhookResponse:
        method = (method or "POST").upper()
        request_headers = {"Content-Type": "application/json", **(headers or {})}
        try:
            response = await self.http_client.request(
                method,
                url,
                headers=request_headers,
                json=None if method in BODYLESS_METHODS else body,
                timeout=timeout or self.timeout,
            )
        except httpx.HTTPError as e:
            webhook_calls_counter.labels(result="network_error").inc()
            logger.warning(f"webhook_call_failed {method} {url}: {type(e).__name__}: {e}")
            raise WebhookFailure(f"Webhook request failed: {type(e).__name__}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = response.text
        data = _truncate(data)

        if response.status_code >= 400:
            webhook_calls_counter.labels(result="http_error").inc()
            logger.warning(f"webhook_call_rejected {method} {url}: {response.status_code}")
            raise WebhookFailure(
                f"Webhook returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=data,
            )

        webhook_calls_counter.labels(result="success").inc()
        return WebhookResponse(status=response.status_code, body=data)

    async def close(self):
        await self.http_client.aclose()


webhook_client = WebhookClient(timeout=settings.webhook_timeout_seconds)
