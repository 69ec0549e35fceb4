"""
Outbound webhook delivery for post_webhook actions.
"""

from typing import Any, Dict, Optional

import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError, ValidationError
from shared.retry import retry_on_exception, RetryConfig, RetryError

ALLOWED_METHODS = ("POST", "PUT", "PATCH")


class WebhookClient:
    """Sends JSON payloads to workflow-configured URLs."""

    def __init__(self, timeout: float = 10.0, max_attempts: int = 3, base_delay: float = 1.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.transport = transport
        self.logger = get_logger("automation.webhook")

    async def send(self, url: str, payload: Any, method: str = "POST",
                   headers: Optional[Dict[str, str]] = None, retry: bool = False) -> Dict[str, Any]:
        """Deliver a payload; raises ExternalServiceError when delivery fails."""
        method = (method or "POST").upper()
        if method not in ALLOWED_METHODS:
            raise ValidationError("Unsupported webhook method", {"method": method})
        if not url or not url.startswith(("http://", "https://")):
            raise ValidationError("Webhook URL must be http(s)", {"url": url})

        async def _request() -> Dict[str, Any]:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, json=payload, headers=headers or {})

            if 200 <= response.status_code < 300:
                self.logger.info("Webhook delivered", url=url, method=method, status_code=response.status_code)
                return {"status_code": response.status_code}

            self.logger.warning(
                "Webhook returned error status",
                url=url,
                method=method,
                status_code=response.status_code
            )
            raise ExternalServiceError(
                service="webhook",
                message=f"Unexpected status {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:500]}
            )

        if not retry or self.max_attempts <= 1:
            try:
                return await _request()
            except httpx.HTTPError as exc:
                raise ExternalServiceError(service="webhook", message=str(exc), details={"url": url})

        deliver = retry_on_exception(
            (httpx.HTTPError, ExternalServiceError),
            config=RetryConfig(max_attempts=self.max_attempts, base_delay=self.base_delay, max_delay=30.0)
        )(_request)
        try:
            return await deliver()
        except RetryError as exc:
            last = exc.last_exception
            if isinstance(last, ExternalServiceError):
                last.details["attempts"] = exc.attempts
                raise last
            raise ExternalServiceError(
                service="webhook",
                message=str(last),
                details={"url": url, "attempts": exc.attempts}
            )
