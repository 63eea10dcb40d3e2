"""
Payment gateway boundary: card charges, deposit checkouts, payouts.

``LocalGateway`` settles everything in-process (dev/tests). ``HttpGateway``
talks to an acquiring provider over HTTP and retries transport failures with
exponential backoff. Every call carries an idempotency key so a retried
request is never charged twice on the provider side.
"""
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..errors import GatewayError
from ..logging import get_logger


log = get_logger(__name__)


@dataclass
class GatewayResult:
    external_id: str
    status: str  # succeeded|pending|queued
    payment_url: Optional[str] = None


class PaymentGateway:
    name = "base"

    def charge(self, amount: Decimal, card_token: Optional[str], idempotency_key: str, description: str = "") -> GatewayResult:
        raise NotImplementedError

    def create_checkout(self, amount: Decimal, idempotency_key: str, description: str = "") -> GatewayResult:
        raise NotImplementedError

    def payout(self, amount: Decimal, idempotency_key: str, description: str = "") -> GatewayResult:
        raise NotImplementedError


class LocalGateway(PaymentGateway):
    """In-process gateway: charges succeed, checkouts wait for the webhook."""
    name = "local"

    def _external_id(self, idempotency_key: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"haulhub:{idempotency_key}"))

    def charge(self, amount, card_token, idempotency_key, description=""):
        return GatewayResult(external_id=self._external_id(idempotency_key), status="succeeded")

    def create_checkout(self, amount, idempotency_key, description=""):
        external_id = self._external_id(idempotency_key)
        return GatewayResult(
            external_id=external_id,
            status="pending",
            payment_url=f"{settings.public_base_url}/payments/checkout/{external_id}",
        )

    def payout(self, amount, idempotency_key, description=""):
        return GatewayResult(external_id=self._external_id(idempotency_key), status="queued")


class HttpGateway(PaymentGateway):
    name = "http"

    def __init__(
        self,
        base_url: Optional[str] = None,
        shop_id: Optional[str] = None,
        secret: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_s: Optional[float] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.payment_gateway_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("PAYMENT_GATEWAY_URL must be configured for the http gateway")
        self.shop_id = shop_id or settings.payment_gateway_shop_id or ""
        self.secret = secret or settings.payment_gateway_secret or ""
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries
        self.backoff_s = backoff_s if backoff_s is not None else settings.gateway_backoff_seconds
        self.timeout_s = timeout_s if timeout_s is not None else settings.gateway_timeout_seconds
        self.transport = transport

    def _request(self, method: str, endpoint: str, idempotency_key: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {"Idempotence-Key": idempotency_key}
        headers.update(kwargs.pop("headers", {}))
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                with httpx.Client(timeout=self.timeout_s, auth=(self.shop_id, self.secret), transport=self.transport) as client:
                    response = client.request(method, url, headers=headers, **kwargs)
                if response.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"gateway returned {response.status_code}", request=response.request, response=response
                    )
                if response.status_code >= 400:
                    # Rejected by the provider: retrying will not help
                    raise GatewayError(
                        "Payment was rejected by the gateway",
                        details={"status": response.status_code},
                    )
                try:
                    return response.json()
                except ValueError:
                    log.error("gateway_malformed_response", endpoint=endpoint, status=response.status_code)
                    raise GatewayError("Gateway returned a malformed response", details={"status": response.status_code})
            except (httpx.TransportError, httpx.HTTPStatusError) as exc:
                last_error = exc
                log.warning("gateway_request_failed", endpoint=endpoint, attempt=attempt, error=str(exc))
                if attempt < self.max_retries:
                    time.sleep(self.backoff_s * (2 ** (attempt - 1)))

        log.error("gateway_unavailable", endpoint=endpoint, retries=self.max_retries)
        raise GatewayError(details={"error": str(last_error)} if last_error else None)

    @staticmethod
    def _result(data: Dict[str, Any]) -> GatewayResult:
        if not isinstance(data, dict) or not data.get("id"):
            raise GatewayError("Gateway returned a malformed response")
        confirmation = data.get("confirmation")
        if not isinstance(confirmation, dict):
            confirmation = {}
        return GatewayResult(
            external_id=str(data["id"]),
            status=data.get("status", "pending"),
            payment_url=confirmation.get("confirmation_url"),
        )

    def charge(self, amount, card_token, idempotency_key, description=""):
        body = {
            "amount": {"value": str(amount), "currency": "RUB"},
            "payment_method_id": card_token,
            "capture": True,
            "description": description,
        }
        return self._result(self._request("POST", "/payments", idempotency_key, json=body))

    def create_checkout(self, amount, idempotency_key, description=""):
        body = {
            "amount": {"value": str(amount), "currency": "RUB"},
            "confirmation": {"type": "redirect", "return_url": settings.public_base_url},
            "capture": True,
            "description": description,
        }
        return self._result(self._request("POST", "/payments", idempotency_key, json=body))

    def payout(self, amount, idempotency_key, description=""):
        body = {"amount": {"value": str(amount), "currency": "RUB"}, "description": description}
        return self._result(self._request("POST", "/payouts", idempotency_key, json=body))


def get_gateway() -> PaymentGateway:
    if settings.payment_gateway == "http":
        return HttpGateway()
    return LocalGateway()
