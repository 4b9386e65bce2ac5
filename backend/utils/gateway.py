import asyncio
import base64
import json
import logging
from urllib import request, error

from config.env import (
    PAYOUT_PROVIDER,
    ESCROW_GATEWAY_URL,
    ESCROW_GATEWAY_KEY_ID,
    ESCROW_GATEWAY_KEY_SECRET,
    ESCROW_GATEWAY_TIMEOUT_SECONDS,
)
from utils.errors import ExternalCapabilityFailure

logger = logging.getLogger(__name__)


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


class PaymentGateway:
    """
    Escrow capability of the payment provider.

    Both operations are idempotent on the provider side for a given
    reference, so a retried call after a timeout never moves money twice.
    """

    def __init__(
        self,
        *,
        provider: str = PAYOUT_PROVIDER,
        base_url: str = ESCROW_GATEWAY_URL,
        key_id: str | None = ESCROW_GATEWAY_KEY_ID,
        key_secret: str | None = ESCROW_GATEWAY_KEY_SECRET,
        timeout: int = ESCROW_GATEWAY_TIMEOUT_SECONDS,
    ):
        self.provider = (provider or "").lower()
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self.key_secret = key_secret
        self.timeout = timeout

    def _auth_header(self) -> str:
        if self.provider != "escrow":
            raise ExternalCapabilityFailure("Unsupported payout provider", provider=self.provider)
        if not self.key_id or not self.key_secret:
            raise ExternalCapabilityFailure("Escrow gateway config missing")
        return _basic_auth_header(self.key_id, self.key_secret)

    def _post(self, path: str, payload: dict, reference: str) -> dict:
        req = request.Request(
            url=f"{self.base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": self._auth_header(),
                "Idempotency-Key": reference,
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except error.HTTPError as e:
            details = e.read().decode("utf-8", errors="ignore")
            logger.error("GATEWAY_HTTP_ERROR path=%s reference=%s status=%s", path, reference, e.code)
            raise ExternalCapabilityFailure(f"Escrow gateway error: {details}", reference=reference)
        except (error.URLError, TimeoutError, ValueError) as e:
            logger.error("GATEWAY_REQUEST_FAILED path=%s reference=%s", path, reference)
            raise ExternalCapabilityFailure(f"Escrow gateway request failed: {e}", reference=reference)

    def _result(self, response: dict, reference: str) -> dict:
        transfer_id = response.get("id")
        if not transfer_id:
            raise ExternalCapabilityFailure("Escrow gateway returned no transfer id", reference=reference)
        return {
            "provider": self.provider,
            "reference": reference,
            "transfer_id": transfer_id,
            "transfer_status": response.get("status"),
        }

    async def release_funds(self, *, order_id: str, amount_cents: int, currency: str, reference: str) -> dict:
        """Pay held funds out to the seller."""
        payload = {
            "order_id": order_id,
            "amount": amount_cents,
            "currency": currency,
            "reference_id": reference,
        }
        response = await asyncio.to_thread(self._post, "/escrow/releases", payload, reference)
        return self._result(response, reference)

    async def reverse_funds(
        self,
        *,
        order_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        source: str = "escrow",
    ) -> dict:
        """Send funds back to the buyer, from escrow or (clawback) from the seller."""
        payload = {
            "order_id": order_id,
            "amount": amount_cents,
            "currency": currency,
            "reference_id": reference,
            "source": source,
        }
        response = await asyncio.to_thread(self._post, "/escrow/reversals", payload, reference)
        return self._result(response, reference)


_gateway = PaymentGateway()


def get_gateway() -> PaymentGateway:
    return _gateway
