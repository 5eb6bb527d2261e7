"""
services/payment/gateway.py
Paystack client used by the escrow ledger.

Charges a client's saved card authorization, pays workers out through
transfers, and refunds captured charges. Calls are never retried here: a
failed release or refund is surfaced to the caller, who can retry the
status-guarded ledger operation safely.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from shared.exceptions import PaymentError, TransferError

logger = logging.getLogger(__name__)


class PaystackGateway:
    """Async HTTP client for the Paystack REST API. Amounts are in kobo."""

    def __init__(
        self,
        secret_key: str,
        base_url: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        error_cls: type,
        action: str,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.error(f"Paystack {action} unreachable: {exc}")
            raise error_cls(
                f"Payment gateway timed out during {action}",
                details={"gateway": "paystack"},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(f"Paystack {action} HTTP error: {exc}")
            raise error_cls(f"Payment gateway request failed during {action}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Paystack {action} failed"
            logger.error(f"Paystack {action} rejected ({response.status_code}): {message}")
            raise error_cls(message, details={"gateway_status": response.status_code})

        return body.get("data") or {}

    async def charge(
        self,
        amount: int,
        reference: str,
        email: str,
        authorization_code: Optional[str],
    ) -> Dict[str, str]:
        """Charge a saved card authorization. Returns {"transaction_id", "reference"}."""
        if not authorization_code:
            raise PaymentError("No saved payment method for this client")

        data = await self._post(
            "/transaction/charge_authorization",
            {
                "email": email,
                "amount": amount,
                "authorization_code": authorization_code,
                "reference": reference,
                "currency": "NGN",
            },
            PaymentError,
            "charge",
        )
        if data.get("status") not in (None, "success"):
            raise PaymentError(data.get("gateway_response") or "Charge was not successful")
        return {
            "transaction_id": str(data.get("id", "")),
            "reference": data.get("reference", reference),
        }

    async def transfer(
        self,
        amount: int,
        recipient: Optional[str],
        reference: str,
        reason: str,
    ) -> Dict[str, str]:
        """Initiate a payout transfer. Returns {"transfer_ref"}."""
        if not recipient:
            raise TransferError("Worker has no registered payout account")

        data = await self._post(
            "/transfer",
            {
                "source": "balance",
                "amount": amount,
                "recipient": recipient,
                "reference": reference,
                "reason": reason,
            },
            TransferError,
            "transfer",
        )
        if data.get("status") in ("failed", "reversed"):
            raise TransferError(f"Transfer {data.get('status')}")
        return {"transfer_ref": data.get("transfer_code") or data.get("reference", reference)}

    async def refund(self, transaction_reference: str, amount: int) -> Dict[str, str]:
        """Refund a captured charge. Returns {"refund_ref"}."""
        data = await self._post(
            "/refund",
            {"transaction": transaction_reference, "amount": amount},
            PaymentError,
            "refund",
        )
        return {"refund_ref": str(data.get("id") or transaction_reference)}

