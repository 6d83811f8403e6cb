"""
Payment collaborators.

``EscrowClient`` releases and refunds escrowed bounties through the escrow
API. ``LedgerEntryStream`` reads payments for an account from a
Horizon-compatible REST API as a lazy sequence after a paging token.
"""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import Settings
from app.errors import PaymentError, configuration_error
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

LEDGER_PAGE_LIMIT = 200


@dataclass(slots=True)
class PaymentReceipt:
    tx_hash: str
    created_at: str | None = None


@dataclass(slots=True)
class LedgerPayment:
    """One incoming payment as reported by the ledger."""

    id: str
    paging_token: str
    tx_hash: str
    to: str
    from_account: str
    amount: str
    asset_code: str | None
    created_at: str | None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "LedgerPayment":
        return cls(
            id=str(record["id"]),
            paging_token=str(record["paging_token"]),
            tx_hash=record.get("transaction_hash", ""),
            to=record.get("to", ""),
            from_account=record.get("from", ""),
            amount=record.get("amount", "0"),
            asset_code=record.get("asset_code") or ("XLM" if record.get("asset_type") == "native" else None),
            created_at=record.get("created_at"),
        )


class EscrowClient:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            missing = self.settings.missing_settings("ESCROW_API_URL", "ESCROW_API_KEY")
            if missing:
                raise configuration_error(*missing)
            self._client = httpx.AsyncClient(
                base_url=self.settings.ESCROW_API_URL.rstrip("/"),
                timeout=httpx.Timeout(self.settings.COLLABORATOR_TIMEOUT_SECONDS),
                headers={"Authorization": f"Bearer {self.settings.ESCROW_API_KEY}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def release_funds(
        self, escrow_ref: str, destination: str, amount: float, idempotency_key: str | None = None
    ) -> PaymentReceipt:
        """
        Pay ``amount`` from the escrow to ``destination``.

        The escrow API replays the first receipt for a repeated
        ``Idempotency-Key`` instead of paying twice.
        """
        return await self._post(
            "release_funds",
            f"/escrows/{escrow_ref}/release",
            {"destination": destination, "amount": f"{amount:.7f}"},
            idempotency_key=idempotency_key,
        )

    async def refund(self, escrow_ref: str, amount: float) -> PaymentReceipt:
        """Return ``amount`` from the escrow to its funder."""
        return await self._post("refund", f"/escrows/{escrow_ref}/refund", {"amount": f"{amount:.7f}"})

    async def _post(
        self, operation: str, path: str, payload: dict[str, Any], idempotency_key: str | None = None
    ) -> PaymentReceipt:
        client = self._get_client()
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await client.post(path, json=payload, headers=headers)
        except httpx.RequestError as e:
            raise PaymentError(f"Escrow request failed: {e}", operation=operation) from e

        if not response.is_success:
            logger.error("Escrow API call failed", operation=operation, status_code=response.status_code)
            raise PaymentError(
                f"Escrow {operation} failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
                operation=operation,
            )

        try:
            data = response.json()
            receipt = PaymentReceipt(tx_hash=data["tx_hash"], created_at=data.get("created_at"))
        except (ValueError, KeyError) as e:
            raise PaymentError(f"Invalid escrow response: {e}", response.status_code, operation) from e

        logger.info("Escrow operation succeeded", operation=operation, tx_hash=receipt.tx_hash)
        return receipt


class LedgerEntryStream:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self._client = httpx.AsyncClient(
            base_url=settings.HORIZON_URL.rstrip("/"),
            timeout=httpx.Timeout(settings.COLLABORATOR_TIMEOUT_SECONDS),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def iter_payments(self, account: str, cursor: str | None = None) -> AsyncIterator[LedgerPayment]:
        """
        Yield incoming payments to ``account`` after ``cursor``, oldest first.

        Follows ``_links.next`` until a page comes back empty.
        """
        url = f"/accounts/{account}/payments"
        params: dict[str, Any] | None = {"order": "asc", "limit": LEDGER_PAGE_LIMIT}
        if cursor:
            params["cursor"] = cursor

        while url:
            try:
                response = await self._client.get(url, params=params)
            except httpx.RequestError as e:
                raise PaymentError(f"Ledger request failed: {e}", operation="iter_payments") from e

            if response.status_code == 404:
                logger.info("Ledger account not found", account=account)
                return
            if not response.is_success:
                raise PaymentError(
                    f"Ledger payments request failed ({response.status_code})",
                    status_code=response.status_code,
                    operation="iter_payments",
                )

            data = response.json()
            records = data.get("_embedded", {}).get("records", [])
            if not records:
                return

            for record in records:
                if record.get("type") == "payment" and record.get("to") == account:
                    yield LedgerPayment.from_record(record)

            url = data.get("_links", {}).get("next", {}).get("href")
            params = None
