import json

import httpx
import pytest

from app.errors import AppError, ErrorKind, PaymentError
from app.services.payments.payment_service import EscrowClient, LedgerEntryStream

from tests.conftest import make_settings

ACCOUNT = "GUSER1"


def _record(token: str, **overrides) -> dict:
    record = {
        "id": token,
        "paging_token": token,
        "type": "payment",
        "transaction_hash": f"hash-{token}",
        "to": ACCOUNT,
        "from": "GFUNDER",
        "amount": "10.0000000",
        "asset_type": "credit_alphanum4",
        "asset_code": "USDC",
        "created_at": "2026-01-01T00:00:00Z",
    }
    record.update(overrides)
    return record


def _page(records: list[dict], next_cursor: str | None = None) -> dict:
    links = {}
    if next_cursor:
        links["next"] = {"href": f"https://horizon.test/accounts/{ACCOUNT}/payments?cursor={next_cursor}&order=asc"}
    return {"_embedded": {"records": records}, "_links": links}


@pytest.mark.asyncio
async def test_release_funds_posts_to_escrow():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"tx_hash": "tx-123", "created_at": "2026-01-01T00:00:00Z"})

    client = EscrowClient(make_settings(), transport=httpx.MockTransport(handler))
    receipt = await client.release_funds("escrow-1", "GWALLET", 150.0)

    assert receipt.tx_hash == "tx-123"
    assert seen[0].url == "https://escrow.test/escrows/escrow-1/release"
    assert seen[0].headers["Authorization"] == "Bearer escrow-key"
    assert json.loads(seen[0].content) == {"destination": "GWALLET", "amount": "150.0000000"}
    await client.close()


@pytest.mark.asyncio
async def test_release_funds_sends_idempotency_key():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"tx_hash": "tx-123"})

    client = EscrowClient(make_settings(), transport=httpx.MockTransport(handler))
    await client.release_funds("escrow-1", "GWALLET", 150.0, idempotency_key="task-1")
    await client.refund("escrow-1", 10.0)

    assert seen[0].headers["Idempotency-Key"] == "task-1"
    assert "Idempotency-Key" not in seen[1].headers
    await client.close()


@pytest.mark.asyncio
async def test_refund_failure_raises_payment_error():
    client = EscrowClient(
        make_settings(), transport=httpx.MockTransport(lambda r: httpx.Response(409, text="already refunded"))
    )

    with pytest.raises(PaymentError) as exc_info:
        await client.refund("escrow-1", 20.0)

    assert exc_info.value.status_code == 409
    assert exc_info.value.operation == "refund"
    assert AppError.wrap(exc_info.value).kind is ErrorKind.PAYMENT


@pytest.mark.asyncio
async def test_escrow_response_without_hash_is_rejected():
    client = EscrowClient(make_settings(), transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))

    with pytest.raises(PaymentError, match="Invalid escrow response"):
        await client.release_funds("escrow-1", "GWALLET", 1.0)


@pytest.mark.asyncio
async def test_escrow_network_error_is_payment_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = EscrowClient(make_settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(PaymentError, match="Escrow request failed"):
        await client.refund("escrow-1", 1.0)


@pytest.mark.asyncio
async def test_escrow_requires_configuration():
    client = EscrowClient(make_settings(ESCROW_API_KEY=None))

    with pytest.raises(AppError) as exc_info:
        await client.refund("escrow-1", 1.0)

    assert exc_info.value.kind is ErrorKind.CONFIGURATION


@pytest.mark.asyncio
async def test_ledger_stream_follows_pages_and_filters():
    seen: list[httpx.Request] = []
    pages = [
        _page(
            [
                _record("001"),
                _record("002", to="GSOMEONE_ELSE"),
                _record("003", type="create_account"),
                _record("004", asset_type="native", asset_code=None),
            ],
            next_cursor="004",
        ),
        _page([]),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=pages[len(seen) - 1])

    stream = LedgerEntryStream(make_settings(HORIZON_URL="https://horizon.test"), transport=httpx.MockTransport(handler))
    payments = [p async for p in stream.iter_payments(ACCOUNT, cursor="000")]

    assert [p.paging_token for p in payments] == ["001", "004"]
    assert payments[0].tx_hash == "hash-001"
    assert payments[0].asset_code == "USDC"
    assert payments[1].asset_code == "XLM"
    assert seen[0].url.params["cursor"] == "000"
    assert seen[0].url.params["order"] == "asc"
    assert seen[1].url.params["cursor"] == "004"
    await stream.close()


@pytest.mark.asyncio
async def test_ledger_stream_unknown_account_is_empty():
    stream = LedgerEntryStream(
        make_settings(HORIZON_URL="https://horizon.test"),
        transport=httpx.MockTransport(lambda r: httpx.Response(404, json={"status": 404})),
    )

    assert [p async for p in stream.iter_payments(ACCOUNT)] == []


@pytest.mark.asyncio
async def test_ledger_stream_server_error():
    stream = LedgerEntryStream(
        make_settings(HORIZON_URL="https://horizon.test"),
        transport=httpx.MockTransport(lambda r: httpx.Response(500)),
    )

    with pytest.raises(PaymentError) as exc_info:
        [p async for p in stream.iter_payments(ACCOUNT)]

    assert exc_info.value.status_code == 500
