import base64
import json

import httpx
import pytest

from services.ledger.rpc import LedgerClient, classify_rpc_error
from services.transfer.config import TransferConfig
from services.transfer.errors import (
    AlreadyProcessed,
    LedgerError,
    RateLimited,
    RentQueryFailed,
    StaleLifetimeToken,
)

RPC_URL = "http://rpc.test"


class RpcStub:
    """httpx.MockTransport handler answering by JSON-RPC method."""

    def __init__(self, results=None, errors=None, status_code=200):
        self.results = results or {}
        self.errors = errors or {}
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="slow down")
        method = body["method"]
        if method in self.errors:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": self.errors[method]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.results.get(method)})


def _client(stub: RpcStub) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(stub))


@pytest.mark.asyncio
async def test_latest_blockhash():
    stub = RpcStub({"getLatestBlockhash": {
        "context": {"slot": 1},
        "value": {"blockhash": "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N", "lastValidBlockHeight": 3090},
    }})
    async with _client(stub) as http:
        token = await LedgerClient(RPC_URL, client=http).get_lifetime_token()

    assert token.blockhash == "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N"
    assert token.last_valid_block_height == 3090
    assert stub.requests[0]["params"] == [{"commitment": "confirmed"}]


@pytest.mark.asyncio
async def test_submit_sends_base64_without_preflight():
    stub = RpcStub({"sendTransaction": "5sig"})
    async with _client(stub) as http:
        sig = await LedgerClient(RPC_URL, client=http).submit(b"\x01\x02\x03")

    assert sig == "5sig"
    encoded, opts = stub.requests[0]["params"]
    assert base64.b64decode(encoded) == b"\x01\x02\x03"
    assert opts["encoding"] == "base64"
    assert opts["skipPreflight"] is True
    assert opts["maxRetries"] == 0


@pytest.mark.asyncio
async def test_signature_status():
    stub = RpcStub({"getSignatureStatuses": {"context": {"slot": 9}, "value": [
        {"slot": 8, "confirmations": None, "err": None, "confirmationStatus": "finalized"},
    ]}})
    async with _client(stub) as http:
        status = await LedgerClient(RPC_URL, client=http).get_status("sig")

    assert status.is_confirmed() and status.err is None and status.slot == 8
    assert stub.requests[0]["params"] == [["sig"], {"searchTransactionHistory": True}]


@pytest.mark.asyncio
async def test_unknown_signature_status_is_none():
    stub = RpcStub({"getSignatureStatuses": {"context": {"slot": 9}, "value": [None]}})
    async with _client(stub) as http:
        assert await LedgerClient(RPC_URL, client=http).get_status("sig") is None


@pytest.mark.asyncio
async def test_rent_and_block_height():
    stub = RpcStub({"getMinimumBalanceForRentExemption": 2011440, "getBlockHeight": 77})
    async with _client(stub) as http:
        client = LedgerClient(RPC_URL, client=http)
        assert await client.get_min_rent(161) == 2011440
        assert await client.get_block_height() == 77
    assert stub.requests[0]["params"] == [161]


@pytest.mark.asyncio
async def test_rent_failure_is_rent_query_failed():
    stub = RpcStub(errors={"getMinimumBalanceForRentExemption": {"code": -32603, "message": "internal"}})
    async with _client(stub) as http:
        with pytest.raises(RentQueryFailed):
            await LedgerClient(RPC_URL, client=http).get_min_rent(161)


@pytest.mark.asyncio
async def test_rpc_errors_are_classified():
    stub = RpcStub(errors={
        "sendTransaction": {"code": -32002, "message": "Transaction simulation failed: Blockhash not found"},
    })
    async with _client(stub) as http:
        with pytest.raises(StaleLifetimeToken) as exc:
            await LedgerClient(RPC_URL, client=http).submit(b"\x00")
    assert exc.value.code == -32002


@pytest.mark.asyncio
async def test_http_429_is_rate_limited():
    async with _client(RpcStub(status_code=429)) as http:
        with pytest.raises(RateLimited):
            await LedgerClient(RPC_URL, client=http).get_block_height()


@pytest.mark.asyncio
async def test_transport_error_is_ledger_error():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http:
        with pytest.raises(LedgerError):
            await LedgerClient(RPC_URL, client=http).get_health()


def test_from_config():
    cfg = TransferConfig(rpc_url="http://example:8899", commitment="finalized", skip_preflight=False)
    client = LedgerClient.from_config(cfg, client=httpx.AsyncClient())
    assert client.rpc_url == "http://example:8899"
    assert client.commitment == "finalized"
    assert client.skip_preflight is False


@pytest.mark.parametrize(
    "message,code,expected",
    [
        ("Transaction simulation failed: Blockhash not found", -32002, StaleLifetimeToken),
        ("This transaction has already been processed", -32002, AlreadyProcessed),
        ("Too many requests for a specific RPC call", None, RateLimited),
        ("anything", 429, RateLimited),
        ("Transaction signature verification failure", -32003, LedgerError),
    ],
)
def test_classify_rpc_error(message, code, expected):
    assert type(classify_rpc_error(message, code)) is expected


@pytest.mark.asyncio
async def test_already_processed_submit():
    stub = RpcStub(errors={"sendTransaction": {
        "code": -32002,
        "message": "Transaction simulation failed: This transaction has already been processed",
        "data": {"err": "AlreadyProcessed", "logs": []},
    }})
    async with _client(stub) as http:
        with pytest.raises(AlreadyProcessed):
            await LedgerClient(RPC_URL, client=http).submit(b"\x00")


@pytest.mark.asyncio
async def test_submit_timeout_is_not_a_rejection():
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as http:
        with pytest.raises(LedgerError) as exc:
            await LedgerClient(RPC_URL, client=http).submit(b"\x00")
    assert not exc.value.rejected


@pytest.mark.parametrize(
    "error,rejected",
    [
        (LedgerError("sendTransaction: connection error: ReadTimeout"), False),
        (LedgerError("sendTransaction: HTTP 503: upstream", 503), False),
        (LedgerError("Transaction signature verification failure", -32003), True),
        (LedgerError("sendTransaction: HTTP 400: bad request", 400), True),
        (RateLimited("Too many requests"), True),
    ],
)
def test_rejected_means_the_node_answered(error, rejected):
    assert error.rejected is rejected
