import json

import httpx
import pytest

from conftest import make_credential
from dropswarm.domain.models import AssetMetadata, Credential
from dropswarm.errors import TransientExecutionError
from dropswarm.trading.executor import HttpTradeExecutor, PaperTradeExecutor

ASSET = AssetMetadata(mint="MintM", symbol="FOO", market_cap=1000.0)


class StubLedger:
    async def get_balance(self, pubkey):
        return 1.25

    async def get_token_balance(self, owner, mint):
        return 42.0

    async def get_balance_change(self, signature, pubkey):
        return 0.1


def _http_executor(handler, **kwargs):
    return HttpTradeExecutor("https://trade.test/api/", StubLedger(), transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_buy_posts_sol_denominated_trade_with_wallet_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"signature": "5igsig", "errors": []})

    executor = _http_executor(handler, priority_fee=0.001)
    signature = await executor.buy(0.25, make_credential(1), ASSET, 0.3)
    await executor.aclose()

    assert signature == "5igsig"
    request = seen[0]
    assert request.url.path == "/api/trade"
    assert request.url.params["api-key"] == "key-1"
    payload = json.loads(request.content)
    assert payload == {
        "action": "buy",
        "mint": "MintM",
        "amount": 0.25,
        "denominatedInSol": "true",
        "slippage": 30.0,
        "priorityFee": 0.001,
        "pool": "pump",
    }


@pytest.mark.asyncio
async def test_sell_of_graduated_token_routes_to_secondary_pool():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"signature": "sellsig"})

    executor = _http_executor(handler)
    graduated = AssetMetadata(mint="MintM", symbol="FOO", market_cap=90000.0, pool="PoolAddr")
    assert await executor.sell(1000.0, make_credential(1), graduated, 0.3) == "sellsig"
    assert seen[0]["action"] == "sell"
    assert seen[0]["denominatedInSol"] == "false"
    assert seen[0]["pool"] == "raydium"
    await executor.aclose()


@pytest.mark.asyncio
async def test_rejected_trade_raises_transient_error():
    executor = _http_executor(lambda request: httpx.Response(200, json={"errors": ["Slippage exceeded"]}))
    with pytest.raises(TransientExecutionError, match="Slippage exceeded"):
        await executor.buy(0.1, make_credential(1), ASSET, 0.3)
    await executor.aclose()


@pytest.mark.asyncio
async def test_http_failure_and_missing_signature_raise_transient_error():
    executor = _http_executor(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(TransientExecutionError, match="HTTP 502"):
        await executor.buy(0.1, make_credential(1), ASSET, 0.3)
    await executor.aclose()

    executor = _http_executor(lambda request: httpx.Response(200, json={}))
    with pytest.raises(TransientExecutionError, match="no signature"):
        await executor.buy(0.1, make_credential(1), ASSET, 0.3)
    await executor.aclose()


@pytest.mark.asyncio
async def test_trade_without_api_key_is_not_sent():
    seen = []
    executor = _http_executor(lambda request: seen.append(request) or httpx.Response(200, json={"signature": "x"}))
    credential = Credential(secret_key=bytes(64), pubkey="Wallet9")
    with pytest.raises(TransientExecutionError, match="No trade API key"):
        await executor.buy(0.1, credential, ASSET, 0.3)
    assert seen == []
    await executor.aclose()


@pytest.mark.asyncio
async def test_balances_are_read_from_the_ledger():
    executor = _http_executor(lambda request: httpx.Response(500))
    credential = make_credential(1)
    assert await executor.get_balance(credential) == 1.25
    assert await executor.get_token_balance(credential, ASSET) == 42.0
    assert await executor.get_balance_change("sig", credential) == 0.1
    await executor.aclose()


@pytest.mark.asyncio
async def test_paper_executor_tracks_balances_per_account():
    executor = PaperTradeExecutor(starting_balance=1.0, tokens_per_sol=1000.0)
    alice, bob = make_credential(1), make_credential(2)

    signature = await executor.buy(0.25, alice, ASSET, 0.3)
    assert await executor.get_balance_change(signature, alice) == pytest.approx(0.25)
    assert await executor.get_balance(alice) == pytest.approx(0.75)
    assert await executor.get_token_balance(alice, ASSET) == pytest.approx(250.0)
    assert await executor.get_balance(bob) == pytest.approx(1.0)
    assert await executor.get_token_balance(bob, ASSET) is None

    await executor.sell(250.0, alice, ASSET, 0.3)
    assert await executor.get_token_balance(alice, ASSET) == pytest.approx(0.0)
    assert await executor.get_balance(alice) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_paper_executor_rejects_overdrafts():
    executor = PaperTradeExecutor(starting_balance=0.1)
    credential = make_credential(1)
    with pytest.raises(TransientExecutionError):
        await executor.buy(0.2, credential, ASSET, 0.3)
    with pytest.raises(TransientExecutionError):
        await executor.sell(1.0, credential, ASSET, 0.3)
    with pytest.raises(TransientExecutionError):
        await executor.get_balance_change("paper-unknown", credential)
