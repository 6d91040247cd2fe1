import asyncio
import struct

import pytest

from dropswarm.domain.models import AssetMetadata, BotConfig, Credential, InnerInstruction, ParsedTransaction
from dropswarm.errors import TransientExecutionError

METADATA_PROGRAM = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"
CREATION_PROGRAM = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"


def make_config(**overrides) -> BotConfig:
    values = {
        "agent_count": 2,
        "buy_interval": 0.01,
        "spend_limit": 1.0,
        "mcap_threshold": 50000.0,
        "token_name": "Foo",
        "token_ticker": "FOO",
        "start_buy": 0.3,
        "min_balance_reserve": 0.0,
        "sleep_std": 0.0,
    }
    values.update(overrides)
    return BotConfig(**values)


def make_credential(n: int) -> Credential:
    return Credential(secret_key=bytes([n]) * 64, pubkey=f"Wallet{n}", api_key=f"key-{n}", source=f"{n}.json")


class MeanRng:
    """Stands in for a numpy Generator and always returns the mean."""

    def normal(self, loc, scale):
        return loc


class FakeExecutor:
    def __init__(self, *, balance=10.0, token_balance=1000.0, fail_buys=0, fail_sell=False, change_error=False):
        self.balance = balance
        self.token_balance = token_balance
        self.fail_buys = fail_buys
        self.fail_sell = fail_sell
        self.change_error = change_error
        self.buys: list[float] = []
        self.sells: list[float] = []
        self._by_signature: dict[str, float] = {}

    async def buy(self, amount, credential, asset, slippage):
        if self.fail_buys > 0:
            self.fail_buys -= 1
            raise TransientExecutionError("blockhash not found")
        self.buys.append(amount)
        signature = f"buy-{len(self.buys)}"
        self._by_signature[signature] = amount
        return signature

    async def sell(self, amount, credential, asset, slippage):
        if self.fail_sell:
            raise TransientExecutionError("slippage exceeded")
        self.sells.append(amount)
        return f"sell-{len(self.sells)}"

    async def get_balance(self, credential):
        return self.balance

    async def get_token_balance(self, credential, asset):
        return self.token_balance

    async def get_balance_change(self, signature, credential):
        if self.change_error:
            raise TransientExecutionError("transaction not found")
        return self._by_signature[signature]


class FakeLedger:
    def __init__(self, *, subscribe_error=None, handle="sub-1", unsubscribe_error=None):
        self.subscribe_error = subscribe_error
        self.handle = handle
        self.unsubscribe_error = unsubscribe_error
        self.callback = None
        self.subscribed_program = None
        self.unsubscribed: list = []
        self.transactions: dict[str, ParsedTransaction] = {}
        self.fetched: list[str] = []
        self.fetch_error = None

    async def subscribe(self, program, callback):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscribed_program = program
        self.callback = callback
        return self.handle

    async def unsubscribe(self, handle):
        self.unsubscribed.append(handle)
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error

    async def get_parsed_transaction(self, signature):
        self.fetched.append(signature)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.transactions.get(signature)


def borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def create_metadata_data(name: str, symbol: str, uri: str = "https://example.com/meta.json", creators: int = 0) -> bytes:
    data = bytes([33]) + borsh_string(name) + borsh_string(symbol) + borsh_string(uri) + struct.pack("<H", 0)
    if creators:
        data += b"\x01" + struct.pack("<I", creators) + (bytes(32) + b"\x01" + bytes([100 // creators])) * creators
    else:
        data += b"\x00"
    data += b"\x00"  # collection
    data += b"\x00"  # uses
    data += b"\x01"  # is_mutable
    data += b"\x00"  # collection details
    return data


def creation_tx(
    signature: str,
    *,
    name: str = "Foo",
    symbol: str = "FOO",
    mint: str = "MintM",
    signers: tuple[str, ...] | None = None,
    post_token_mints: tuple[str, ...] | None = None,
) -> ParsedTransaction:
    ix = InnerInstruction(
        program_id=METADATA_PROGRAM,
        data=create_metadata_data(name, symbol),
        accounts=("MetadataPda", mint, "Authority", "Payer"),
    )
    return ParsedTransaction(
        signature=signature,
        signers=signers if signers is not None else ("Creator", mint),
        inner_instructions=(ix,),
        post_token_mints=post_token_mints if post_token_mints is not None else (mint,),
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.002)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def metadata() -> AssetMetadata:
    return AssetMetadata(mint="MintM", symbol="FOO", market_cap=1000.0)
