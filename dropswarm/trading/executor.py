from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

import httpx

from dropswarm.chain.rpc import LedgerRpc
from dropswarm.domain.models import AssetMetadata, Credential
from dropswarm.errors import TransientExecutionError

logger = logging.getLogger(__name__)


class HttpTradeExecutor:
    """
    Executes trades through a hosted trade API and reads balances from the ledger.

    Each credential carries the API key of the wallet it trades for. Slippage is sent as a
    percentage; buys are denominated in SOL and sells in tokens.
    """

    def __init__(
        self,
        api_url: str,
        ledger: LedgerRpc,
        *,
        priority_fee: float = 0.0005,
        pool: str = "pump",
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.ledger = ledger
        self.priority_fee = float(priority_fee)
        self.pool = pool
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _pool_for(self, asset: AssetMetadata) -> str:
        # Tokens that graduated to a secondary-market pool trade there.
        return "raydium" if asset.pool else self.pool

    async def _trade(self, action: str, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str:
        if not credential.api_key:
            raise TransientExecutionError(f"No trade API key for {credential.pubkey}")

        payload: dict[str, Any] = {
            "action": action,
            "mint": asset.mint,
            "amount": amount,
            "denominatedInSol": "true" if action == "buy" else "false",
            "slippage": round(float(slippage) * 100, 2),
            "priorityFee": self.priority_fee,
            "pool": self._pool_for(asset),
        }
        try:
            response = await self._client.post(f"{self.api_url}/trade", params={"api-key": credential.api_key}, json=payload)
        except httpx.HTTPError as e:
            raise TransientExecutionError(f"{action} request failed: {type(e).__name__}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code != 200 or body.get("errors"):
            detail = body.get("errors") or response.text[:200]
            raise TransientExecutionError(f"{action} rejected (HTTP {response.status_code}): {detail}")

        signature = body.get("signature")
        if not signature:
            raise TransientExecutionError(f"{action} response carried no signature")
        logger.info(f"{action.upper()} {amount} {asset.symbol} for {credential.pubkey}: {signature}")
        return str(signature)

    async def buy(self, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str:
        return await self._trade("buy", amount, credential, asset, slippage)

    async def sell(self, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str:
        return await self._trade("sell", amount, credential, asset, slippage)

    async def get_balance(self, credential: Credential) -> float:
        return await self.ledger.get_balance(credential.pubkey)

    async def get_token_balance(self, credential: Credential, asset: AssetMetadata) -> float | None:
        return await self.ledger.get_token_balance(credential.pubkey, asset.mint)

    async def get_balance_change(self, signature: str, credential: Credential) -> float:
        return await self.ledger.get_balance_change(signature, credential.pubkey)


class PaperTradeExecutor:
    """
    In-memory executor for dry runs.

    Every account starts with `starting_balance` SOL; buys convert SOL to tokens at a fixed rate.
    """

    def __init__(self, starting_balance: float = 2.0, tokens_per_sol: float = 1_000_000.0) -> None:
        self.starting_balance = float(starting_balance)
        self.tokens_per_sol = float(tokens_per_sol)
        self._sol: dict[str, float] = {}
        self._tokens: dict[tuple[str, str], float] = {}
        self._changes: dict[str, float] = {}

    def _sol_of(self, credential: Credential) -> float:
        return self._sol.setdefault(credential.pubkey, self.starting_balance)

    async def buy(self, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str:
        balance = self._sol_of(credential)
        if amount <= 0 or amount > balance:
            raise TransientExecutionError(f"Insufficient paper balance: {balance:.5f} SOL < {amount:.5f} SOL")
        self._sol[credential.pubkey] = balance - amount
        key = (credential.pubkey, asset.mint)
        self._tokens[key] = self._tokens.get(key, 0.0) + amount * self.tokens_per_sol
        signature = f"paper-{uuid4().hex}"
        self._changes[signature] = amount
        return signature

    async def sell(self, amount: float, credential: Credential, asset: AssetMetadata, slippage: float) -> str:
        key = (credential.pubkey, asset.mint)
        held = self._tokens.get(key, 0.0)
        if amount <= 0 or amount > held:
            raise TransientExecutionError(f"Cannot sell {amount} tokens; holding {held}")
        self._tokens[key] = held - amount
        proceeds = amount / self.tokens_per_sol
        self._sol[credential.pubkey] = self._sol_of(credential) + proceeds
        signature = f"paper-{uuid4().hex}"
        self._changes[signature] = -proceeds
        return signature

    async def get_balance(self, credential: Credential) -> float:
        return self._sol_of(credential)

    async def get_token_balance(self, credential: Credential, asset: AssetMetadata) -> float | None:
        return self._tokens.get((credential.pubkey, asset.mint))

    async def get_balance_change(self, signature: str, credential: Credential) -> float:
        if signature not in self._changes:
            raise TransientExecutionError(f"Unknown paper signature {signature}")
        return self._changes[signature]
