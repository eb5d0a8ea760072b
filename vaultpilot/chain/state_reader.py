"""
On-Chain State Reader - vault and exchange position reads over JSON-RPC.

Read-only: this module never signs or submits transactions. It can encode
the calldata of a remedial vault call so the execution side only has to
attach the fee and send it.

Every RPC failure surfaces as ChainReadError carrying the call name.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from web3 import AsyncWeb3

from vaultpilot.chain.abis import GMX_VAULT_ABI, VAULT_ABI, USDC_DECIMALS, USD_DECIMALS
from vaultpilot.core.config import ChainConfig
from vaultpilot.core.error_handler import ChainReadError
from vaultpilot.core.logger import get_logger
from vaultpilot.positions.models import ExchangePosition, OnChainPosition, PriceQuote

logger = get_logger("chain_reader")


class ChainStateReader:
    """Async web3 reader for one vault deployment."""

    def __init__(self, config: Optional[ChainConfig] = None, w3: Optional[AsyncWeb3] = None):
        self.config = config or ChainConfig()
        self._w3 = w3
        self._vault = None
        self._gmx = None
        self._symbols: Dict[str, str] = {
            addr.lower(): sym for sym, addr in self.config.tokens.items()
        }

    @property
    def vault_address(self) -> str:
        return AsyncWeb3.to_checksum_address(self.config.vault_address)

    async def initialize(self) -> None:
        if not self.config.vault_address:
            raise ValueError("chain.vault_address is not configured")
        if self._w3 is None:
            self._w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self.config.rpc_url,
                    request_kwargs={"timeout": self.config.request_timeout_seconds},
                )
            )
        self._vault = self._w3.eth.contract(address=self.vault_address, abi=VAULT_ABI)
        self._gmx = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.config.gmx_vault_address),
            abi=GMX_VAULT_ABI,
        )
        logger.info("Chain reader initialized", vault=self.vault_address)

    async def close(self) -> None:
        if self._w3 is not None:
            disconnect = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        self._w3 = None
        self._vault = None
        self._gmx = None

    def token_symbol(self, token: str) -> str:
        return self._symbols.get(token.lower(), token)

    def resolve_token(self, token_or_symbol: str) -> str:
        """Symbol (WETH) or address -> checksum address."""
        addr = self.config.tokens.get(token_or_symbol.upper(), token_or_symbol)
        return AsyncWeb3.to_checksum_address(addr)

    def _ensure_ready(self) -> None:
        if self._vault is None or self._gmx is None:
            raise RuntimeError("Chain reader not initialized. Call initialize() first.")

    async def _call(self, name: str, fn: Any) -> Any:
        try:
            return await fn.call()
        except Exception as e:
            raise ChainReadError(name, e) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_vault_position(self, wallet: str, token: str) -> OnChainPosition:
        self._ensure_ready()
        raw = await self._call(
            "getPosition",
            self._vault.functions.getPosition(
                AsyncWeb3.to_checksum_address(wallet), self.resolve_token(token)
            ),
        )
        return OnChainPosition.from_raw(raw)

    async def get_vault_balance(self, wallet: str) -> float:
        """Free vault balance of ``wallet`` in USD."""
        self._ensure_ready()
        raw = await self._call(
            "balances",
            self._vault.functions.balances(AsyncWeb3.to_checksum_address(wallet)),
        )
        return int(raw) / 10 ** USDC_DECIMALS

    async def get_exchange_positions(self, token: str) -> List[ExchangePosition]:
        """Long and short exchange positions the vault holds on ``token``."""
        self._ensure_ready()
        index_token = self.resolve_token(token)
        collateral = AsyncWeb3.to_checksum_address(self.config.collateral_token)

        async def side(is_long: bool) -> ExchangePosition:
            raw = await self._call(
                "gmx.getPosition",
                self._gmx.functions.getPosition(
                    self.vault_address, collateral, index_token, is_long
                ),
            )
            return ExchangePosition.from_raw(raw, is_long)

        long_pos, short_pos = await asyncio.gather(side(True), side(False))
        return [long_pos, short_pos]

    async def get_prices(self, token: str) -> PriceQuote:
        self._ensure_ready()
        index_token = self.resolve_token(token)
        max_raw, min_raw = await asyncio.gather(
            self._call("getMaxPrice", self._gmx.functions.getMaxPrice(index_token)),
            self._call("getMinPrice", self._gmx.functions.getMinPrice(index_token)),
        )
        scale = 10 ** USD_DECIMALS
        return PriceQuote(max_price=int(max_raw) / scale, min_price=int(min_raw) / scale)

    async def get_execution_fee(self) -> int:
        """Execution fee in wei, to be read right before a payable vault call."""
        self._ensure_ready()
        return int(await self._call("getExecutionFee", self._vault.functions.getExecutionFee()))

    def encode_call(self, function: str, token: str) -> str:
        """ABI-encoded calldata for a single-token vault call."""
        self._ensure_ready()
        return self._vault.encode_abi(function, args=[self.resolve_token(token)])
