"""JSON-RPC client for the Solana cluster.

The chain is an external collaborator: this module only knows how to ask it
for transactions, accounts, mint metadata and signature statuses, and how to
submit a signed transaction. Everything is plain JSON over ``httpx``.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import httpx

from wish_fountain.core.settings import settings
from wish_fountain.services.errors import ChainError

logger = logging.getLogger(__name__)

HTTP_INTERNAL_SERVER_ERROR = 500
COMMITMENT_CONFIRMED = "confirmed"


@dataclass
class RpcMetrics:
    """Metrics collection for RPC calls."""

    request_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    method_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(self, method: str, response_time: float, success: bool) -> None:
        self.request_count += 1
        self.total_response_time += response_time
        self.method_counts[method] += 1
        if not success:
            self.error_count += 1

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def as_dict(self) -> dict[str, object]:
        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "average_response_time": self.get_average_response_time(),
            "method_counts": dict(self.method_counts),
        }


@dataclass(frozen=True)
class ChainConfig:
    """Immutable configuration for RPC access."""

    rpc_url: str
    timeout_seconds: float


def load_chain_config() -> ChainConfig:
    """Build configuration object from global settings."""

    return ChainConfig(
        rpc_url=settings.solana_rpc_url,
        timeout_seconds=float(settings.solana_rpc_timeout_seconds),
    )


class SolanaRpcClient:
    """Thin async JSON-RPC wrapper over ``httpx``."""

    def __init__(
        self,
        config: ChainConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_chain_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._metrics = RpcMetrics()
        self._decimals_cache: dict[str, int] = {}

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    async def _call(self, method: str, params: list[Any]) -> Any:
        client = await self._ensure_client()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        start_time = time.time()
        success = False
        try:
            response = await client.post(self.config.rpc_url, json=payload)
            if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
                raise ChainError(f"RPC responded with {response.status_code} for {method}")
            body = response.json()
            if body.get("error"):
                error = body["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ChainError(f"RPC error for {method}: {message}")
            success = True
            return body.get("result")
        except httpx.HTTPError as exc:
            raise ChainError(f"RPC request {method} failed: {exc}") from exc
        except ValueError as exc:
            raise ChainError(f"RPC returned malformed JSON for {method}: {exc}") from exc
        finally:
            self._metrics.record_request(method, time.time() - start_time, success)

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Return the parsed transaction at ``confirmed`` commitment, or None if unknown."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "commitment": COMMITMENT_CONFIRMED,
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_account_info(self, address: str) -> dict[str, Any] | None:
        """Return account info, or None if the account does not exist."""
        result = await self._call(
            "getAccountInfo",
            [address, {"commitment": COMMITMENT_CONFIRMED, "encoding": "base64"}],
        )
        return (result or {}).get("value")

    async def get_token_decimals(self, mint: str) -> int:
        """Return the mint's declared decimal precision (cached per mint)."""
        if mint in self._decimals_cache:
            return self._decimals_cache[mint]
        result = await self._call("getTokenSupply", [mint, {"commitment": COMMITMENT_CONFIRMED}])
        try:
            decimals = int(result["value"]["decimals"])
        except (TypeError, KeyError, ValueError) as exc:
            raise ChainError(f"Mint {mint} returned no decimals") from exc
        self._decimals_cache[mint] = decimals
        return decimals

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": COMMITMENT_CONFIRMED}])
        try:
            return str(result["value"]["blockhash"])
        except (TypeError, KeyError) as exc:
            raise ChainError("getLatestBlockhash returned no blockhash") from exc

    async def send_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed, serialized transaction and return its signature."""
        encoded = base64.b64encode(raw_transaction).decode()
        result = await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": COMMITMENT_CONFIRMED}],
        )
        if not isinstance(result, str):
            raise ChainError("sendTransaction returned no signature")
        return result

    async def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        result = await self._call("getSignatureStatuses", [[signature]])
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    def get_metrics(self) -> dict[str, object]:
        return self._metrics.as_dict()

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class _RpcClientSingleton:
    """Singleton wrapper for SolanaRpcClient."""

    _instance: SolanaRpcClient | None = None

    @classmethod
    def get_instance(cls) -> SolanaRpcClient:
        if cls._instance is None:
            cls._instance = SolanaRpcClient()
        return cls._instance


def get_rpc_client() -> SolanaRpcClient:
    """Return a singleton RPC client instance."""
    return _RpcClientSingleton.get_instance()
