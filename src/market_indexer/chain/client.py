"""JSON-RPC chain client with batching, caching and failover.

This module provides the chain client used to read market contracts with:
- Batched eth_call requests (one HTTP round trip per market refresh)
- Redis caching for immutable reads
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 7 * 24 * 3600  # immutable reads only
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30

T = TypeVar("T")


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when RPC call fails."""


@dataclass(frozen=True)
class EthCall:
    """A single read-only contract call.

    `cacheable` marks calls whose result never changes for a given contract
    (e.g. token address getters); only those are served from Redis.
    """

    to: str
    data: str
    cacheable: bool = False


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Chain client for market contract reads.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://testnet-rpc.monad.xyz",
            fallback_rpc_url="https://monad-testnet.drpc.org",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        info, yes_token = await client.batch_call([
            EthCall(to=market, data="0x23341a05"),
            EthCall(to=market, data="0xf0d9bb20", cacheable=True),
        ])
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        chain_id: int | None = None,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            chain_id: Chain ID, used to namespace cache keys.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching immutable reads.
            cache_ttl_seconds: Cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            request_timeout: HTTP timeout per RPC request.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

        self._cache_prefix = f"chain:{chain_id}:" if chain_id is not None else "chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        return AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": self._request_timeout}))

    def _cache_key(self, call: EthCall) -> str:
        return f"{self._cache_prefix}call:{call.to.lower()}:{call.data.lower()}"

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        operation: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
        *,
        endpoint: str,
    ) -> tuple[bool, T | None, Exception | None]:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return True, await operation(w3), None
            except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(
        self,
        label: str,
        operation: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
    ) -> T:
        """Run an RPC operation with retry and failover logic.

        Args:
            label: Operation name used in logs and errors.
            operation: Coroutine factory receiving the web3 client to use.

        Returns:
            Result from the RPC operation.

        Raises:
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt(self._w3, label, operation, endpoint="Primary")
            if ok:
                self._primary_healthy = True
                return result  # type: ignore[return-value]
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, error = await self._attempt(self._w3_fallback, label, operation, endpoint="Fallback")
            if ok:
                logger.info("Fallback RPC succeeded for %s", label)
                return result  # type: ignore[return-value]
            last_error = error

        raise RPCError(f"RPC call {label} failed after all retries: {last_error}")

    async def _call_batch(self, w3: AsyncWeb3[AsyncHTTPProvider], calls: Sequence[EthCall]) -> list[bytes]:
        if len(calls) == 1:
            call = calls[0]
            result = await w3.eth.call({"to": w3.to_checksum_address(call.to), "data": call.data})
            return [bytes(result)]
        async with w3.batch_requests() as batch:
            for call in calls:
                batch.add(w3.eth.call({"to": w3.to_checksum_address(call.to), "data": call.data}))
            responses: list[Any] = await batch.async_execute()
        return [bytes(r) for r in responses]

    async def batch_call(self, calls: Sequence[EthCall]) -> list[bytes]:
        """Execute several eth_call reads in one JSON-RPC batch.

        Cacheable calls are served from Redis when present; the rest go out
        together in a single request.

        Args:
            calls: Calls to execute.

        Returns:
            Raw return data per call, in the order given.

        Raises:
            RPCError: If the batch fails on every endpoint.
        """
        if not calls:
            return []

        results: list[bytes | None] = [None] * len(calls)
        pending: list[int] = []
        for i, call in enumerate(calls):
            if call.cacheable:
                cached = await self._get_cached(self._cache_key(call))
                if cached is not None:
                    results[i] = bytes.fromhex(cached)
                    continue
            pending.append(i)

        if pending:
            batch = [calls[i] for i in pending]
            fetched = await self._execute_with_retry(
                f"eth_call[{len(batch)}]",
                lambda w3: self._call_batch(w3, batch),
            )
            if len(fetched) != len(batch):
                raise RPCError(f"Batch returned {len(fetched)} results for {len(batch)} calls")
            for i, data in zip(pending, fetched, strict=True):
                results[i] = data
                call = calls[i]
                # Empty results are not cached so a not-yet-deployed token can be re-read.
                if call.cacheable and data:
                    await self._set_cached(self._cache_key(call), data.hex())

        return [r if r is not None else b"" for r in results]

    async def call(self, to: str, data: str) -> bytes:
        """Execute a single eth_call."""
        (result,) = await self.batch_call([EthCall(to=to, data=data)])
        return result

    async def get_block_number(self) -> int:
        """Get the latest block number."""

        async def _block_number(w3: AsyncWeb3[AsyncHTTPProvider]) -> int:
            return int(await w3.eth.block_number)

        return await self._execute_with_retry("eth_blockNumber", _block_number)

    async def health_check(self) -> bool:
        """Check if the RPC connection is healthy."""
        try:
            await self.get_block_number()
            return True
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return False

    async def aclose(self) -> None:
        """Close HTTP sessions held by the web3 providers."""
        for w3 in (self._w3, self._w3_fallback):
            if w3 is None:
                continue
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is not None:
                try:
                    await disconnect()
                except Exception as e:
                    logger.debug("Provider disconnect failed: %s", e)
