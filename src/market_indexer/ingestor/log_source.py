"""HTTP client for the remote log-indexing service.

Queries a HyperSync-compatible endpoint for market contract logs over a
block range, following its `next_block` continuation cursor.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import httpx

from market_indexer.ingestor.decoder import EVENT_SIGNATURES
from market_indexer.ingestor.models import RawLog

logger = logging.getLogger(__name__)

LOG_FIELDS: tuple[str, ...] = (
    "address",
    "topic0",
    "topic1",
    "topic2",
    "topic3",
    "data",
    "block_number",
    "transaction_hash",
    "log_index",
)


class LogSourceError(Exception):
    """Raised when the log-indexing service fails or answers unexpectedly."""


class LogSourceClient:
    """Paginated log queries against a HyperSync-compatible service.

    No retry happens here: any failure surfaces as `LogSourceError` and the
    orchestrator decides what to do with the cycle.
    """

    def __init__(
        self,
        base_url: str,
        *,
        bearer_token: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Service base URL, without trailing slash.
            bearer_token: Optional token sent as `Authorization: Bearer`.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (used by tests).
        """
        headers = {"Content-Type": "application/json"}
        if bearer_token:
            headers["Authorization"] = f"Bearer {bearer_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise LogSourceError(
                f"Log source {path} returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise LogSourceError(f"Log source {path} request failed: {e}") from e
        except ValueError as e:
            raise LogSourceError(f"Log source {path} returned invalid JSON") from e

    async def get_height(self) -> int:
        """Return the current chain height known to the service."""
        payload = await self._request("GET", "/height")
        height = payload.get("height") if isinstance(payload, dict) else payload
        if isinstance(height, bool) or not isinstance(height, int | str):
            raise LogSourceError(f"Unexpected height response: {payload!r}")
        try:
            return int(height)
        except ValueError as e:
            raise LogSourceError(f"Unexpected height response: {payload!r}") from e

    async def query_logs(
        self,
        from_block: int,
        to_block: int,
        addresses: Sequence[str],
        *,
        signatures: Sequence[str] = EVENT_SIGNATURES,
    ) -> list[RawLog]:
        """Fetch all logs emitted by `addresses` in blocks [from_block, to_block].

        Pages are requested with `from_block = next_block` until the cursor
        is absent or passes `to_block`.
        """
        if not addresses or from_block > to_block:
            return []

        logs: list[RawLog] = []
        current = from_block
        pages = 0
        while True:
            body = {
                "from_block": current,
                "to_block": to_block + 1,  # exclusive upper bound
                "logs": [{"address": list(addresses), "topics": [list(signatures)]}],
                "field_selection": {"log": list(LOG_FIELDS)},
            }
            payload = await self._request("POST", "/query", json=body)
            if not isinstance(payload, dict):
                raise LogSourceError(f"Unexpected query response type: {type(payload).__name__}")
            pages += 1

            for batch in payload.get("data") or []:
                for record in batch.get("logs") or []:
                    logs.append(RawLog.from_dict(record))

            next_block = payload.get("next_block")
            if next_block is None or int(next_block) > to_block:
                break
            if int(next_block) <= current:
                raise LogSourceError(f"Log source cursor did not advance past block {current}")
            current = int(next_block)

        logger.debug(
            "Fetched %d logs for blocks %d-%d in %d page(s)", len(logs), from_block, to_block, pages
        )
        return logs

    async def aclose(self) -> None:
        await self._client.aclose()
