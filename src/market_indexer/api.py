"""HTTP trigger surface for the indexer.

Exposes the scheduler-facing `POST /indexer` endpoint, the single-market
`POST /markets/sync` refresh and a health check.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.asyncio import Redis

from market_indexer.chain.client import ChainClientError
from market_indexer.chain.market_state import MarketInfoDecodeError
from market_indexer.config import Settings, get_settings
from market_indexer.models import normalize_address
from market_indexer.pipeline import CycleStatus, IndexerCycleError, IndexerPipeline
from market_indexer.storage.database import DatabaseManager, SessionScope
from market_indexer.storage.repos import MarketRepository

logger = logging.getLogger(__name__)


class MarketSyncRequest(BaseModel):
    market_address: str


def _error(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _percent(value: Decimal) -> str:
    return f"{value * 100:.2f}%"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the database manager and pipeline at startup; close them on shutdown."""
    settings: Settings = app.state.settings
    db = DatabaseManager(settings.database.url)
    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    pipeline = IndexerPipeline.from_settings(settings, db.session_scope, redis=redis)

    app.state.db = db
    app.state.pipeline = pipeline
    try:
        yield
    finally:
        await pipeline.aclose()
        if redis is not None:
            await redis.aclose()
        await db.dispose_async()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pipeline(request: Request) -> IndexerPipeline:
    return request.app.state.pipeline


def get_session_scope(request: Request) -> SessionScope:
    return request.app.state.db.session_scope


def _authorized(settings: Settings, authorization: str | None) -> bool:
    api_key = settings.indexer.api_key
    if api_key is None or authorization is None:
        return False
    expected = f"Bearer {api_key.get_secret_value()}"
    return secrets.compare_digest(authorization.encode(), expected.encode())


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
PipelineDep = Annotated[IndexerPipeline, Depends(get_pipeline)]
SessionScopeDep = Annotated[SessionScope, Depends(get_session_scope)]
AuthorizationHeader = Annotated[str | None, Header()]


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to serve with; loaded from the environment if omitted.
    """
    app = FastAPI(
        title="Market Indexer",
        description="Prediction-market event indexer and analytics trigger",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or get_settings()

    @app.get("/health")
    async def health(pipeline: PipelineDep) -> JSONResponse:
        """Return health check status, including chain RPC reachability."""
        if not await pipeline.health_check():
            return JSONResponse(status_code=503, content={"status": "degraded", "chain_rpc": False})
        return JSONResponse({"status": "ok", "chain_rpc": True})

    @app.post("/indexer")
    async def run_indexer(
        settings: SettingsDep,
        pipeline: PipelineDep,
        authorization: AuthorizationHeader = None,
    ) -> JSONResponse:
        """Run one indexer cycle (called by the external scheduler)."""
        if not _authorized(settings, authorization):
            return _error(401, "Unauthorized")

        try:
            result = await pipeline.run_cycle()
        except IndexerCycleError as e:
            return _error(500, "Indexer failed", str(e))

        if result.status is CycleStatus.SKIPPED_LOCKED:
            return JSONResponse({"message": "Sync already in progress"})
        if result.status is CycleStatus.UP_TO_DATE:
            return JSONResponse({"message": "Already synced", "current_block": result.current_block})
        return JSONResponse(result.to_dict())

    @app.post("/markets/sync")
    async def sync_market(
        body: MarketSyncRequest,
        settings: SettingsDep,
        pipeline: PipelineDep,
        session_scope: SessionScopeDep,
        authorization: AuthorizationHeader = None,
    ) -> JSONResponse:
        """Read one market from chain and upsert it by address."""
        if not _authorized(settings, authorization):
            return _error(401, "Unauthorized")
        try:
            address = normalize_address(body.market_address)
        except ValueError:
            return _error(400, "Invalid market address")

        try:
            info = await pipeline.refresher.read_info(address)
        except (ChainClientError, MarketInfoDecodeError) as e:
            logger.warning("Failed to read market %s: %s", address, e)
            return _error(502, "Failed to read market", str(e))

        now = datetime.now(UTC)
        async with session_scope() as session:
            market = await MarketRepository(session).upsert_from_chain(
                address,
                question=info.question,
                resolution_time=info.resolution_datetime,
                oracle_address=info.oracle,
                state=info.to_state(),
                now=now,
            )
        logger.info("Synced market %s (resolved=%s)", address, market.resolved)

        return JSONResponse(
            {
                "success": True,
                "market": address,
                "prices": {
                    "yes": str(info.yes_price),
                    "no": str(info.no_price),
                    "yesFormatted": _percent(info.yes_price),
                    "noFormatted": _percent(info.no_price),
                },
                "probability": {
                    "yes": str(info.yes_probability),
                    "no": str(info.no_probability),
                },
                "shares": {
                    "yes": str(info.yes_shares),
                    "no": str(info.no_shares),
                },
                "totalCollateral": str(info.total_collateral),
                "resolved": market.resolved,
                "yesWins": market.yes_wins,
                "updatedAt": now.isoformat(),
            }
        )

    return app


def main() -> None:
    """Serve the trigger endpoint with uvicorn."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings.validate_requirements()
    logger.info("Starting market indexer with settings: %s", settings.redacted_summary())
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
