from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from marketsync.api.routes import router
from marketsync.config.settings import Settings, settings
from marketsync.service import MarketDataService


def create_app(config: Settings = settings, service: MarketDataService | None = None) -> FastAPI:
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    market_data = service or MarketDataService.from_settings(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        market_data.start()
        try:
            yield
        finally:
            await market_data.close()

    app = FastAPI(title="marketsync", lifespan=lifespan)
    app.state.market_data = market_data
    app.state.trust_forwarded_for = config.rate_limit.trust_forwarded_for
    app.include_router(router)
    return app
