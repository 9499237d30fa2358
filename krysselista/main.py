from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_config
from .realtime import get_change_feed
from .routes import account as account_routes
from .routes import admin as admin_routes
from .routes import children as children_routes
from .routes import pickups as pickup_routes
from .routes import realtime as realtime_routes
from .supabase_realtime import build_realtime_relay

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )


config = get_config()
setup_logging(config.log_level)
get_change_feed().queue_size = config.realtime_queue_size

app = FastAPI(
    title="Krysselista API",
    version="0.1.0",
    description="Coordinates daycare pickups between parents and staff",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(account_routes.router)
app.include_router(children_routes.router)
app.include_router(pickup_routes.router)
app.include_router(admin_routes.router)
app.include_router(realtime_routes.router)


@app.on_event("startup")
async def start_realtime_relay() -> None:
    relay = build_realtime_relay(get_config(), get_change_feed())
    app.state.realtime_relay = relay
    if relay is not None:
        relay.start()
        logger.info("realtime relay started", extra={"topic": relay.topic})


@app.on_event("shutdown")
async def stop_realtime_relay() -> None:
    relay = getattr(app.state, "realtime_relay", None)
    if relay is not None:
        await relay.stop()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/")
async def root() -> dict:
    return {"message": "Krysselista API ready"}
