"""
Polytrader API process.

One ``TradingRuntime`` is built in the lifespan and shared by every route
through ``app.state``; its loops run as tasks on this event loop, so the
app must be served by a single worker.
"""

import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import (
    account_router,
    config_router,
    handle_websocket,
    leaderboard_router,
    manager,
    markets_router,
    snipe_router,
    spread_router,
    trades_router,
    trading_router,
)
from models.database import init_database
from services.event_bus import ALL_EVENTS
from services.runtime import TradingRuntime
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")

API_ROUTERS = (
    config_router,
    markets_router,
    trades_router,
    trading_router,
    spread_router,
    snipe_router,
    account_router,
    leaderboard_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Polytrader backend")

    runtime = None
    try:
        await init_database()

        runtime = TradingRuntime()
        runtime.event_bus.subscribe(ALL_EVENTS, manager.on_event)
        app.state.runtime = runtime
        await runtime.startup()
        logger.info("Trading runtime ready")

        yield

    except Exception as e:
        # Store unreachable or migration failure: nothing can trade safely
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        if runtime is not None:
            runtime.event_bus.unsubscribe(ALL_EVENTS, manager.on_event)
            await runtime.shutdown()
        logger.info("Shutdown complete")


app = FastAPI(
    title="Polytrader",
    description="Polymarket AI trading, spread arbitrage and copy trading",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.error(
        "Unhandled API error",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": str(exc)})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for router in API_ROUTERS:
    app.include_router(router, prefix="/api")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await handle_websocket(websocket, websocket.app.state.runtime)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 8000)), timeout_keep_alive=30)
