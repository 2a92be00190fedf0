"""
Price Stream Service - Main Entry Point

Runs one StreamingClient for the dashboard and exposes it over HTTP:
- Connectivity / health status
- Subscription management (subscribe / unsubscribe symbols)
- Latest known prices
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from shared.config.settings import settings
from shared.utils.logger import configure_logging, get_logger
from services.price_stream.client import StreamingClient, create_streaming_client

configure_logging(service_name="price_stream")
logger = get_logger(__name__, component="api")


# ============================================================================
# Lifecycle Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestión del ciclo de vida de la aplicación"""
    logger.info("price_stream_service_starting")

    # A client placed on app.state before startup is used as-is
    client = getattr(app.state, "client", None) or create_streaming_client(settings)
    app.state.client = client
    await client.start()

    logger.info("price_stream_service_started", url=client.connection.url)

    try:
        yield
    finally:
        logger.info("price_stream_service_shutting_down")
        await client.stop()
        app.state.client = None
        logger.info("price_stream_service_stopped")


app = FastAPI(
    title="Price Stream",
    description="Real-time price streaming client for the dashboard",
    version="1.0.0",
    lifespan=lifespan
)


class SubscriptionRequest(BaseModel):
    symbols: List[str] = Field(..., description="Symbols to subscribe / unsubscribe")


def _get_client(request: Request) -> StreamingClient:
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return client


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    client = getattr(request.app.state, "client", None)
    status = client.status() if client else None
    return {
        "status": "healthy",
        "service": "price_stream",
        "timestamp": datetime.now().isoformat(),
        "ws_connected": status.is_connected if status else False,
        "ws_authenticated": status.is_authenticated if status else False,
    }


@app.get("/status")
async def get_status(request: Request):
    """Connection status for display (state, last error and its kind)"""
    return _get_client(request).status().model_dump(mode="json")


@app.get("/stats")
async def get_stats(request: Request):
    """Client counters"""
    return _get_client(request).get_stats()


@app.get("/subscriptions")
async def get_subscriptions(request: Request):
    """Currently desired symbols"""
    client = _get_client(request)
    symbols = sorted(client.subscribed_symbols)
    return {
        "subscribed_tickers": symbols,
        "count": len(symbols),
        "is_authenticated": client.is_authenticated,
    }


@app.post("/subscriptions")
async def add_subscriptions(request: Request, body: SubscriptionRequest):
    """Subscribe to symbols (already subscribed ones are ignored)"""
    client = _get_client(request)
    added = await client.subscribe(body.symbols)
    return {"added": added, "count": len(client.subscribed_symbols)}


@app.delete("/subscriptions")
async def remove_subscriptions(request: Request, body: SubscriptionRequest):
    """Unsubscribe from symbols (unknown ones are ignored)"""
    client = _get_client(request)
    removed = await client.unsubscribe(body.symbols)
    return {"removed": removed, "count": len(client.subscribed_symbols)}


@app.get("/prices")
async def get_prices(request: Request, symbols: Optional[str] = None):
    """Latest prices, for the comma-separated symbols or for everything cached"""
    client = _get_client(request)
    if symbols:
        return {"prices": client.get_prices(symbols.split(","))}
    return {"prices": client.prices}


@app.post("/reconnect")
async def force_reconnect(request: Request):
    """Reconnect now instead of waiting for the backoff timer"""
    started = await _get_client(request).reconnect()
    return {
        "status": "reconnect_started" if started else "skipped",
        "timestamp": datetime.now().isoformat(),
    }


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "services.price_stream.main:app",
        host=settings.price_stream_host,
        port=settings.price_stream_port,
        reload=False,
        log_config=None  # Usar nuestro logger personalizado
    )
