"""
REST API for sentiment ingestion and engine inspection.

Contract:
- POST /webhook/sentiment is the only write endpoint: it feeds the
  sentiment aggregator and never places orders directly.
- Everything else is read-only (GET).
- Avoid leaking sensitive data (api keys, secrets, tokens).

Errors use one envelope: {"success": false, "error": {...}}
- 422: malformed payload
- 404: unknown symbol / portfolio
"""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from analysis.sentiment_aggregator import SentimentObservation
from core.errors import ValidationError
from monitoring.logger import scrub_secrets


class SentimentPayload(BaseModel):
    """Body of POST /webhook/sentiment."""
    symbol: str = Field(..., min_length=1)
    sentiment: float = Field(..., ge=-1.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: str = Field(..., min_length=1)
    text: Optional[str] = None
    url: Optional[str] = None
    timestamp: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _error(status_code: int, message: str, **details) -> JSONResponse:
    return JSONResponse(status_code=status_code,
                        content={"success": False, "error": {"message": message, **details}})


def create_app(engine, logger_manager=None) -> FastAPI:
    """
    Build the API around a TradingEngine.

    Args:
        engine: TradingEngine whose components are exposed
        logger_manager: Optional LoggerManager backing /events/recent
    """
    app = FastAPI(title="Trading Engine API", version="0.1.0")

    @app.exception_handler(RequestValidationError)
    async def _malformed(request: Request, exc: RequestValidationError):
        reasons = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return _error(422, "Malformed request", reasons=reasons)

    @app.post("/webhook/sentiment")
    async def sentiment_webhook(payload: SentimentPayload):
        """Receive one sentiment observation for a tracked symbol."""
        observation = SentimentObservation(
            symbol=payload.symbol,
            source=payload.source,
            sentiment=payload.sentiment,
            confidence=payload.confidence,
            timestamp=payload.timestamp or time.time(),
            text=payload.text,
            url=payload.url,
            metadata=payload.metadata,
        )
        try:
            result = engine.sentiment.ingest(observation)
        except ValidationError as e:
            return _error(422, str(e), reasons=e.reasons)
        if not result.accepted:
            return _error(404, result.message, symbol=result.symbol)
        return {"success": True, **result.to_dict()}

    @app.get("/health")
    async def health():
        status = engine.status()
        return {
            "ok": True,
            "running": status["running"],
            "uptime": status["uptime"],
            "time": time.time(),
            "circuit_breaker": status["orders"]["circuit_breaker"]["state"],
        }

    @app.get("/portfolios")
    async def list_portfolios():
        return [engine.portfolios.portfolio_view(p.id) for p in engine.portfolios.list_portfolios()]

    @app.get("/portfolios/{portfolio_id}/decisions")
    async def portfolio_decisions(portfolio_id: str, symbol: Optional[str] = None,
                                  limit: int = Query(50, ge=1, le=1000)):
        if engine.portfolios.get_portfolio(portfolio_id) is None:
            return _error(404, f"Portfolio not found: {portfolio_id}")
        decisions = engine.decisions.get_decisions(portfolio_id, symbol, limit)
        return [d.to_dict() for d in decisions]

    @app.get("/analysis/{symbol:path}")
    async def symbol_analysis(symbol: str):
        technical = engine.technical.get_latest(symbol)
        sentiment = engine.sentiment.get_latest(symbol)
        if technical is None and sentiment is None and not engine.sentiment.is_tracked(symbol):
            return _error(404, f"No analysis for {symbol}", symbol=symbol)
        return {
            "symbol": symbol,
            "technical": technical.to_dict() if technical else None,
            "sentiment": sentiment.to_dict() if sentiment else engine.sentiment.neutral(symbol).to_dict(),
            "sentiment_trend": engine.sentiment.get_trend(symbol),
        }

    @app.get("/orders/active")
    async def active_orders(portfolio_id: Optional[str] = None, symbol: Optional[str] = None):
        return [o.to_dict() for o in engine.order_manager.get_active_orders(portfolio_id, symbol)]

    @app.get("/events/recent")
    async def recent_events(limit: int = Query(50, ge=1, le=500)):
        if logger_manager is not None:
            return scrub_secrets(logger_manager.get_recent(limit))
        if engine.event_bus is None:
            return []
        return scrub_secrets([e.to_dict() for e in engine.event_bus.get_recent(limit)])

    return app


async def serve(app: FastAPI, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the API on the current event loop (alongside the engine)."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    await server.serve()


def run_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the API standalone (blocking)."""
    uvicorn.run(app, host=host, port=port, log_level="info")
