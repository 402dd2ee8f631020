"""
main.py - FastAPI application entrypoint for the Obsy insight service

Purpose:
- Exposes the insight and observed-pattern generation endpoints used by the
  mobile client, plus account endpoints (signup/login) and a health check.
- Orchestrates the pipeline:
    auth -> quota check -> parse/validate -> chronology -> tone + prompt
    -> Vertex AI -> extract -> sanitize -> validate -> quota commit

Design/behavioral notes:
- Redis holds bearer tokens and daily quota counters.
- Firestore holds user documents (password hash, subscription tier).
- Each request is independent; the only shared state is read-only tables
  (tone presets, tier limits) and the connection clients.
- CORS preflight is answered before any configuration, auth or quota work.
"""

import os
import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request

from .auth import TokenAuthenticator
from .envelopes import preflight_response
from .gcp_clients import (
    VERTEX_MODEL_NAME,
    get_firestore_client,
    init_vertex,
    shared_redis_client,
    vertex_generate,
)
from .pipeline import OBSERVED_PATTERNS, InsightPipeline
from .quota import QuotaLedger
from . import auth

# Configure logging (configurable via LOG_LEVEL env var)
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
_logger = logging.getLogger(__name__)

app = FastAPI(title="Obsy Insight Service")
app.include_router(auth.router)

INSIGHT_PATH = "/generate-insight"
OBSERVED_PATTERNS_PATH = "/generate-observed-patterns"

_firestore_client = None


def _shared_firestore_client():
    global _firestore_client
    if _firestore_client is None:
        _firestore_client = get_firestore_client()
    return _firestore_client


def get_pipeline() -> InsightPipeline:
    """
    Build the pipeline from the process-wide clients.
    Overridden in tests through app.dependency_overrides.
    """
    redis_client = shared_redis_client()
    return InsightPipeline(
        authenticator=TokenAuthenticator(redis_client),
        ledger=QuotaLedger(redis_client, _shared_firestore_client()),
        generate=vertex_generate,
    )


@app.on_event("startup")
async def startup_event():
    """Log startup and initialize Vertex AI (best-effort)."""
    _logger.info("Obsy insight service starting up")
    try:
        init_vertex()
    except Exception as e:
        _logger.warning("Vertex init failed or unavailable: %s", e)


@app.options(INSIGHT_PATH)
async def generate_insight_preflight():
    """CORS preflight. No auth, no quota, no body."""
    return preflight_response(str(uuid.uuid4()))


@app.post(INSIGHT_PATH)
async def generate_insight(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    pipeline: InsightPipeline = Depends(get_pipeline),
):
    """
    Generate one insight.

    The body is read raw so malformed JSON is reported as stage `parse`
    inside the envelope instead of a framework 422.
    """
    request_id = str(uuid.uuid4())
    _logger.info("requestId=%s %s %s", request_id, request.method, request.url.path)
    raw_body = await request.body()
    return await pipeline.run(authorization, raw_body, request_id)


@app.options(OBSERVED_PATTERNS_PATH)
async def observed_patterns_preflight():
    return preflight_response(str(uuid.uuid4()))


@app.post(OBSERVED_PATTERNS_PATH)
async def generate_observed_patterns(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    pipeline: InsightPipeline = Depends(get_pipeline),
):
    """
    Generate a lifelong pattern reflection from every eligible capture.
    Same auth, quota and envelope contract as /generate-insight.
    """
    request_id = str(uuid.uuid4())
    _logger.info("requestId=%s %s %s", request_id, request.method, request.url.path)
    raw_body = await request.body()
    return await pipeline.run(authorization, raw_body, request_id, kind=OBSERVED_PATTERNS)


@app.get("/health")
async def health_check():
    """Report Redis reachability and whether a Vertex model is configured."""
    redis_client = shared_redis_client()
    redis_ok = False
    if redis_client:
        try:
            redis_ok = bool(redis_client.ping())
        except Exception as e:
            _logger.warning("Health check Redis ping failed: %s", e)
    return {
        "status": "healthy" if redis_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "redis_available": redis_ok,
        "vertex_available": bool(VERTEX_MODEL_NAME),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("obsy_insights.main:app", host="0.0.0.0", port=port)
