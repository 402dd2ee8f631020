"""
gcp_clients.py - Google Cloud, Vertex AI and Redis helpers for the insight service

This module owns every connection the service makes to the outside world:
1. Firestore (user documents: password hash, subscription tier)
2. Redis (bearer tokens and daily quota counters)
3. Vertex AI Generative Models (the single insight generation call)

Main Features:
- Loads environment variables from a `.env` file on import.
- Exposes server configuration as module-level constants.
- `missing_config()` reports required settings that are not present.
- `vertex_generate()` performs exactly one bounded call to the model and
  returns the raw transport envelope; it never retries.

This module is **import-safe**: if the Vertex SDK is not installed the
service still starts, and model calls fail with `ModelCallError`.
"""

import os
import json
import logging
import asyncio
from typing import List, Optional

from dotenv import load_dotenv, find_dotenv
from google.cloud import firestore
import redis

# Optional Vertex AI imports
try:
    import vertexai
    from vertexai.generative_models import GenerativeModel
    _VERTEX_AVAILABLE = True
except ImportError:
    vertexai = None
    GenerativeModel = None
    _VERTEX_AVAILABLE = False

_logger = logging.getLogger(__name__)
_logger.addHandler(logging.NullHandler())

# .env is optional; real environment variables win
_env_path = find_dotenv()
if _env_path:
    load_dotenv(_env_path, override=False)
    _logger.debug("Loaded .env from %s", _env_path)


def _env_float(name: str, default: float, low: float, high: float) -> float:
    """Read a float setting and clamp it into [low, high]."""
    raw = os.environ.get(name)
    try:
        value = float(raw) if raw is not None else default
    except ValueError:
        _logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        value = default
    return min(max(value, low), high)


# --- Environment Configurations ---
GCP_PROJECT: Optional[str] = os.environ.get("GCP_PROJECT")
GCP_LOCATION: str = os.environ.get("GCP_LOCATION", "us-central1")
VERTEX_MODEL_NAME: Optional[str] = os.environ.get("VERTEX_MODEL_NAME")
REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379")

MODEL_TEMPERATURE: float = _env_float("MODEL_TEMPERATURE", 0.7, 0.0, 1.0)
MODEL_TIMEOUT_SECONDS: float = _env_float("MODEL_TIMEOUT_SECONDS", 20.0, 5.0, 30.0)
MODEL_MAX_OUTPUT_TOKENS: int = int(_env_float("MODEL_MAX_OUTPUT_TOKENS", 800, 64, 8192))

REQUIRED_SETTINGS = ("GCP_PROJECT", "VERTEX_MODEL_NAME")

_logger.debug(
    "GCP_PROJECT=%s, GCP_LOCATION=%s, VERTEX_MODEL_NAME_set=%s, timeout=%.1fs",
    GCP_PROJECT,
    GCP_LOCATION,
    bool(VERTEX_MODEL_NAME),
    MODEL_TIMEOUT_SECONDS,
)

# Set by init_vertex() after vertexai.init succeeds
_vertex_initialized = False


class ModelCallError(Exception):
    """The external model call failed, timed out, or returned nothing usable."""


def missing_config() -> List[str]:
    """Names of required settings that are unset in the environment."""
    return [name for name in REQUIRED_SETTINGS if not os.environ.get(name)]


def init_vertex() -> None:
    """
    Point the Vertex SDK at GCP_PROJECT / GCP_LOCATION once per process.
    A failure is logged and leaves the flag unset, so vertex_generate reports it per call.
    """
    global _vertex_initialized
    if _vertex_initialized or not _VERTEX_AVAILABLE:
        if not _VERTEX_AVAILABLE:
            _logger.debug("Vertex AI python package not available.")
        return

    try:
        _logger.info("Initializing Vertex AI: project=%s, location=%s", GCP_PROJECT, GCP_LOCATION)
        vertexai.init(project=GCP_PROJECT, location=GCP_LOCATION)
        _vertex_initialized = True
        _logger.info("Vertex AI initialized successfully")
    except Exception as e:
        _logger.exception("Vertex AI initialization failed: %s", e)
        _vertex_initialized = False


async def vertex_generate(
    prompt_text: str,
    model_name: Optional[str] = None,
    temperature: float = MODEL_TEMPERATURE,
    timeout: float = MODEL_TIMEOUT_SECONDS,
    max_output_tokens: int = MODEL_MAX_OUTPUT_TOKENS,
) -> str:
    """
    Run one generation against a Gemini model on Vertex AI.

    There is no retry loop: a second attempt under the same request id could
    consume quota twice and produce a different narrative. The call is
    bounded by `timeout` seconds via asyncio.wait_for.

    Returns:
        The model's transport envelope (candidates, parts, ...) as a JSON
        string. Interpreting it is the extractor's job.

    Raises:
        ModelCallError: on any failure, including timeout and safety blocks.
    """
    if not _VERTEX_AVAILABLE:
        raise ModelCallError("Vertex AI SDK is not installed")

    model_to_use = model_name or VERTEX_MODEL_NAME
    if not model_to_use:
        raise ModelCallError("No Vertex model configured")

    init_vertex()
    if not _vertex_initialized:
        raise ModelCallError("Vertex AI is not initialized")

    model = GenerativeModel(model_to_use)
    generation_config = {
        "temperature": min(max(temperature, 0.0), 1.0),
        "max_output_tokens": max_output_tokens,
    }

    try:
        response = await asyncio.wait_for(
            model.generate_content_async(prompt_text, generation_config=generation_config),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        _logger.warning("Vertex AI call timed out after %.1fs", timeout)
        raise ModelCallError(f"Model call timed out after {timeout:.0f}s")
    except Exception as e:
        _logger.warning("Vertex AI generation failed: %s", e)
        raise ModelCallError(f"Model call failed: {e}") from e

    if not response.candidates:
        _logger.warning("Vertex AI response was blocked. Prompt Feedback: %s", response.prompt_feedback)
        raise ModelCallError("Model returned no candidates")

    return json.dumps(response.to_dict())


def get_firestore_client() -> Optional[firestore.Client]:
    """
    Firestore client for the user collection.

    Returns:
        The client, or None when credentials or the project are unusable.
    """
    try:
        _logger.debug("Initializing Firestore client for project: %s", GCP_PROJECT)
        return firestore.Client(project=GCP_PROJECT)
    except Exception as e:
        _logger.exception("Firestore client initialization failed: %s", e)
        return None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Connect to Redis and verify the connection with a ping.

    Returns None when Redis is unreachable; callers treat that as a store
    failure at the stage that needed it.
    """
    try:
        client = redis.from_url(REDIS_URL, decode_responses=True)
        client.ping()
        _logger.info("Connected to Redis at %s", REDIS_URL)
        return client
    except redis.exceptions.ConnectionError as e:
        _logger.error("Could not connect to Redis at %s: %s", REDIS_URL, e)
        return None


_shared_redis: Optional[redis.Redis] = None


def shared_redis_client() -> Optional[redis.Redis]:
    """Process-wide Redis client, connected on first use."""
    global _shared_redis
    if _shared_redis is None:
        _shared_redis = get_redis_client()
    return _shared_redis
