"""
envelopes.py - Uniform response wrapping

Every response from /generate-insight is one of two JSON shapes:
    {"ok": true,  "text": "...", "requestId": "..."}
    {"ok": false, "requestId": "...", "error": {"stage", "message", "status", ...}}
and carries the CORS headers the mobile client expects.
"""

import logging

from fastapi.responses import JSONResponse, Response

from .models import PipelineError

_logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def _headers(request_id: str) -> dict:
    return {**CORS_HEADERS, "X-Request-ID": request_id}


def ok_response(text: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content={"ok": True, "text": text, "requestId": request_id},
        headers=_headers(request_id),
    )


def error_response(error: PipelineError, request_id: str) -> JSONResponse:
    """Log the failure, then wrap it. Only stage, message, status and extras leave the server."""
    _logger.error(
        "requestId=%s stage=%s status=%d message=%s",
        request_id,
        error.stage.value,
        error.status,
        error.message,
    )
    return JSONResponse(
        status_code=error.status,
        content={"ok": False, "requestId": request_id, "error": error.to_payload()},
        headers=_headers(request_id),
    )


def preflight_response(request_id: str) -> Response:
    """CORS preflight: headers only, no body."""
    return Response(status_code=204, headers=_headers(request_id))
