from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .config import get_settings
from .errors import AgentError
from .watcher import AlertDiagnostic, AlertEvent, LogWatcher


logger = logging.getLogger("logwatch")

_watcher: Optional[LogWatcher] = None


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": {"request_id": request_id},
    }
    return status_code, body


def _error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


def log_alert(event: AlertEvent) -> None:
    """Default alert: write the formatted diagnostic to the service log."""
    if event.diagnostic.raw.status == "normal":
        logger.info("alert watcher=%s\n%s", event.watcher, event.diagnostic.formatted)
    else:
        logger.warning("alert watcher=%s\n%s", event.watcher, event.diagnostic.formatted)


def get_watcher() -> LogWatcher:
    """The process-wide watcher, created from settings on first use."""
    global _watcher
    if _watcher is None:
        _watcher = LogWatcher.from_settings(alert=log_alert)
    return _watcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start periodic polling; stop it and release the transport on shutdown."""
    watcher = get_watcher()
    watcher.start()
    logger.info("watcher=%s polling every %sms", watcher.name, watcher.poll_delay_ms)
    yield
    await watcher.aclose()


app = FastAPI(title="Logwatch", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class FeedLogsRequest(BaseModel):
    lines: Optional[List[str]] = None
    text: Optional[str] = None


def _diagnostic_payload(diagnostic: AlertDiagnostic) -> Dict[str, Any]:
    return {
        "status": diagnostic.raw.status,
        "top_errors": diagnostic.raw.top_errors or [],
        "formatted": diagnostic.formatted,
    }


@app.get("/health")
async def health(watcher: LogWatcher = Depends(get_watcher)) -> JSONResponse:
    payload = {
        "status": "ok",
        "watcher": watcher.name,
        "polling": watcher.polling,
        "pending_lines": watcher.pending_lines,
    }
    return JSONResponse(status_code=200, content=payload)


@app.post("/logs")
async def feed_logs(request: Request, watcher: LogWatcher = Depends(get_watcher)) -> JSONResponse:
    """
    Queue log lines for the next polling cycle.

    Body: {"lines": ["..."]} or {"text": "line\\nline"}.
    """
    try:
        raw = await request.json()
    except ValueError:
        return _error_response(400, "INVALID_JSON", "Request body must be valid JSON")

    try:
        body = FeedLogsRequest.model_validate(raw)
    except ValidationError as exc:
        details = [{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()]
        return _error_response(422, "VALIDATION_ERROR", "Invalid request body", details)

    if body.lines is None and body.text is None:
        return _error_response(422, "VALIDATION_ERROR", "Provide either 'lines' or 'text'")

    accepted = 0
    if body.lines is not None:
        accepted += watcher.feed_log(body.lines)
    if body.text is not None:
        accepted += watcher.feed_log(body.text)
    return JSONResponse(status_code=200, content={"accepted": accepted, "pending_lines": watcher.pending_lines})


@app.post("/poll")
async def poll(watcher: LogWatcher = Depends(get_watcher)) -> JSONResponse:
    """Run one polling cycle now."""
    try:
        diagnostic = await watcher.poll()
    except httpx.HTTPError as exc:
        logger.warning("watcher=%s provider error: %s", watcher.name, exc)
        return _error_response(502, "PROVIDER_ERROR", str(exc))
    except AgentError as exc:
        logger.warning("watcher=%s agent error: %s", watcher.name, exc)
        return _error_response(500, "AGENT_ERROR", str(exc), getattr(exc, "details", None))

    content = {
        "diagnostic": _diagnostic_payload(diagnostic) if diagnostic else None,
        "last_polling_index": watcher.last_polling_index,
    }
    return JSONResponse(status_code=200, content=content)


@app.get("/diagnostic")
async def last_diagnostic(watcher: LogWatcher = Depends(get_watcher)) -> JSONResponse:
    diagnostic = watcher.last_diagnostic
    if diagnostic is None:
        return _error_response(404, "NOT_FOUND", "No diagnostic has been produced yet")
    return JSONResponse(status_code=200, content=_diagnostic_payload(diagnostic))
