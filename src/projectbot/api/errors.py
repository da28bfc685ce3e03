from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..domain.errors import ProjectBotError

LOG = logging.getLogger("projectbot.api")

STATUS_BY_KIND = {
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "validation_conflict": 409,
    "cancelled": 499,
    "emergency_path_exhausted": 500,
    "upstream_unavailable": 502,
    "infrastructure_failure": 503,
}

# Kinds whose message is safe to show any caller.
_PUBLIC_KINDS = {"unauthorized", "forbidden", "not_found", "validation_conflict", "upstream_unavailable", "cancelled"}


def expose_error_detail(request: Request) -> None:
    """Route dependency: let errors on this route carry cause and mutation diagnostics."""

    request.state.expose_error_detail = True


def error_response(request: Request, exc: ProjectBotError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    detailed = bool(getattr(request.state, "expose_error_detail", False))
    if detailed:
        body = exc.to_dict(include_cause=True)
        if exc.diagnostic:
            body["diagnostic"] = exc.diagnostic
    elif exc.kind in _PUBLIC_KINDS:
        body = exc.to_dict(include_cause=False)
    else:
        body = {"kind": "error", "detail": "Request failed"}
    if status_code >= 500:
        LOG.warning("request_failed", extra={"path": request.url.path, "kind": exc.kind, "cause": exc.cause})
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProjectBotError)
    async def _handle_domain_error(request: Request, exc: ProjectBotError) -> JSONResponse:
        return error_response(request, exc)
