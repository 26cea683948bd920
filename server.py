"""
Authorization Gateway Server

Starlette application exposing the gateway's HTTP surface:

  GET  /authorize   - authorization request (consent dialog or upstream redirect)
  POST /authorize   - consent form submission
  GET  /callback    - upstream provider callback (path set by CALLBACK_PATH)
  GET  /            - health check

RUNNING
=======

    uvicorn server:create_app --factory --host 0.0.0.0 --port 8080

or `python server.py`. The downstream completion sink is loaded from
GATEWAY_COMPLETION_SINK ("module:attribute"; a class or zero-argument
factory returning an object with complete_authorization()).

ENVIRONMENT VARIABLES REFERENCE
===============================

Required:
  COOKIE_ENCRYPTION_KEY     - Secret for cookie encryption
  UPSTREAM_CLIENT_ID        - OAuth client ID at the upstream provider
  UPSTREAM_CLIENT_SECRET    - OAuth client secret at the upstream provider
  GATEWAY_COMPLETION_SINK   - Downstream hand-off ("module:attribute")

Optional:
  GATEWAY_SERVER_URL        - Public base URL (default: http://localhost:8080)
  REDIS_URL                 - Shared state storage (default: in-memory, single instance)
  UPSTREAM_AUTHORIZE_URL, UPSTREAM_TOKEN_URL, UPSTREAM_USERINFO_URL, UPSTREAM_SCOPES
  STATE_TTL, CSRF_TTL, APPROVAL_TTL, CALLBACK_PATH
  GATEWAY_NAME, GATEWAY_DESCRIPTION, GATEWAY_LOGO_URL, GATEWAY_CLIENTS
  LOG_LEVEL                 - Root log level (default: INFO)
  AUDIT_LOG_ENABLED, AUDIT_LOG_LEVEL, AUDIT_LOG_INCLUDE_LOW
"""

import importlib
import logging
import os
import sys
from typing import Callable, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from collaborators import CompletionSink
from gateway_config import GatewayConfig
from gateway_endpoints import GatewayEndpoints, GatewayResponse
from gateway_errors import GatewayError


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr
    )


def get_client_ip(request: Request) -> str:
    """
    Extract client IP from request.

    Checks X-Forwarded-For header first (for reverse proxy scenarios),
    falls back to direct client IP.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def to_starlette_response(result: GatewayResponse) -> Response:
    if result.location:
        response = RedirectResponse(url=result.location, status_code=result.status_code)
    else:
        response = Response(content=result.body, status_code=result.status_code, media_type=result.media_type)
    for cookie in result.cookies:
        cookie.apply(response)
    # Consent pages and redirects carry per-request secrets
    response.headers["Cache-Control"] = "no-store"
    return response


def error_response(error: GatewayError) -> JSONResponse:
    response = JSONResponse(error.to_dict(), status_code=error.status_code, headers={"Cache-Control": "no-store"})
    for cookie in error.cookies:
        cookie.apply(response)
    return response


def load_completion_sink(target: Optional[str] = None) -> CompletionSink:
    """
    Import the completion sink named by `target` or GATEWAY_COMPLETION_SINK.

    Raises:
        ValueError: If no sink is configured or the target is malformed
    """
    target = target or os.getenv("GATEWAY_COMPLETION_SINK")
    if not target or ":" not in target:
        raise ValueError("GATEWAY_COMPLETION_SINK must be set to 'module:attribute'")

    module_name, attr = target.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    if isinstance(factory, type) or not hasattr(factory, "complete_authorization"):
        sink = factory()
    else:
        sink = factory
    logging.info(f"Loaded completion sink {target}")
    return sink


def _endpoint(handler: Callable[..., GatewayResponse], name: str, use_form: bool = False):
    async def endpoint(request: Request) -> Response:
        try:
            if use_form:
                params = dict(await request.form())
            else:
                params = dict(request.query_params)
            result = await run_in_threadpool(
                handler,
                params,
                request.cookies,
                get_client_ip(request),
                request.headers.get("User-Agent")
            )
            return to_starlette_response(result)
        except GatewayError as e:
            if e.status_code >= 500:
                logging.error(f"{name} failed: {e}")
            else:
                logging.info(f"{name} rejected: {e}")
            return error_response(e)
        except Exception as e:
            # SECURITY: details stay in the server log
            logging.exception(f"{name} error: {e}")
            return JSONResponse(
                {"error": "server_error", "error_description": "Internal server error"},
                status_code=500
            )

    endpoint.__name__ = name
    return endpoint


def create_app(
    config: Optional[GatewayConfig] = None,
    completion_sink: Optional[CompletionSink] = None,
    endpoints: Optional[GatewayEndpoints] = None
) -> Starlette:
    """
    Build the gateway Starlette application.

    With no arguments, configuration and the completion sink are read from
    the environment.
    """
    if endpoints is None:
        if config is None:
            configure_logging()
            config = GatewayConfig.from_env()
        endpoints = GatewayEndpoints(config, completion_sink or load_completion_sink())
    config = endpoints.config

    async def health(request: Request) -> JSONResponse:
        backend_ok = await run_in_threadpool(endpoints.state_store.backend.ping)
        return JSONResponse(
            {"status": "ok" if backend_ok else "degraded", "state_backend": backend_ok},
            status_code=200 if backend_ok else 503
        )

    routes = [
        Route("/", health, methods=["GET"]),
        Route("/authorize", _endpoint(endpoints.handle_authorize, "authorize"), methods=["GET"]),
        Route(
            "/authorize",
            _endpoint(endpoints.handle_authorize_submit, "authorize_submit", use_form=True),
            methods=["POST"]
        ),
        Route(config.callback_route, _endpoint(endpoints.handle_callback, "callback"), methods=["GET"]),
    ]

    app = Starlette(routes=routes)
    app.state.endpoints = endpoints
    logging.info(f"Gateway routes registered (callback: {config.callback_route})")
    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080"))
    )
