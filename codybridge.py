#!/usr/bin/env python3
"""
Cody Bridge

An OpenAI-style front for the Sourcegraph Cody LLM API. Clients talk to the
familiar model listing and chat completion endpoints; the bridge reshapes each
request for Cody, calls it once, and reshapes the answer (or relays the event
stream) back:

    GET  /v1/models            →  GET  {endpoint}/.api/llm/models
    POST /chat/completions     →  POST {endpoint}/.api/llm/chat/completions
    POST /v1/chat/completions  →  (same as above)

Usage:
    CODY_ENDPOINT=https://sourcegraph.example.com CODY_ACCESS_TOKEN=sgp_... codybridge
"""

import argparse
import asyncio
import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable
from typing import Any, TypeVar

import httpx
from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from adapters import to_client_models, to_client_response, to_upstream_request
from errors import StreamInterrupted, UpstreamRejected, to_client_error
from relay import EVENT_STREAM_HEADERS, relay_event_stream
from schemas import ChatRequest
from upstream import UpstreamClient

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MODELS_ERROR_MESSAGE = "Internal server error."
CHAT_ERROR_MESSAGE = "Internal server error processing chat completion"

# Non-standard status (nginx) for a request whose client went away
CLIENT_CLOSED_REQUEST = 499

DISCONNECT_POLL_INTERVAL = 0.5

T = TypeVar("T")

# =============================================================================
# Configuration
# =============================================================================


class BridgeConfig(BaseSettings):
    """Bridge configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (CODY_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)

    The value is frozen; CLI overrides produce a new copy.
    """

    model_config = SettingsConfigDict(
        env_prefix="CODY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Upstream settings
    endpoint: str = Field(
        default="https://sourcegraph.com",
        description="Sourcegraph instance URL",
    )
    access_token: str = Field(
        default="",
        description="Sourcegraph access token",
    )
    auth_scheme: str = Field(
        default="token",
        description="Authorization scheme placed before the access token",
    )
    api_path: str = Field(
        default="/.api/llm",
        description="Path of the LLM API below the endpoint",
    )
    client_name: str = Field(
        default="codybridge 1.0",
        description="Value of the X-Requested-With header sent upstream",
    )
    request_timeout: float = Field(
        default=120.0,
        description="Timeout for non-streaming upstream calls in seconds",
    )
    stream_timeout: float = Field(
        default=300.0,
        description="Max seconds to wait between two upstream stream chunks",
    )

    # Server settings
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )
    port: int = Field(
        default=5000,
        description="Port to listen on",
    )

    # Logging settings
    log_enabled: bool = Field(
        default=True,
        description="Enable logging",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug logging (every relayed event)",
    )

    # CORS settings
    cors_enabled: bool = Field(
        default=False,
        description="Enable CORS",
    )
    cors_origins: list[str] | None = Field(
        default=None,
        description="Allowed CORS origins (None = allow all '*')",
    )

    @field_validator("endpoint")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def api_base(self) -> str:
        """Base URL the upstream endpoint paths are resolved against."""
        path = self.api_path.strip("/")
        return f"{self.endpoint}/{path}" if path else self.endpoint


def load_config() -> BridgeConfig:
    """Load configuration from environment variables and .env file."""
    return BridgeConfig()


def configure_logging(config: BridgeConfig) -> None:
    """Apply the logging switches from the configuration."""
    logging.getLogger().setLevel(logging.DEBUG if config.debug else logging.INFO)
    logging.disable(logging.NOTSET if config.log_enabled else logging.CRITICAL)


# =============================================================================
# Request Helpers
# =============================================================================


class ClientDisconnected(Exception):
    """The client closed its connection before the upstream answered."""


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


async def run_until_disconnected(
    request: Request,
    awaitable: Awaitable[T],
    poll_interval: float = DISCONNECT_POLL_INTERVAL,
) -> T:
    """
    Await an upstream call, abandoning it if the client disconnects.

    The call runs as a task; while it is pending the client connection is
    checked every ``poll_interval`` seconds. On disconnect the task is
    cancelled and ClientDisconnected is raised.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


def log_failure(log_prefix: str, operation: str, error: Exception) -> None:
    """Log a failed request with enough context to diagnose it."""
    if isinstance(error, UpstreamRejected):
        logger.warning(
            f"{log_prefix}{operation} => upstream rejected with "
            f"{error.status_code}: {error.text[:500]}"
        )
    else:
        logger.error(f"{log_prefix}{operation} => {type(error).__name__}: {error}", exc_info=error)


def get_config(request: Request) -> BridgeConfig:
    return request.app.state.config


def open_upstream(request: Request, log_prefix: str) -> UpstreamClient:
    return UpstreamClient(
        get_config(request),
        transport=request.app.state.transport,
        log_prefix=log_prefix,
    )


# =============================================================================
# Streaming
# =============================================================================


async def stream_chat_completion(
    request: Request, payload: dict[str, Any], log_prefix: str
) -> StreamingResponse:
    """
    Open the upstream stream and hand it to the relay.

    Nothing is sent to the client until the upstream accepted the request, so
    a rejection still reaches the client as a plain status and body.
    """
    upstream = open_upstream(request, log_prefix)
    try:
        upstream_response = await run_until_disconnected(
            request, upstream.open_chat_stream(payload)
        )
    except BaseException:
        await upstream.aclose()
        raise

    async def event_stream() -> AsyncGenerator[str, None]:
        try:
            async for event in relay_event_stream(
                upstream.iter_stream(upstream_response),
                is_disconnected=request.is_disconnected,
                log_prefix=log_prefix,
            ):
                yield event
        except StreamInterrupted as e:
            # Headers are out already; ending the body is all that is left
            logger.warning(f"{log_prefix}Stream interrupted: {e}")
        finally:
            await upstream_response.aclose()
            await upstream.aclose()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=EVENT_STREAM_HEADERS,
    )


# =============================================================================
# API Endpoints
# =============================================================================

router = APIRouter()


@router.get("/v1/models", response_model=None)
async def list_models(request: Request) -> Response:
    """List upstream models in the client catalog shape."""
    log_prefix = f"[{new_request_id()}] "
    logger.info(f"{log_prefix}GET /v1/models")

    try:
        async with open_upstream(request, log_prefix) as upstream:
            catalog = await run_until_disconnected(request, upstream.list_models())
        models = to_client_models(catalog)
    except ClientDisconnected:
        logger.info(f"{log_prefix}Client disconnected, upstream call abandoned")
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except Exception as e:
        log_failure(log_prefix, "GET /v1/models", e)
        return to_client_error(e, MODELS_ERROR_MESSAGE)

    logger.info(f"{log_prefix}GET /v1/models => {len(models.data)} model(s)")
    return JSONResponse(models.model_dump(mode="json"))


@router.post("/chat/completions", response_model=None)
@router.post("/v1/chat/completions", response_model=None)
async def chat_completions(chat_request: ChatRequest, request: Request) -> Response:
    """Chat completion, streamed or not depending on the request's stream flag."""
    log_prefix = f"[{new_request_id()}] "
    logger.info(
        f"{log_prefix}POST {request.url.path}: model={chat_request.model}, "
        f"messages={len(chat_request.messages)}, streaming={chat_request.stream}"
    )
    payload = to_upstream_request(chat_request).to_payload()

    try:
        if chat_request.stream:
            return await stream_chat_completion(request, payload, log_prefix)

        async with open_upstream(request, log_prefix) as upstream:
            data = await run_until_disconnected(
                request, upstream.create_chat_completion(payload)
            )
        result = to_client_response(data)
    except ClientDisconnected:
        logger.info(f"{log_prefix}Client disconnected, upstream call abandoned")
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except Exception as e:
        log_failure(log_prefix, f"POST {request.url.path}", e)
        return to_client_error(e, CHAT_ERROR_MESSAGE)

    logger.info(
        f"{log_prefix}Request complete: id={result.id}, choices={len(result.choices)}"
    )
    return JSONResponse(result.model_dump(mode="json"))


@router.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """Health check (does not contact the upstream)."""
    return {"status": "ok", "upstream": get_config(request).endpoint}


# =============================================================================
# Application
# =============================================================================


def create_app(
    config: BridgeConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the bridge application.

    Args:
        config: Bridge configuration; loaded from the environment when omitted
        transport: Optional httpx transport for upstream calls (tests)
    """
    if config is None:
        config = load_config()
    configure_logging(config)

    app = FastAPI(title="Cody Bridge")
    app.state.config = config
    app.state.transport = transport

    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins or ["*"],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(router)
    return app


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def parse_overrides(argv: list[str] | None = None) -> dict[str, Any]:
    """Parse CLI arguments into config overrides (only explicitly given ones)."""
    parser = argparse.ArgumentParser(
        description="OpenAI-style proxy for the Sourcegraph Cody LLM API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (CODY_*)
  3. .env file in working directory
  4. Default values

Other Environment Variables:
  CODY_ACCESS_TOKEN     Sourcegraph access token (required)
  CODY_AUTH_SCHEME      Authorization scheme (default: token)
  CODY_API_PATH         LLM API path (default: /.api/llm)
  CODY_CLIENT_NAME      X-Requested-With header value
  CODY_REQUEST_TIMEOUT  Non-streaming timeout in seconds
  CODY_STREAM_TIMEOUT   Streaming read timeout in seconds
""",
    )
    parser.add_argument(
        "--endpoint",
        "-e",
        default=None,
        help=_env_help("CODY_ENDPOINT", "Sourcegraph instance URL", "https://sourcegraph.com"),
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        default=None,
        help=_env_help("CODY_PORT", "Port to listen on", "5000"),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("CODY_HOST", "Host to bind to", "0.0.0.0"),
    )
    parser.add_argument(
        "--no-log",
        action="store_true",
        help="Disable logging [env: CODY_LOG_ENABLED=false]",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging [env: CODY_DEBUG=true]",
    )
    parser.add_argument(
        "--cors",
        action="store_true",
        help="Enable CORS [env: CODY_CORS_ENABLED=true]",
    )
    parser.add_argument(
        "--cors-origins",
        type=str,
        default=None,
        help="Comma-separated allowed origins (default: * if --cors enabled) "
        "[env: CODY_CORS_ORIGINS as JSON array]",
    )

    args = parser.parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.endpoint is not None:
        overrides["endpoint"] = args.endpoint.rstrip("/")
    if args.port is not None:
        overrides["port"] = args.port
    if args.host is not None:
        overrides["host"] = args.host
    if args.no_log:
        overrides["log_enabled"] = False
    if args.debug:
        overrides["debug"] = True
    if args.cors or args.cors_origins:
        overrides["cors_enabled"] = True
    if args.cors_origins:
        overrides["cors_origins"] = [o.strip() for o in args.cors_origins.split(",")]
    return overrides


def main(argv: list[str] | None = None) -> None:
    config = load_config().model_copy(update=parse_overrides(argv))
    app = create_app(config)

    logger.info("Starting Cody Bridge")
    logger.info(f"  Upstream: {config.api_base}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    if not config.access_token:
        logger.warning("  No access token set (CODY_ACCESS_TOKEN); upstream calls will be anonymous")
    if config.cors_enabled:
        origins_display = ", ".join(config.cors_origins) if config.cors_origins else "*"
        logger.info(f"  CORS origins: {origins_display}")

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
