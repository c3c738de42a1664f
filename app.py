import asyncio
import uuid
import httpx
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from typing import Iterable, List, Optional, Tuple
from config import AppConfig
from history_filter import normalize_request_body
from reasoning_filter import build_reasoning_filter
from sse import transform_sse_stream
from utils import format_json_for_log, request_id_ctx, write_debug_trace

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "proxy-connection",
}

# Dropped on the way up: httpx sets host/length itself, the credential is replaced
# and encoding is forced to identity so the stream can be rewritten line by line
REQUEST_DROP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "accept-encoding", "authorization"}
RESPONSE_DROP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}

EVENT_STREAM = "text/event-stream"
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def build_target_url(base: str, path: str, query: str) -> str:
    url = f"{base.rstrip('/')}/{path.lstrip('/')}"
    if query:
        url = f"{url}?{query}"
    return url


def filter_headers(headers: Iterable[Tuple[str, str]], drop: set) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in drop]


def relay_headers(response: Response, headers: Iterable[Tuple[str, str]]) -> Response:
    """Copy upstream headers onto the response, one entry per value"""
    for key, value in headers:
        response.headers.append(key, value)
    return response


def is_event_stream(content_type: str, strict: bool) -> bool:
    if strict:
        return content_type == EVENT_STREAM
    return EVENT_STREAM in content_type


def create_app(config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the proxy application around an explicit configuration"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage shared HTTP client"""
        app.state.config = config
        app.state.http_client = httpx.AsyncClient(
            timeout=config.timeout,
            transport=transport,
            follow_redirects=False
        )
        logger.info("Proxy ready, forwarding to %s", config.target_base_url)
        yield
        await app.state.http_client.aclose()

    app = FastAPI(title="DeepSeek Reasoning Proxy", lifespan=lifespan)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = uuid.uuid4().hex[:8]
        request.state.id = rid
        token = request_id_ctx.set(rid)
        try:
            logger.info("%s %s", request.method, request.url.path)
            response = await call_next(request)
            return response
        finally:
            request_id_ctx.reset(token)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(path: str, request: Request):
        cfg: AppConfig = request.app.state.config
        client: httpx.AsyncClient = request.app.state.http_client

        original_body = await request.body()
        body = normalize_request_body(original_body, cfg.reasoning_mode)
        if body is not original_body:
            logger.debug("Request messages normalized (%d -> %d bytes)", len(original_body), len(body))

        target_url = build_target_url(cfg.target_base_url, path, request.url.query)
        headers = filter_headers(request.headers.items(), REQUEST_DROP_HEADERS)
        headers.append(("Authorization", f"Bearer {cfg.api_key}"))
        headers.append(("Accept-Encoding", "identity"))

        upstream_request = client.build_request(request.method, target_url, headers=headers, content=body)
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            logger.warning("Upstream connection failed: %s (target=%s)", exc, target_url)
            return PlainTextResponse("Upstream connection failed", status_code=502)

        response_headers = filter_headers(upstream.headers.multi_items(), RESPONSE_DROP_HEADERS)
        content_type = upstream.headers.get("content-type", "")

        if upstream.status_code == 200 and is_event_stream(content_type, cfg.strict_content_type):
            reasoning_filter = build_reasoning_filter(cfg.reasoning_mode)

            async def relay():
                try:
                    async for chunk in transform_sse_stream(upstream.aiter_bytes(), reasoning_filter):
                        yield chunk
                finally:
                    await upstream.aclose()
                    logger.info("Stream finished")

            return relay_headers(StreamingResponse(relay(), status_code=upstream.status_code), response_headers)

        try:
            content = await upstream.aread()
        except httpx.HTTPError as exc:
            logger.warning("Failed to read upstream response: %s (target=%s)", exc, target_url)
            return PlainTextResponse("Upstream connection failed", status_code=502)
        finally:
            await upstream.aclose()

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Request body:\n%s", format_json_for_log(original_body))
            logger.debug("Response %s:\n%s", upstream.status_code, format_json_for_log(content))
        if cfg.debug_requests_dir:
            await asyncio.get_running_loop().run_in_executor(
                None,
                write_debug_trace,
                body,
                upstream.status_code,
                content,
                cfg.debug_requests_dir,
                request_id_ctx.get()
            )

        return relay_headers(Response(content=content, status_code=upstream.status_code), response_headers)

    return app
