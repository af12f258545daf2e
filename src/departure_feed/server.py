"""server.py — HTTP surface for the feed.

Routes are an explicit table of (method, path, handler); middleware is
plain function composition around each handler. The FeedService lives
on the application and starts/stops with it.

GET /schedule negotiates on Accept:
  - application/json   → the retained history (point query)
  - text/event-stream  → live SSE stream, with catch-up when resuming
  - anything else      → 400

The catch-up token comes from the `last-known-id` query parameter, or
from the Last-Event-ID header an EventSource sends on reconnect.
"""

from __future__ import annotations

import functools
import json
from typing import Awaitable, Callable

import logfire
from aiohttp import web

from .events import encode_sse
from .service import FeedService, InvalidToken

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
Middleware = Callable[[Handler], Handler]

FEED_SERVICE = web.AppKey("feed_service", FeedService)

LAST_KNOWN_ID_PARAM = "last-known-id"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    # Stop nginx-style proxies from buffering the stream
    "X-Accel-Buffering": "no",
}

_dumps = functools.partial(json.dumps, default=str)


def _service(request: web.Request) -> FeedService:
    return request.app[FEED_SERVICE]


def _token(request: web.Request) -> str | None:
    """Catch-up token: query parameter first, then Last-Event-ID."""
    token = request.query.get(LAST_KNOWN_ID_PARAM)
    if token is None:
        token = request.headers.get("Last-Event-ID")
    return token


# -- Handlers -----------------------------------------------------------------


async def schedule(request: web.Request) -> web.StreamResponse:
    accept = request.headers.get("Accept", "")
    try:
        if "text/event-stream" in accept:
            return await _stream_schedule(request)
        if "application/json" in accept:
            return _schedule_json(request)
    except InvalidToken as e:
        return web.Response(status=400, text=str(e))
    return web.Response(status=400, text="Accept application/json or text/event-stream")


def _schedule_json(request: web.Request) -> web.Response:
    records = _service(request).catch_up(_token(request))
    return web.json_response([r.to_json() for r in records], dumps=_dumps)


async def _stream_schedule(request: web.Request) -> web.StreamResponse:
    # Opening first: a bad token is still a plain 400, not a broken stream
    session = _service(request).open_session(_token(request))
    logfire.info(
        "Stream opened from {remote}, resuming from {since}",
        remote=request.remote,
        since=session.since,
    )

    response = web.StreamResponse(headers=SSE_HEADERS)
    disconnected = False
    try:
        await response.prepare(request)
        async for event in session.events():
            await response.write(encode_sse(event))
    except ConnectionResetError:
        disconnected = True
    finally:
        session.close()

    logfire.info(
        "Stream closed for {remote} ({reason})",
        remote=request.remote,
        reason="client disconnected" if disconnected else "end of stream",
    )
    if not disconnected:
        try:
            await response.write_eof()
        except ConnectionResetError:
            pass  # Client left between the last event and the end
    return response


async def metrics(request: web.Request) -> web.Response:
    return web.json_response(_service(request).metrics(), dumps=_dumps)


async def health(request: web.Request) -> web.Response:
    return web.Response(text="ok")


# -- Middleware ---------------------------------------------------------------


def with_request_logging(handler: Handler) -> Handler:
    """Log each request; turn unexpected errors into a 500."""

    @functools.wraps(handler)
    async def logged(request: web.Request) -> web.StreamResponse:
        try:
            response = await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logfire.exception(
                "{method} {path} failed: {error}",
                method=request.method,
                path=request.path,
                error=str(e),
            )
            return web.Response(status=500, text=str(e))

        logfire.debug(
            "{method} {path} -> {status}",
            method=request.method,
            path=request.path,
            status=response.status,
        )
        return response

    return logged


def compose(handler: Handler, middleware: tuple[Middleware, ...]) -> Handler:
    """Wrap `handler` so the first middleware listed is the outermost."""
    for wrap in reversed(middleware):
        handler = wrap(handler)
    return handler


# -- Application --------------------------------------------------------------


ROUTES: list[tuple[str, str, Handler]] = [
    ("GET", "/schedule", schedule),
    ("GET", "/metrics", metrics),
    ("GET", "/health", health),
]

MIDDLEWARE: tuple[Middleware, ...] = (with_request_logging,)


async def _start_feed(app: web.Application) -> None:
    await app[FEED_SERVICE].start()


async def _stop_feed(app: web.Application) -> None:
    await app[FEED_SERVICE].stop()


def create_app(service: FeedService) -> web.Application:
    """Build the aiohttp application around an (unstarted) FeedService."""
    app = web.Application()
    app[FEED_SERVICE] = service
    for method, path, handler in ROUTES:
        app.router.add_route(method, path, compose(handler, MIDDLEWARE))

    app.on_startup.append(_start_feed)
    # on_shutdown runs while connections are still open: streams can end cleanly
    app.on_shutdown.append(_stop_feed)
    return app
