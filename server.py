#!/usr/bin/env python3
"""
Read API for the tracked posts.

Routes:

- ``GET /latest``          newest post, total count and last poll time
- ``GET /history/hourly``  post counts per UTC hour
- ``GET /posts``           the full normalized set

``/latest`` and ``/history/hourly`` seed an empty store with an out-of-band
poll (rate limited by the scheduler); ``/posts`` only reads what is stored.
"""

from typing import Optional

from aiohttp import ClientSession, web

from config import config, get_logger
from errors import PersistenceError
from scheduler import PollScheduler, create_scheduler
from store import PostStore, hourly, latest
from telemetry import init_telemetry

logger = get_logger("server")
init_telemetry("post-tracker-server")

STORE_KEY = web.AppKey("store", PostStore)
SCHEDULER_KEY = web.AppKey("scheduler", PollScheduler)
START_POLLING_KEY = web.AppKey("start_polling", bool)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
    response.headers.update(CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except PersistenceError as e:
        logger.error(f"{request.method} {request.path} failed reading posts: {e}")
        return web.json_response({"error": "Posts are unavailable"}, status=500)


async def handle_latest(request: web.Request) -> web.Response:
    scheduler = request.app[SCHEDULER_KEY]
    posts = await scheduler.ensure_seeded()
    newest = latest(posts)
    return web.json_response({
        "latest": newest.to_dict() if newest else None,
        "totalPosts": len(posts),
        "polledAt": scheduler.last_poll_at,
    })


async def handle_hourly(request: web.Request) -> web.Response:
    posts = await request.app[SCHEDULER_KEY].ensure_seeded()
    return web.json_response({"hours": [bucket.to_dict() for bucket in hourly(posts)]})


async def handle_posts(request: web.Request) -> web.Response:
    posts = await request.app[STORE_KEY].all()
    return web.json_response({"posts": [post.to_dict() for post in posts]})


async def _polling_ctx(app: web.Application):
    """Own the upstream ClientSession and the background poller for the app lifetime."""
    scheduler = app[SCHEDULER_KEY]
    session: Optional[ClientSession] = None
    if scheduler.session is None:
        session = ClientSession()
        scheduler.session = session
    if app[START_POLLING_KEY]:
        scheduler.start()
    yield
    await scheduler.stop()
    if session is not None:
        await session.close()
        scheduler.session = None


def create_app(
    store: Optional[PostStore] = None,
    scheduler: Optional[PollScheduler] = None,
    start_polling: bool = True,
) -> web.Application:
    """Build the read API application.

    Args:
        store: Post store; defaults to ``config.POSTS_FILE``.
        scheduler: Poll scheduler; defaults to one built from config over ``store``.
        start_polling: Start the background poll loop on startup.
    """
    store = store or (scheduler.store if scheduler else PostStore(config.POSTS_FILE))
    scheduler = scheduler or create_scheduler(store)

    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[STORE_KEY] = store
    app[SCHEDULER_KEY] = scheduler
    app[START_POLLING_KEY] = start_polling
    app.router.add_get("/latest", handle_latest)
    app.router.add_get("/history/hourly", handle_hourly)
    app.router.add_get("/posts", handle_posts)
    app.cleanup_ctx.append(_polling_ctx)
    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    host = host or config.HOST
    port = port or config.PORT
    logger.info(f"Serving posts from {config.POSTS_FILE} on http://{host}:{port}")
    web.run_app(create_app(), host=host, port=port, print=None)
