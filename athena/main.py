from __future__ import annotations

import asyncio
import contextlib
import json
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, RedirectResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from athena.analytics import AnalyticsAggregator, GeoResolver
from athena.core.logging import get_logger, setup_logging
from athena.core.redis import INSTANCE_ID, LAYOUT_PREFIX, RedisManager, get_redis_manager
from athena.dashboard.repository import build_repository
from athena.dashboard.store import LayoutStoreRegistry
from athena.dashboard.widgets import LAYOUT_VERSION
from athena.routers.dashboard import router as dashboard_router
from athena.routers.layout import router as layout_router
from athena.routers.system import router as system_router
from athena.settings import get_settings
from athena.upstream import HydraClient, KratosClient

setup_logging(get_settings().ATHENA_LOG_LEVEL)
log = get_logger("athena.app")


async def _pubsub_listener(rm: RedisManager, registry: LayoutStoreRegistry):
    """
    Background task dropping in-process layout stores whose remote copy was
    rewritten by another instance.
    """
    if not await rm.is_available():
        log.warning("PubSub disabled: Redis unavailable at startup.")
        return
    pubsub = rm.redis.pubsub()
    await pubsub.subscribe(rm.pubsub_channel)
    log.info("Subscribed to pubsub channel: %s", rm.pubsub_channel)
    try:
        async for msg in pubsub.listen():
            if msg is None or msg.get("type") != "message":
                continue
            try:
                event = json.loads(rm._to_str(msg["data"]))
                if event.get("origin") == INSTANCE_ID or event.get("type") != LAYOUT_PREFIX:
                    continue
                registry.discard(str(event.get("id")))
                log.debug("Processed layout event: %s", event)
            except Exception:
                log.exception("Error processing pubsub message")
    except asyncio.CancelledError:
        log.info("Pubsub listener cancelled.")
    finally:
        with contextlib.suppress(Exception):
            await pubsub.unsubscribe(rm.pubsub_channel)
            await pubsub.aclose()


async def _evict_idle_layouts(registry: LayoutStoreRegistry, idle_sec: int):
    """Background task writing out and dropping layout stores nobody is using."""
    try:
        while True:
            await asyncio.sleep(max(1, idle_sec // 4))
            try:
                await registry.evict_idle(idle_sec)
            except Exception:
                log.exception("Error evicting idle layout stores")
    except asyncio.CancelledError:
        log.info("Layout eviction task cancelled.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()

    if s.ATHENA_SENTRY_DSN:
        sentry_sdk.init(
            dsn=s.ATHENA_SENTRY_DSN,
            environment=s.ATHENA_ENVIRONMENT,
            release=str(s.ATHENA_BUILD_VERSION),
            traces_sample_rate=1,
            integrations=[
                FastApiIntegration(transaction_style="url"),
                StarletteIntegration(transaction_style="url"),
            ],
        )
        log.info("Sentry initialized.")
    else:
        log.info("Sentry disabled (ATHENA_SENTRY_DSN empty).")

    log.info(
        "---------- ATHENA ----------\n"
        f"Version: {s.ATHENA_BUILD_VERSION}\n"
        f"Environment: {s.ATHENA_ENVIRONMENT}\n"
        f"Kratos: {s.KRATOS_ADMIN_URL}\n"
        f"Hydra: {s.HYDRA_ADMIN_URL} (enabled={s.HYDRA_ENABLED})\n"
        f"Ory Network: {s.ORY_NETWORK}\n"
        f"Layout backend: {s.LAYOUT_BACKEND} (v{LAYOUT_VERSION})\n"
        f"Redis Host: {s.REDIS_HOST}\n"
        f"Redis Port: {s.REDIS_PORT}\n"
        "------------------------------"
    )

    rm = get_redis_manager()
    if not await rm.is_available():
        log.warning(
            "Redis is not reachable at startup; layout persistence and rate limiting are degraded until Redis is up."
        )

    kratos = KratosClient.from_settings()
    hydra = HydraClient.from_settings()
    geo = GeoResolver()

    registry = LayoutStoreRegistry(build_repository(rm=rm, kratos=kratos))
    aggregator = AnalyticsAggregator(kratos, hydra, geo)
    app.state.layout_repository = registry.repository
    app.state.layout_registry = registry
    app.state.aggregator = aggregator

    # configuration is loaded from here on; gated fetches may start
    aggregator.mark_settings_loaded()
    aggregator.start()

    pubsub_task = asyncio.create_task(_pubsub_listener(rm, registry))
    evict_task = asyncio.create_task(_evict_idle_layouts(registry, s.LAYOUT_IDLE_SEC))

    try:
        yield
    finally:
        for task in (pubsub_task, evict_task):
            task.cancel()
            with contextlib.suppress(Exception):
                await task
        await aggregator.stop()
        # narrow the debounce window: write whatever is still pending
        await registry.flush_all()
        for client in (kratos, hydra, geo):
            with contextlib.suppress(Exception):
                await client.aclose()
        await rm.close()


def create_app() -> FastAPI:
    s = get_settings()
    app = FastAPI(
        title="Athena",
        version=s.ATHENA_BUILD_VERSION,
        lifespan=lifespan,
    )

    @app.get("/", include_in_schema=False)
    async def _root():
        return RedirectResponse(url="/docs", status_code=302)

    @app.get("/healthz", include_in_schema=False)
    async def _healthz():
        return JSONResponse({"status": "ok"})

    # Routers
    app.include_router(system_router)
    app.include_router(layout_router)
    app.include_router(dashboard_router)

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        openapi_schema = get_openapi(
            title="Athena API schema",
            version=s.ATHENA_BUILD_VERSION,
            description="Athena dashboard API: analytics aggregation and dashboard layouts",
            routes=app.routes,
        )
        openapi_schema["openapi"] = "3.0.3"
        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("athena.main:app", host="0.0.0.0", port=8000, reload=False)
