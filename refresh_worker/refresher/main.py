"""Refresh worker entrypoint: scheduler cycles plus the health listener."""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager

import aiohttp
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from refresher.config import WorkerSettings, load_worker_settings
from refresher.delivery import DigestDelivery, MessageDispatcher
from refresher.insight_client import InsightClient
from refresher.locks import LockRegistry
from refresher.openserv_client import OpenServClient
from refresher.pipeline import ContentPipeline
from refresher.scheduler import CycleScheduler
from refresher.store import SupabaseStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def build_components(settings: WorkerSettings) -> dict:
    """Create all worker components from configuration."""
    # One aiohttp session for both the generation and messaging agents
    session = aiohttp.ClientSession()
    openserv = OpenServClient(
        base_url=settings.openserv_base_url,
        api_key=settings.openserv_api_key,
        session=session,
        connect_sid=settings.openserv_connect_sid,
        timeout=settings.openserv_timeout_seconds,
    )
    store = SupabaseStore(
        base_url=settings.supabase_url,
        service_key=settings.supabase_service_key,
        timeout=settings.store_timeout_seconds,
    )

    insights = None
    if settings.insights_enabled:
        insights = InsightClient(
            base_url=settings.insight_base_url,
            api_key=settings.insight_api_key,
            model=settings.insight_model,
            timeout=settings.insight_timeout_seconds,
        )
    else:
        logger.info("Insight API key not set, AI synthesis disabled")

    dispatcher = MessageDispatcher(openserv, settings)
    pipeline = ContentPipeline(
        store=store,
        generator=openserv,
        settings=settings,
        insights=insights,
        dispatcher=dispatcher,
    )
    # One registry shared by every cycle and by delivery
    locks = LockRegistry()
    delivery = DigestDelivery(
        dispatcher=dispatcher,
        pipeline=pipeline,
        store=store,
        locks=locks,
        settings=settings,
    )
    scheduler = CycleScheduler(
        store=store, pipeline=pipeline, delivery=delivery, settings=settings, locks=locks
    )

    return {
        "session": session,
        "store": store,
        "insights": insights,
        "pipeline": pipeline,
        "delivery": delivery,
        "scheduler": scheduler,
    }


async def close_components(components: dict) -> None:
    await components["session"].close()
    await components["store"].close()
    if components["insights"] is not None:
        await components["insights"].close()


def _fail_fast(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Exit on errors nobody handled rather than run in an unknown state."""
    exception = context.get("exception")
    if exception is None:
        loop.default_exception_handler(context)
        return
    logger.critical(f"Unhandled error in event loop: {context.get('message')}", exc_info=exception)
    logging.shutdown()
    os._exit(1)


def create_app(settings: WorkerSettings | None = None) -> FastAPI:
    """Build the health app. Its lifespan owns the scheduler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        config = settings or load_worker_settings()
        asyncio.get_running_loop().set_exception_handler(_fail_fast)
        components = await build_components(config)
        app.state.scheduler = components["scheduler"]
        logger.info(
            f"Starting refresh worker: scheduled every {config.job_interval_seconds:.0f}s "
            f"({config.job_refresh_hours}h refresh), immediate check every "
            f"{config.instant_check_interval_seconds:.0f}s, messaging every "
            f"{config.telegram_job_interval_seconds:.0f}s "
            f"({config.telegram_send_interval_hours}h cooldown), "
            f"midnight refresh in {config.refresh_timezone}"
        )
        app.state.scheduler.start()

        yield

        # SHUTDOWN
        await app.state.scheduler.shutdown(config.shutdown_grace_seconds)
        await close_components(components)
        logger.info("Refresh worker shutdown complete")

    app = FastAPI(title="Content Refresh Worker", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping():
        """Liveness check."""
        return "pong"

    @app.get("/health")
    async def health(request: Request):
        """Snapshot of cycle state and users in progress."""
        return request.app.state.scheduler.health.snapshot()

    return app


def main() -> None:
    """Entry point."""
    try:
        settings = load_worker_settings()
    except ValidationError as e:
        logger.error(f"Invalid or missing configuration: {e}")
        sys.exit(1)
    # uvicorn handles SIGTERM/SIGINT and runs the lifespan shutdown
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
