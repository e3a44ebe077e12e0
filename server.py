#!/usr/bin/env python3
"""
HTTP surface for the status feed processor.

Routes:
  POST /process-feeds     fetch every service feed and upsert its items
  POST /process-events    summarize every event still lacking a summary
  POST /summarize-event   summarize one event, body {"eventId": <int>}
  GET  /health            liveness, including the last successful scheduled run

Processing routes answer plain text: 200 on success, 500 with the error
description on failure (including a malformed request body).
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from config import config, get_logger
from errors import SummarizationError, describe_error
from fetcher import FeedFetcher, format_feed_report
from models import DatabaseQueue
from scheduler import FeedScheduler, LivenessState
from summarizer import EventSummarizer, format_summary_report
from telemetry import init_telemetry, get_tracer

logger = get_logger("server")
init_telemetry("status-processor-server")
_tracer = get_tracer("server")

router = APIRouter()


class SummarizeEventRequest(BaseModel):
    eventId: int


def _failure(message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=500)


@router.post("/process-feeds", response_class=PlainTextResponse, tags=["processing"])
async def process_feeds(request: Request):
    """Fetch all service feeds and upsert their items as events."""
    fetcher: FeedFetcher = request.app.state.fetcher
    try:
        report = await fetcher.process_all_feeds()
    except Exception as e:
        logger.error(f"❌ Feed processing failed: {describe_error(e)}")
        return _failure(f"Error processing feeds: {describe_error(e)}")
    return PlainTextResponse(format_feed_report(report))


@router.post("/process-events", response_class=PlainTextResponse, tags=["processing"])
async def process_events(request: Request):
    """Summarize every event that has no translated description yet."""
    summarizer: EventSummarizer = request.app.state.summarizer
    try:
        report = await summarizer.summarize_all()
    except Exception as e:
        logger.error(f"❌ Event processing failed: {describe_error(e)}")
        return _failure(f"Error processing events: {describe_error(e)}")
    return PlainTextResponse(format_summary_report(report))


@router.post("/summarize-event", response_class=PlainTextResponse, tags=["processing"])
async def summarize_event(payload: SummarizeEventRequest, request: Request):
    """Summarize a single event by id."""
    summarizer: EventSummarizer = request.app.state.summarizer
    try:
        fields = await summarizer.summarize_event_by_id(payload.eventId)
    except SummarizationError as e:
        logger.error(f"❌ {e}")
        return _failure(str(e))
    except Exception as e:
        logger.error(f"❌ Unexpected error summarizing event {payload.eventId}: {describe_error(e)}")
        return _failure(f"Failed to summarize event {payload.eventId}: {describe_error(e)}")
    return PlainTextResponse(
        f"Event {payload.eventId} summarized: status={fields['status']}, severity={fields['severity']}"
    )


@router.get("/health", tags=["health"])
async def health_check(request: Request) -> dict:
    """Liveness check reporting the last successful scheduled run."""
    scheduler: Optional[FeedScheduler] = request.app.state.scheduler
    return {
        "status": "ok",
        **request.app.state.liveness.snapshot(),
        "scheduler": scheduler.get_status() if scheduler else None,
    }


async def _invalid_request(request: Request, exc: RequestValidationError) -> PlainTextResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    logger.warning(f"Rejected malformed request to {request.url.path}: {problems}")
    return _failure(f"Invalid request: {problems}")


def create_app(
    fetcher: Optional[FeedFetcher] = None,
    summarizer: Optional[EventSummarizer] = None,
    liveness: Optional[LivenessState] = None,
    scheduler_enabled: Optional[bool] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Components passed in are used as-is; missing ones are created on startup
    around a shared DatabaseQueue, and the scheduler is started when enabled.
    """
    enable_scheduler = config.SCHEDULER_ENABLED if scheduler_enabled is None else scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db: Optional[DatabaseQueue] = None
        if app.state.fetcher is None or app.state.summarizer is None:
            db = DatabaseQueue(config.DATABASE_PATH)
            await db.start()
        if app.state.fetcher is None:
            app.state.fetcher = FeedFetcher(db)
            await app.state.fetcher.initialize()
        if app.state.summarizer is None:
            app.state.summarizer = EventSummarizer(db)
            await app.state.summarizer.initialize()
        if enable_scheduler:
            app.state.scheduler = FeedScheduler(app.state.liveness)
            app.state.scheduler.start()
        logger.info(f"🚀 Status processor listening on {config.HOST}:{config.PORT}")
        try:
            yield
        finally:
            if app.state.scheduler:
                await app.state.scheduler.stop()
            if fetcher is None:
                await app.state.fetcher.close()
            if summarizer is None:
                await app.state.summarizer.close()
            if db:
                await db.stop()
            logger.info("👋 Status processor stopped")

    app = FastAPI(
        title="Status Feed Processor",
        version="1.0.0",
        description="Ingests third-party status-page feeds and summarizes incidents with an LLM.",
        lifespan=lifespan,
    )
    app.state.fetcher = fetcher
    app.state.summarizer = summarizer
    app.state.liveness = liveness or LivenessState()
    app.state.scheduler = None
    app.add_exception_handler(RequestValidationError, _invalid_request)
    app.include_router(router)
    return app
