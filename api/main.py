"""
PageCast HTTP application.

Mounted under /api: the dashboard REST routes and the Facebook webhook
receiver. /ws pushes organization events to connected dashboards. The
lifespan brings up the database, the job queue with its two workers and
the cron scheduler, and tears them down in reverse.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.deps import get_queue, get_realtime_hub
from api.errors import register_error_handlers
from api.routes import analytics, auth, broadcasts, comments, organizations, pages, subscriptions, webhooks
from config.settings import get_settings
from core.broadcaster import BroadcastSender
from core.comments import CommentForwarder
from core.realtime import RealtimeHub
from core.scheduler import CronScheduler
from database.session import close_db, init_db
from job_queue.consumer import DelayedJobPromoter, JobConsumer
from job_queue.message_queue import Queues, connect_message_queue

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    await init_db()
    queue = await connect_message_queue(settings.queue)

    consumers = [
        JobConsumer(
            queue, Queues.BROADCAST, BroadcastSender().process,
            concurrency=settings.queue.consumer_concurrency,
            consumer_group=settings.queue.consumer_group,
        ),
        JobConsumer(
            queue, Queues.COMMENT, CommentForwarder().process,
            concurrency=settings.queue.consumer_concurrency,
            consumer_group=settings.queue.consumer_group,
        ),
    ]
    for consumer in consumers:
        await consumer.start_background()

    promoter = DelayedJobPromoter(queue, interval_seconds=settings.queue.delayed_promote_interval)
    await promoter.start_background()

    scheduler = None
    if settings.scheduler.enabled:
        scheduler = CronScheduler(queue, settings)
        scheduler.start()

    logger.info("pagecast_started", queue_backend=type(queue).__name__,
                scheduler=settings.scheduler.enabled)
    yield

    if scheduler is not None:
        scheduler.shutdown()
    for consumer in consumers:
        await consumer.stop()
    await promoter.stop()
    await queue.close()
    await close_db()
    logger.info("pagecast_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="PageCast API",
    description="Facebook Page broadcasts and comment management",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().auth.client_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(organizations.router, prefix="/api/organizations", tags=["organizations"])
app.include_router(pages.router, prefix="/api/pages", tags=["pages"])
app.include_router(broadcasts.router, prefix="/api/broadcasts", tags=["broadcasts"])
app.include_router(comments.router, prefix="/api/comments", tags=["comments"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["analytics"])
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "queue": type(get_queue()).__name__,
    }


# ══════════════════════════════════════════════════════════════
#  REALTIME
# ══════════════════════════════════════════════════════════════

@app.websocket("/ws")
async def websocket_events(websocket: WebSocket, hub: RealtimeHub = Depends(get_realtime_hub)):
    """
    Organization event stream.

    Client sends JSON actions:
      {"action": "join-organization", "organizationId": "..."}
      {"action": "leave-organization", "organizationId": "..."}
    """
    await websocket.accept()
    logger.debug("socket_connected")
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_client_message(websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
        logger.debug("socket_disconnected")


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
