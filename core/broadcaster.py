"""
Broadcast Sender — the "send-broadcast" job worker.

Fans one broadcast out to its recipient list through the Messenger Send API,
one recipient at a time with a fixed pause between calls, and reports
progress to the organization's realtime room.

Flow:
  1. Load broadcast + page (missing → job fails)
  2. Skip unless status is scheduled/sending (already processed or cancelled)
  3. Mark sending, send to each recipient; each success is committed as a
     recipient row right away so receipts arriving mid-send find their mid
  4. Mark sent with stats, bump broadcasts_sent usage, emit completion
  5. Any unexpected error → mark failed with the counts so far and re-raise
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from config.settings import get_settings
from core.realtime import RealtimeHub, get_hub
from database.models import BroadcastRecipientRow, BroadcastRow, FacebookPageRow
from database.session import get_session
from database.usage import increment_usage
from facebook.graph import FacebookAPIError, GraphClient, build_message
from job_queue.message_queue import QueueJob
from models.schemas import BroadcastStatus

logger = structlog.get_logger()

GraphFactory = Callable[[str], GraphClient]

SENDABLE = {BroadcastStatus.SCHEDULED.value, BroadcastStatus.SENDING.value}


class BroadcastNotFound(LookupError):
    pass


class BroadcastSender:

    def __init__(
        self,
        graph_factory: GraphFactory = GraphClient,
        hub: Optional[RealtimeHub] = None,
        send_delay_ms: Optional[int] = None,
    ):
        self.graph_factory = graph_factory
        self.hub = hub or get_hub()
        if send_delay_ms is None:
            send_delay_ms = get_settings().facebook.send_delay_ms
        self.send_delay = send_delay_ms / 1000.0

    async def process(self, job: QueueJob) -> Optional[dict[str, Any]]:
        broadcast_id = job.data["broadcastId"]
        organization_id = job.data["organizationId"]
        logger.info("broadcast_job_started", broadcast_id=broadcast_id, job_id=job.job_id)

        async with get_session() as db:
            broadcast = await db.get(BroadcastRow, broadcast_id)
            page = await db.get(FacebookPageRow, broadcast.page_id) if broadcast else None
            if broadcast is None or page is None:
                raise BroadcastNotFound(f"Broadcast {broadcast_id} not found")

            if broadcast.status not in SENDABLE:
                logger.info("broadcast_already_processed",
                            broadcast_id=broadcast_id, status=broadcast.status)
                return None

            broadcast.status = BroadcastStatus.SENDING.value
            recipient_ids = list(broadcast.recipient_ids or [])
            message = build_message(broadcast.message_text, broadcast.message_attachments)
            access_token = page.page_access_token
            fb_page_id = page.page_id

        results: dict[str, Any] = {"sent": 0, "failed": 0, "errors": []}
        try:
            await self._send(
                broadcast_id, organization_id, fb_page_id,
                access_token, recipient_ids, message, results,
            )
        except Exception as e:
            logger.error("broadcast_job_failed", broadcast_id=broadcast_id, error=str(e))
            await self._finish(broadcast_id, BroadcastStatus.FAILED, results)
            raise

        async with get_session() as db:
            await increment_usage(db, organization_id, broadcasts_sent=1)
        await self._finish(broadcast_id, BroadcastStatus.SENT, results)

        await self.hub.emit(organization_id, "broadcast-complete", {
            "broadcastId": broadcast_id,
            "results": results,
        })
        logger.info("broadcast_completed",
                    broadcast_id=broadcast_id,
                    sent=results["sent"],
                    failed=results["failed"])
        return results

    async def _send(
        self,
        broadcast_id: str,
        organization_id: str,
        fb_page_id: str,
        access_token: str,
        recipient_ids: list[str],
        message: dict[str, Any],
        results: dict[str, Any],
    ) -> None:
        total = len(recipient_ids)

        async with self.graph_factory(access_token) as graph:
            for recipient_id in recipient_ids:
                try:
                    response = await graph.send_message(recipient_id, message)
                except FacebookAPIError as e:
                    results["failed"] += 1
                    results["errors"].append({"recipientId": recipient_id, "error": e.message})
                    logger.warning("broadcast_recipient_failed",
                                   broadcast_id=broadcast_id,
                                   recipient_id=recipient_id,
                                   error=e.message)
                else:
                    results["sent"] += 1
                    # committed per send so delivery/read webhooks can match the mid
                    async with get_session() as db:
                        db.add(BroadcastRecipientRow(
                            broadcast_id=broadcast_id,
                            page_id=fb_page_id,
                            recipient_id=recipient_id,
                            message_id=str((response or {}).get("message_id", "")),
                            sent_at=datetime.now(timezone.utc),
                        ))
                    await self.hub.emit(organization_id, "broadcast-progress", {
                        "broadcastId": broadcast_id,
                        "progress": round(results["sent"] / total * 100),
                    })
                await asyncio.sleep(self.send_delay)

    async def _finish(self, broadcast_id: str, status: BroadcastStatus,
                      results: dict[str, Any]) -> None:
        """Set the final status; delivered/read counts bumped by webhooks are kept."""
        async with get_session() as db:
            broadcast = await db.get(BroadcastRow, broadcast_id)
            if broadcast is None:
                return
            stats = {"delivered": 0, "read": 0, **(broadcast.stats or {})}
            stats.update(sent=results["sent"], failed=results["failed"])
            broadcast.status = status.value
            broadcast.stats = stats
            if status is BroadcastStatus.SENT:
                broadcast.sent_at = datetime.now(timezone.utc)
