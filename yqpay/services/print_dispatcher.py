"""
Receipt print jobs for the browser-resident print agent at each theater.

One live WebSocket per theater. Jobs for a theater without an agent wait in
an in-memory queue and are flushed, in order, when the agent registers.
"""
import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from fastapi import WebSocket

from yqpay.core.config import PRINT_HISTORY_LIMIT

logger = logging.getLogger(__name__)

RECENT_PRINTS_SHOWN = 10


def build_print_job(
    order_data: Dict[str, Any],
    printer_name: Optional[str] = None,
    theater_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "orderId": str(order_data.get("_id") or order_data.get("orderNumber") or ""),
        "orderNumber": order_data.get("orderNumber"),
        "timestamp": datetime.utcnow().isoformat(),
        "orderData": order_data,
        "printerName": printer_name,
        "theaterInfo": theater_info,
    }


def job_message(job: Dict[str, Any]) -> Dict[str, Any]:
    """Wire shape the agent renders from."""
    return {
        "type": "print-order",
        "order": job["orderData"],
        "timestamp": job["timestamp"],
        "printerName": job.get("printerName"),
        "theaterInfo": job.get("theaterInfo"),
    }


class PrintDispatcher:
    def __init__(self, history_limit: int = PRINT_HISTORY_LIMIT):
        self.history_limit = history_limit
        self.sessions: Dict[str, WebSocket] = {}
        self.queues: Dict[str, List[Dict[str, Any]]] = {}
        self.history: Dict[str, Deque[Dict[str, Any]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, theater_id: str) -> asyncio.Lock:
        lock = self._locks.get(theater_id)
        if lock is None:
            lock = self._locks[theater_id] = asyncio.Lock()
        return lock

    def _record(self, theater_id: str, job: Dict[str, Any], status: str) -> None:
        entries = self.history.get(theater_id)
        if entries is None:
            entries = self.history[theater_id] = deque(maxlen=self.history_limit)
        entries.append({
            "theaterId": theater_id,
            "orderId": job.get("orderId"),
            "orderNumber": job.get("orderNumber"),
            "timestamp": datetime.utcnow().isoformat(),
            "status": status,
        })

    async def _send(self, theater_id: str, ws: WebSocket, job: Dict[str, Any]) -> bool:
        try:
            await ws.send_json(job_message(job))
        except Exception as e:
            logger.error("Print job %s to theater %s failed: %s", job.get("orderNumber"), theater_id, e)
            return False
        self._record(theater_id, job, "sent")
        logger.info("Print job %s sent to theater %s (printer=%s)", job.get("orderNumber"), theater_id, job.get("printerName") or "default")
        return True

    async def register(self, theater_id: str, ws: WebSocket) -> int:
        """Make ws the theater's agent, replacing any previous one, and flush its queue."""
        theater_id = str(theater_id)
        async with self._lock(theater_id):
            previous = self.sessions.get(theater_id)
            self.sessions[theater_id] = ws
            if previous is not None and previous is not ws:
                logger.info("Replacing print agent session for theater %s", theater_id)
                try:
                    await previous.close(code=1000, reason="Replaced by a newer print agent")
                except Exception as e:
                    logger.debug("Closing replaced print agent failed: %s", e)

            pending = self.queues.pop(theater_id, [])
            flushed = 0
            for i, job in enumerate(pending):
                if not await self._send(theater_id, ws, job):
                    # keep the unsent tail for the next agent
                    self.queues[theater_id] = pending[i:]
                    self.sessions.pop(theater_id, None)
                    break
                flushed += 1
        logger.info("Print agent registered for theater %s; flushed %d queued job(s)", theater_id, flushed)
        return flushed

    async def unregister(self, theater_id: str, ws: WebSocket) -> None:
        theater_id = str(theater_id)
        async with self._lock(theater_id):
            if self.sessions.get(theater_id) is ws:
                del self.sessions[theater_id]
                logger.info("Print agent for theater %s disconnected", theater_id)

    async def enqueue(self, theater_id: str, job: Dict[str, Any]) -> Dict[str, Any]:
        theater_id = str(theater_id)
        async with self._lock(theater_id):
            ws = self.sessions.get(theater_id)
            if ws is not None:
                if await self._send(theater_id, ws, job):
                    return {"success": True, "sent": True}
                # dead session: fall through to the queue
                del self.sessions[theater_id]
            self.queues.setdefault(theater_id, []).append(job)
        logger.info("Print job %s queued for theater %s (agent offline)", job.get("orderNumber"), theater_id)
        return {"success": False, "queued": True, "message": "Print job queued (client not connected)"}

    def confirm(self, theater_id: str, order_id: Optional[str]) -> None:
        """Agent reported a physical print."""
        self._record(str(theater_id), {"orderId": order_id}, "printed")

    def is_connected(self, theater_id: str) -> bool:
        return str(theater_id) in self.sessions

    def status(self, theater_id: str) -> Dict[str, Any]:
        theater_id = str(theater_id)
        recent = list(self.history.get(theater_id, ()))[-RECENT_PRINTS_SHOWN:]
        return {
            "connected": self.is_connected(theater_id),
            "queuedJobs": len(self.queues.get(theater_id, [])),
            "recentPrints": recent,
        }

    async def close_all(self) -> None:
        for theater_id, ws in list(self.sessions.items()):
            try:
                await ws.close(code=1001, reason="Server shutting down")
            except Exception as e:
                logger.debug("Closing print agent for theater %s failed: %s", theater_id, e)
        self.sessions.clear()
        self.queues.clear()
        self._locks.clear()


print_dispatcher = PrintDispatcher()
