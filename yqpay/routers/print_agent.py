# yqpay/routers/print_agent.py
import asyncio
import json
import logging
import time
from datetime import datetime

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from yqpay.auth import decode_access_token, extract_token
from yqpay.services.print_dispatcher import build_print_job, print_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Cloud Print"])

RECEIVE_TIMEOUT_SECONDS = 30.0


@router.websocket("/print-agent/{theater_id}")
async def print_agent(websocket: WebSocket, theater_id: str):
    """
    Browser print agent for one theater. Jobs arrive as
    {"type": "print-order", ...}; the agent answers
    {"type": "print-success", "orderId": ...} once paper is out.
    """
    await websocket.accept()

    token = extract_token(websocket.query_params.get("token"), websocket.headers.get("authorization"))
    if not token:
        await websocket.close(code=1008, reason="No token provided")
        return
    try:
        decode_access_token(token)
    except HTTPException:
        logger.warning("Print agent for theater %s rejected: invalid token", theater_id)
        await websocket.close(code=1008, reason="Invalid token")
        return

    await print_dispatcher.register(theater_id, websocket)
    try:
        await websocket.send_json({"type": "connected", "theaterId": theater_id})
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=RECEIVE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "ping", "timestamp": int(time.time() * 1000)})
                except (WebSocketDisconnect, RuntimeError) as e:
                    logger.debug("Print agent ping failed for theater %s: %s", theater_id, e)
                    break
                continue

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Non-JSON message from print agent %s: %s", theater_id, data[:50])
                continue

            kind = message.get("type")
            if kind == "ping":
                pong = {"type": "pong"}
                if "timestamp" in message:
                    pong["timestamp"] = message["timestamp"]
                await websocket.send_json(pong)
            elif kind == "print-success":
                print_dispatcher.confirm(theater_id, message.get("orderId"))
                logger.info("Theater %s printed order %s", theater_id, message.get("orderId"))
    except (WebSocketDisconnect, RuntimeError):
        logger.info("Print agent for theater %s disconnected", theater_id)
    except Exception as e:
        logger.error("Print agent error for theater %s: %s", theater_id, e, exc_info=True)
    finally:
        await print_dispatcher.unregister(theater_id, websocket)


@router.get("/cloud-print/status/{theater_id}")
def cloud_print_status(theater_id: str):
    return {"success": True, "status": print_dispatcher.status(theater_id)}


@router.post("/cloud-print/test/{theater_id}")
async def cloud_print_test(theater_id: str):
    order_number = f"TEST-{int(time.time() * 1000)}"
    test_order = {
        "orderNumber": order_number,
        "items": [{"name": "Test Item", "quantity": 1, "price": 100}],
        "total": 100,
        "customerInfo": {"name": "Test Customer"},
        "orderType": "dine-in",
        "createdAt": datetime.utcnow().isoformat(),
    }
    result = await print_dispatcher.enqueue(theater_id, build_print_job(test_order))
    return {"success": True, "result": result}
