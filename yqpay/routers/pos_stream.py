# yqpay/routers/pos_stream.py
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from yqpay.auth import decode_access_token, extract_token
from yqpay.services.pos_bus import pos_bus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pos-stream", tags=["POS Stream"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/status/{theater_id}")
def stream_status(theater_id: str):
    return {"success": True, "theaterId": theater_id, "subscribers": pos_bus.subscriber_count(theater_id)}


@router.get("/{theater_id}")
async def pos_stream(theater_id: str, token: Optional[str] = None, authorization: Optional[str] = Header(None)):
    """Server-sent events for POS terminals; EventSource passes the token as a query parameter."""
    raw_token = extract_token(token, authorization)
    if not raw_token:
        return JSONResponse(status_code=401, content={"success": False, "error": "No token provided"})
    try:
        decode_access_token(raw_token)
    except HTTPException:
        logger.warning("POS stream for theater %s rejected: invalid token", theater_id)
        return JSONResponse(status_code=401, content={"success": False, "error": "Invalid token"})

    subscriber = await pos_bus.subscribe(theater_id)

    async def events():
        try:
            async for chunk in subscriber.stream():
                yield chunk
        finally:
            await pos_bus.unsubscribe(subscriber)

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)
