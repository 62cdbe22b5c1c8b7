from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import PlainTextResponse

from imbridge.api.schemas import InboundMessage
from imbridge.services.message_handler import get_inbound_forwarder
from imbridge.services.wework_service import WeWorkService, get_wework_service


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/wework", tags=["WeChat Work"])


@router.get("/callback")
async def wework_verify(msg_signature: str, timestamp: str, nonce: str, echostr: str):
    """WeChat Work URL verification."""
    try:
        echo = get_wework_service().verify_url(msg_signature, timestamp, nonce, echostr)
    except Exception as e:
        logger.error("WeWork URL verification failed: %s", e)
        raise HTTPException(status_code=400, detail="verification failed")
    return PlainTextResponse(content=echo)


@router.post("/callback")
async def wework_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    msg_signature: str,
    timestamp: str,
    nonce: str,
):
    """WeChat Work message callback.

    Answers 200 with an empty body whatever happens, since WeCom retries
    anything else. Text messages are forwarded in the background.
    """
    try:
        service = get_wework_service()
        message = service.parse_callback(await request.body(), msg_signature, timestamp, nonce)
        if message is not None:
            background_tasks.add_task(_forward_and_reply, service, message)
    except Exception as e:
        logger.error("WeWork callback error: %s", e, exc_info=True)
    return PlainTextResponse(content="")


async def _forward_and_reply(service: WeWorkService, message: InboundMessage) -> None:
    try:
        reply = await get_inbound_forwarder().forward(message)
        if reply:
            await service.reply(message, reply)
    except Exception as e:
        logger.error("WeWork forward failed for %s: %s", message.sender_id, e, exc_info=True)
