from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from imbridge.api.schemas import DingtalkRawMessage, InboundMessage
from imbridge.core.config import DingtalkConfig, settings


logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Everything a downstream handler gets for one inbound DingTalk message."""

    cfg: Optional[DingtalkConfig]
    raw: DingtalkRawMessage
    account_id: str
    log: Callable[[str], None] = field(default=logger.info)
    error: Callable[[str], None] = field(default=logger.error)


class InboundForwarder:
    """Posts normalized inbound messages to the internal pipeline.

    The pipeline answers with JSON; a non-empty ``text`` field is treated as
    the reply for the sender. With no ``url`` configured messages are only
    logged.
    """

    def __init__(
        self,
        url: Optional[str],
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url or None
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def forward(self, message: InboundMessage) -> Optional[str]:
        if not self.url:
            logger.info("INBOUND_URL not set, dropping %s message from %s", message.platform, message.sender_id)
            return None
        async with self._client() as client:
            resp = await client.post(self.url, json=message.model_dump())
            resp.raise_for_status()
            data: Any = resp.json() if resp.content else {}
        reply = data.get("text") if isinstance(data, dict) else None
        return reply or None

    async def post_session_webhook(self, webhook_url: str, text: str) -> Dict[str, Any]:
        """Reply in the originating DingTalk conversation."""
        payload = {"msgtype": "text", "text": {"content": text}}
        async with self._client() as client:
            resp = await client.post(webhook_url, json=payload)
            resp.raise_for_status()
            return resp.json() if resp.content else {}


_instance: Optional[InboundForwarder] = None


def get_inbound_forwarder() -> InboundForwarder:
    global _instance
    if _instance is None:
        _instance = InboundForwarder(settings.INBOUND_URL, timeout=settings.INBOUND_TIMEOUT)
    return _instance


async def handle_dingtalk_message(ctx: HandlerContext, forwarder: Optional[InboundForwarder] = None) -> Optional[str]:
    raw = ctx.raw
    text = ((raw.text.content if raw.text else None) or "").strip()
    if raw.msgtype != "text" or not text:
        ctx.log(f"[dingtalk] ignoring {raw.msgtype} message from {raw.sender_id}")
        return None

    forwarder = forwarder or get_inbound_forwarder()
    reply = await forwarder.forward(
        InboundMessage(
            platform="dingtalk",
            account_id=ctx.account_id,
            conversation_id=raw.conversation_id,
            sender_id=raw.sender_id,
            sender_nick=raw.sender_nick,
            text=text,
            message_id=raw.stream_message_id or raw.msg_id,
        )
    )
    if reply and raw.session_webhook:
        await forwarder.post_session_webhook(raw.session_webhook, reply)
    return reply
