"""WeCom (WeChat Work) application channel.

Turns encrypted callback bodies into ``InboundMessage`` objects and pushes
pipeline replies back to the sender as active markdown messages.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import xmltodict
from wechatpy.enterprise import WeChatClient
from wechatpy.enterprise.crypto import WeChatCrypto
from wechatpy.exceptions import WeChatException

from imbridge.api.schemas import InboundMessage
from imbridge.core.config import settings
from imbridge.core.errors import ConfigurationError
from imbridge.utils.message_cache import DedupCache


logger = logging.getLogger(__name__)

PLATFORM = "wework"
AES_KEY_LENGTH = 43


def check_wework_settings() -> None:
    required = {
        "WEWORK_CORP_ID": settings.WEWORK_CORP_ID,
        "WEWORK_AGENT_ID": settings.WEWORK_AGENT_ID,
        "WEWORK_SECRET": settings.WEWORK_SECRET,
        "WEWORK_TOKEN": settings.WEWORK_TOKEN,
        "WEWORK_ENCODING_AES_KEY": settings.WEWORK_ENCODING_AES_KEY,
    }
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise ConfigurationError("Missing WeChat Work configuration: " + ", ".join(missing))
    if len(settings.WEWORK_ENCODING_AES_KEY or "") != AES_KEY_LENGTH:
        raise ConfigurationError(f"WEWORK_ENCODING_AES_KEY must be {AES_KEY_LENGTH} characters long")


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else value


def to_inbound_message(fields: Dict[str, Any]) -> Optional[InboundMessage]:
    """Map a decrypted callback to an InboundMessage; None for anything but non-empty text."""
    if (fields.get("MsgType") or "").lower() != "text":
        return None
    text = (fields.get("Content") or "").strip()
    if not text:
        return None
    sender = fields.get("FromUserName") or ""
    msg_id = fields.get("MsgId") or fields.get("MsgID")
    return InboundMessage(
        platform=PLATFORM,
        account_id=str(fields.get("AgentID") or "default"),
        conversation_id=sender,
        sender_id=sender,
        text=text,
        message_id=str(msg_id) if msg_id else None,
    )


class WeWorkService:
    """One WeCom self-built application.

    ``crypto`` and ``client`` are created from settings on first use unless
    given; settings problems surface as ConfigurationError at that point.
    Callbacks are deduplicated on ``MsgId`` because WeCom retries any
    callback it considers unanswered.
    """

    def __init__(
        self,
        crypto: Optional[WeChatCrypto] = None,
        client: Optional[WeChatClient] = None,
        cache: Optional[DedupCache] = None,
        agent_id: Optional[str] = None,
    ) -> None:
        self._crypto = crypto
        self._client = client
        self.cache = cache if cache is not None else DedupCache(settings.DEDUP_CACHE_MAX_SIZE, settings.DEDUP_CACHE_TTL_SECONDS)
        self._agent_id = agent_id

    @property
    def crypto(self) -> WeChatCrypto:
        if self._crypto is None:
            check_wework_settings()
            self._crypto = WeChatCrypto(settings.WEWORK_TOKEN, settings.WEWORK_ENCODING_AES_KEY, settings.WEWORK_CORP_ID)
        return self._crypto

    @property
    def client(self) -> WeChatClient:
        if self._client is None:
            check_wework_settings()
            self._client = WeChatClient(settings.WEWORK_CORP_ID, settings.WEWORK_SECRET)
            logger.info("WeWork client initialized")
        return self._client

    @property
    def agent_id(self) -> str:
        return str(self._agent_id or settings.WEWORK_AGENT_ID or "")

    def verify_url(self, msg_signature: str, timestamp: str, nonce: str, echostr: str) -> str:
        """Check the callback URL signature and return the decrypted echo string."""
        return _text(self.crypto.check_signature(msg_signature, timestamp, nonce, echostr))

    def parse_callback(self, body: bytes, msg_signature: str, timestamp: str, nonce: str) -> Optional[InboundMessage]:
        """Decrypt a callback body into an InboundMessage.

        Returns None for redeliveries and for events or non-text messages.
        Signature and decryption errors propagate.
        """
        xml = _text(self.crypto.decrypt_message(body, msg_signature, timestamp, nonce))
        fields = xmltodict.parse(xml)["xml"]

        msg_id = fields.get("MsgId") or fields.get("MsgID")
        if msg_id:
            key = f"{PLATFORM}:{msg_id}"
            if self.cache.is_processed(key):
                logger.info("WeWork duplicate message %s skipped", msg_id)
                return None
            self.cache.mark_processed(key)

        message = to_inbound_message(fields)
        if message is None:
            logger.debug("WeWork callback of type %s ignored", fields.get("MsgType"))
        else:
            logger.info("WeWork message from %s: %s", message.sender_id, message.text[:50])
        return message

    def send_markdown(self, user_id: str, content: str) -> dict:
        try:
            return self.client.message.send_markdown(agent_id=self.agent_id, user_ids=user_id, content=content)
        except WeChatException as e:
            logger.error("WeWork send_markdown to %s failed: %s", user_id, e)
            raise

    async def reply(self, message: InboundMessage, text: str) -> dict:
        """Push ``text`` to the sender of ``message`` without blocking the loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.send_markdown, message.sender_id, text)


_instance: Optional[WeWorkService] = None


def get_wework_service() -> WeWorkService:
    global _instance
    if _instance is None:
        _instance = WeWorkService()
    return _instance
