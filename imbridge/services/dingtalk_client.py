from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from dingtalk_stream import CallbackHandler, CallbackMessage, Credential, DingTalkStreamClient

from imbridge.core.config import DingtalkConfig


logger = logging.getLogger(__name__)

CANCEL_RETRY_SECONDS = 0.5


@dataclass
class StreamEvent:
    """One callback frame delivered by the stream transport."""

    data: Any
    message_id: Optional[str] = None


# Returns the ack status for the frame (AckMessage.STATUS_*).
CallbackListener = Callable[[StreamEvent], int]


class StreamTransport(Protocol):
    def register_callback_listener(self, topic: str, listener: CallbackListener) -> None: ...

    async def connect(self) -> None:
        """Run the connection. Returns when the connection loop ends."""
        ...

    def disconnect(self) -> None: ...


class _ListenerHandler(CallbackHandler):
    """Adapts a plain listener function to the SDK's CallbackHandler."""

    def __init__(self, listener: CallbackListener) -> None:
        super().__init__()
        self._listener = listener

    async def process(self, callback: CallbackMessage):
        headers = getattr(callback, "headers", None)
        event = StreamEvent(
            data=callback.data,
            message_id=getattr(headers, "message_id", None) or None,
        )
        status = self._listener(event)
        return status, "OK"


class _ClosableStreamClient(DingTalkStreamClient):
    """DingTalkStreamClient that stops handing out endpoints once closing.

    The SDK's start() loop survives a single cancellation and reconnects;
    with ``closing`` set it can only reach its retry sleep.
    """

    closing = False

    def open_connection(self):
        if self.closing:
            return None
        return super().open_connection()


class DingtalkStreamTransport:
    """StreamTransport backed by dingtalk-stream's DingTalkStreamClient.

    ``connect()`` runs the SDK loop as a task and returns only after that
    task has finished, whether ended by ``disconnect()``, by cancelling
    ``connect()`` itself, or by an SDK failure.
    """

    def __init__(self, client: DingTalkStreamClient) -> None:
        self._client = client
        self._task: Optional[asyncio.Future] = None
        self._closing = False
        self._closing_event: Optional[asyncio.Event] = None

    @property
    def client(self) -> DingTalkStreamClient:
        return self._client

    @property
    def sdk_task(self) -> Optional[asyncio.Future]:
        return self._task

    def register_callback_listener(self, topic: str, listener: CallbackListener) -> None:
        self._client.register_callback_handler(topic, _ListenerHandler(listener))

    async def connect(self) -> None:
        if self._closing:
            return
        self._closing_event = asyncio.Event()
        task = self._task = asyncio.ensure_future(self._client.start())
        closing = asyncio.ensure_future(self._closing_event.wait())
        try:
            await asyncio.wait({task, closing}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._mark_closing()
            await self._shutdown(task)
            raise
        finally:
            closing.cancel()

        if self._closing:
            await self._shutdown(task)
            return
        task.result()

    def disconnect(self) -> None:
        self._mark_closing()
        if self._closing_event is not None:
            self._closing_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _mark_closing(self) -> None:
        self._closing = True
        if hasattr(self._client, "closing"):
            self._client.closing = True

    async def _shutdown(self, task: asyncio.Future) -> None:
        while not task.done():
            task.cancel()
            await asyncio.wait({task}, timeout=CANCEL_RETRY_SECONDS)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("DingTalk stream loop ended with error during shutdown: %s", task.exception())
        logger.info("DingTalk stream client disconnected")


def create_dingtalk_client_from_config(cfg: DingtalkConfig) -> DingtalkStreamTransport:
    """Build a stream transport from DingTalk credentials.

    Raises ValueError when client_id or client_secret is empty.
    """
    missing = [k for k, v in {"client_id": cfg.client_id, "client_secret": cfg.client_secret}.items() if not v]
    if missing:
        raise ValueError("Missing DingTalk configuration: " + ", ".join(missing))
    credential = Credential(cfg.client_id, cfg.client_secret)
    return DingtalkStreamTransport(_ClosableStreamClient(credential))
