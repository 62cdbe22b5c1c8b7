"""DingTalk Stream connection monitor.

Owns the single stream connection of the process, deduplicates robot
callbacks (the stream delivers at least once) and forwards new messages to
the downstream handler without holding up the acknowledgment.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

from dingtalk_stream import AckMessage, ChatbotMessage

from imbridge.api.schemas import DingtalkRawMessage, MonitorStatus
from imbridge.core.config import DingtalkConfig
from imbridge.core.errors import ConfigurationError, MonitorBusyError
from imbridge.services.dingtalk_client import StreamEvent, StreamTransport, create_dingtalk_client_from_config
from imbridge.services.message_handler import HandlerContext, handle_dingtalk_message
from imbridge.utils.cancellation import AbortSignal
from imbridge.utils.message_cache import DedupCache


logger = logging.getLogger(__name__)

DEDUPE_CONTENT_PREFIX = 50

TransportFactory = Callable[[DingtalkConfig], StreamTransport]
MessageHandler = Callable[[HandlerContext], Awaitable[Any]]


class MonitorState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STOPPING = "stopping"


def decode_raw_message(event: StreamEvent) -> DingtalkRawMessage:
    data = event.data
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if isinstance(data, str):
        data = json.loads(data)
    raw = DingtalkRawMessage.model_validate(data)
    if event.message_id:
        raw.stream_message_id = event.message_id
    return raw


def build_dedupe_key(account_id: str, raw: DingtalkRawMessage) -> str:
    """Prefer the stream delivery id; otherwise fall back to a content heuristic.

    The fallback can collide for identical short messages sent in quick
    succession by the same sender.
    """
    if raw.stream_message_id:
        return f"{account_id}:{raw.stream_message_id}"
    if raw.text is not None and raw.text.content is not None:
        content = raw.text.content[:DEDUPE_CONTENT_PREFIX]
    else:
        content = raw.msgtype
    return f"{account_id}:{raw.conversation_id}_{raw.sender_id}_{content}"


class _Session:
    def __init__(self, account_id: str, cfg: DingtalkConfig, transport: StreamTransport, future: asyncio.Future) -> None:
        self.account_id = account_id
        self.cfg = cfg
        self.transport = transport
        self.future = future
        self.stopped = False
        self.abort_signal: Optional[AbortSignal] = None
        self.abort_listener: Optional[Callable[[], None]] = None
        self.connect_task: Optional[asyncio.Task] = None


class DingtalkMonitor:
    """Single-connection controller for the DingTalk Stream robot topic.

    One instance is created by the host process. At most one session is
    active per instance; starting again for the same account re-joins the
    running session, starting for another account raises MonitorBusyError.
    Safety relies on running on a single event loop.
    """

    def __init__(
        self,
        handler: Optional[MessageHandler] = None,
        transport_factory: TransportFactory = create_dingtalk_client_from_config,
        cache: Optional[DedupCache] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._handler = handler or handle_dingtalk_message
        self._transport_factory = transport_factory
        self.cache = cache if cache is not None else DedupCache()
        self._log = log or logger
        self._session: Optional[_Session] = None
        self._state = MonitorState.IDLE
        self._tasks: Set[asyncio.Future] = set()
        self._connect_tasks: Set[asyncio.Future] = set()

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def current_account_id(self) -> Optional[str]:
        return self._session.account_id if self._session else None

    def status(self) -> MonitorStatus:
        return MonitorStatus(active=self.is_active, account_id=self.current_account_id, state=self._state.value)

    def clear_cache(self) -> None:
        self.cache.clear()

    def start(
        self,
        config: Optional[DingtalkConfig],
        account_id: str = "default",
        abort_signal: Optional[AbortSignal] = None,
    ) -> asyncio.Future:
        """Start the stream connection and return its completion future.

        Must be called from a running event loop. The future resolves when
        the session ends (stop, abort, connection loop finished) and is
        rejected with the original error if connecting fails.
        """
        current = self._session
        if current is not None:
            if current.account_id != account_id:
                raise MonitorBusyError(current.account_id)
            self._log.info("[dingtalk] existing connection for account %s is active, reusing monitor", account_id)
            return current.future

        if config is None:
            raise ConfigurationError("DingTalk configuration not found")

        loop = asyncio.get_running_loop()
        if abort_signal is not None and abort_signal.aborted:
            self._log.info("[dingtalk] abort signal already set, not starting account %s", account_id)
            done = loop.create_future()
            done.set_result(None)
            return done

        self._state = MonitorState.CONNECTING
        try:
            transport = self._transport_factory(config)
        except Exception as e:
            self._state = MonitorState.IDLE
            self._log.error("[dingtalk] failed to create client: %s", e)
            raise

        session = _Session(account_id, config, transport, loop.create_future())
        self._session = session
        self._state = MonitorState.ACTIVE
        self._log.info("[dingtalk] starting Stream connection for account %s...", account_id)

        if abort_signal is not None:
            def _on_abort() -> None:
                self._log.info("[dingtalk] abort signal received, stopping Stream client")
                self._finalize(session)

            session.abort_signal = abort_signal
            session.abort_listener = _on_abort
            abort_signal.add_listener(_on_abort)

        try:
            transport.register_callback_listener(ChatbotMessage.TOPIC, functools.partial(self._dispatch, session))
        except Exception as e:
            self._log.error("[dingtalk] failed to start Stream connection: %s", e)
            self._finalize(session, e)
            return session.future

        session.connect_task = loop.create_task(self._run(session))
        self._connect_tasks.add(session.connect_task)
        session.connect_task.add_done_callback(self._connect_tasks.discard)
        return session.future

    def stop(self) -> None:
        session = self._session
        if session is None or session.stopped:
            return
        self._log.info("[dingtalk] stop requested, stopping Stream client")
        self._finalize(session)

    async def drain(self) -> None:
        """Wait for in-flight handler tasks."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_closed(self) -> None:
        """Wait until every torn-down session's transport loop has exited."""
        if self._connect_tasks:
            await asyncio.wait(set(self._connect_tasks))

    async def _run(self, session: _Session) -> None:
        try:
            await session.transport.connect()
        except asyncio.CancelledError:
            session.connect_task = None
            self._finalize(session)
            raise
        except Exception as e:
            session.connect_task = None
            self._log.error("[dingtalk] failed to start Stream connection: %s", e)
            self._finalize(session, e)
            return
        session.connect_task = None
        if not session.stopped:
            self._log.info("[dingtalk] Stream connection closed for account %s", session.account_id)
        self._finalize(session)

    def _finalize(self, session: _Session, error: Optional[BaseException] = None) -> None:
        if session.stopped:
            return
        session.stopped = True
        if session.abort_signal is not None and session.abort_listener is not None:
            session.abort_signal.remove_listener(session.abort_listener)
        self._cleanup(session)
        if not session.future.done():
            if error is None:
                session.future.set_result(None)
            else:
                session.future.set_exception(error)

    def _cleanup(self, session: _Session) -> None:
        owner = self._session is session
        if owner:
            self._state = MonitorState.STOPPING
        try:
            session.transport.disconnect()
        except Exception as e:
            self._log.error("[dingtalk] failed to disconnect client: %s", e)
        task = session.connect_task
        if task is not None and not task.done():
            task.cancel()
        if owner:
            self._session = None
            self._state = MonitorState.IDLE

    def _dispatch(self, session: _Session, event: StreamEvent) -> int:
        account_id = session.account_id
        if session.stopped:
            # frame from a transport still winding down
            self._log.debug("[dingtalk] session for account %s stopped, dropping frame", account_id)
            return AckMessage.STATUS_OK
        try:
            raw = decode_raw_message(event)
            dedupe_key = build_dedupe_key(account_id, raw)

            if self.cache.is_processed(dedupe_key):
                self._log.info("[dingtalk] duplicate message detected, skipping (id=%s...)", dedupe_key[:30])
                return AckMessage.STATUS_OK

            # mark before forwarding so a concurrent redelivery sees it
            self.cache.mark_processed(dedupe_key)
            self._log.info("[dingtalk] received message from %s (type=%s)", raw.sender_id, raw.msgtype)

            ctx = HandlerContext(
                cfg=session.cfg,
                raw=raw,
                account_id=account_id,
                log=self._log.info,
                error=self._log.error,
            )
            self._spawn(self._handler(ctx))
            return AckMessage.STATUS_OK
        except Exception as e:
            self._log.error("[dingtalk] error handling message: %s", e, exc_info=True)
            return AckMessage.STATUS_OK

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("[dingtalk] error handling message: %s", exc)
