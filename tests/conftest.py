from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest
from dingtalk_stream import ChatbotMessage

from imbridge.core.config import DingtalkConfig
from imbridge.services.dingtalk_client import StreamEvent


class FakeTransport:
    """In-memory StreamTransport: connect() blocks until disconnect() or close_remote()."""

    def __init__(self, connect_error: Optional[Exception] = None, disconnect_error: Optional[Exception] = None) -> None:
        self.listeners: Dict[str, Any] = {}
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.connect_error = connect_error
        self.disconnect_error = disconnect_error
        self._closed = asyncio.Event()

    def register_callback_listener(self, topic, listener) -> None:
        self.listeners[topic] = listener

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        await self._closed.wait()

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._closed.set()
        if self.disconnect_error is not None:
            raise self.disconnect_error

    def close_remote(self) -> None:
        self._closed.set()

    def deliver(self, data: Any, message_id: Optional[str] = None) -> int:
        listener = self.listeners[ChatbotMessage.TOPIC]
        return listener(StreamEvent(data=data, message_id=message_id))


class TransportFactory:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.transports: List[FakeTransport] = []
        self.error: Optional[Exception] = None

    def __call__(self, cfg: DingtalkConfig) -> FakeTransport:
        if self.error is not None:
            raise self.error
        t = FakeTransport(**self.kwargs)
        self.transports.append(t)
        return t

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def transport_factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def dingtalk_cfg() -> DingtalkConfig:
    return DingtalkConfig(client_id="ding-client", client_secret="ding-secret")
