from __future__ import annotations


class MonitorError(RuntimeError):
    """Base class for stream monitor failures surfaced to the caller."""


class ConfigurationError(MonitorError, ValueError):
    """Required provider settings are missing."""


class MonitorBusyError(MonitorError):
    """Another account already holds the single connection slot."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"DingTalk already running for account {account_id}")
        self.account_id = account_id
