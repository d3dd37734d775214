"""
Pytest configuration and fixtures for update monitor tests.
"""

import asyncio
from typing import Any

import httpx
import pytest

from update_monitor.config import Settings
from update_monitor.exceptions import ProviderAPIError, StorageError
from update_monitor.models import UpdateRecord
from update_monitor.state.offset_store import InMemoryOffsetStore

TEST_TOKEN = "123456:test-token"


def make_update(update_id: int, text: str = "hello") -> UpdateRecord:
    """Build an update record shaped like a Bot API message update."""
    return UpdateRecord(
        sequence_id=update_id,
        payload={"update_id": update_id, "message": {"text": text}},
    )


def conflict_error() -> ProviderAPIError:
    """Build the error the provider returns when another poller is active."""
    description = (
        "Conflict: terminated by other getUpdates request; "
        "make sure that only one bot instance is running"
    )
    return ProviderAPIError(
        f"Bot API getUpdates failed (409): {description}",
        method="getUpdates",
        error_code=409,
        description=description,
    )


def network_error() -> ProviderAPIError:
    """Build the error the client raises when a poll never reaches the provider."""
    error = ProviderAPIError(
        "Bot API getUpdates request failed: ConnectError", method="getUpdates"
    )
    error.__cause__ = httpx.ConnectError("connection refused")
    return error


class FakeBotClient:
    """
    Scripted stand-in for ``BotAPIClient``.

    Each ``get_updates`` call pops the next scripted response: a list of update
    ids (or records) is returned, an exception is raised. Once the script is
    exhausted the client sets ``cancel_event`` (if given) and blocks like an
    idle long poll.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        webhook_url: str = "",
    ):
        self.responses = list(responses or [])
        self.cancel_event = cancel_event
        self.webhook_url = webhook_url
        self.offsets: list[int | None] = []
        self.deleted_webhook = False
        self.webhooks_set: list[dict[str, Any]] = []
        self.set_webhook_error: Exception | None = None
        self.webhook_info_error: Exception | None = None
        self.closed = False

    async def get_updates(
        self,
        offset: int | None = None,
        timeout: int = 30,
        allowed_updates: list[str] | None = None,
        limit: int = 100,
    ) -> list[UpdateRecord]:
        self.offsets.append(offset)
        if not self.responses:
            if self.cancel_event is not None:
                self.cancel_event.set()
            await asyncio.Event().wait()
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return [make_update(i) if isinstance(i, int) else i for i in item]

    async def get_webhook_info(self) -> dict[str, Any]:
        if self.webhook_info_error is not None:
            raise self.webhook_info_error
        return {"url": self.webhook_url}

    async def delete_webhook(self, drop_pending_updates: bool = False) -> bool:
        self.deleted_webhook = True
        self.webhook_url = ""
        return True

    async def set_webhook(self, url: str, **kwargs: Any) -> bool:
        if self.set_webhook_error is not None:
            raise self.set_webhook_error
        self.webhooks_set.append({"url": url, **kwargs})
        return True

    async def aclose(self) -> None:
        self.closed = True


class RecordingConsumer:
    """Consumer that records the ids it sees and can fail on demand."""

    def __init__(self, fail_on: set[int] | None = None, reject_on: set[int] | None = None):
        self.seen: list[int] = []
        self.fail_on = fail_on or set()
        self.reject_on = reject_on or set()

    async def __call__(self, update: UpdateRecord) -> bool:
        self.seen.append(update.sequence_id)
        if update.sequence_id in self.fail_on:
            raise RuntimeError(f"boom on {update.sequence_id}")
        return update.sequence_id not in self.reject_on


class FlakyOffsetStore(InMemoryOffsetStore):
    """In-memory store whose writes fail for selected update ids."""

    def __init__(self, fail_on: set[int], initial: dict[str, int] | None = None):
        super().__init__(initial)
        self.fail_on = fail_on
        self.failed: list[int] = []

    async def write(self, account_id: str, sequence_id: int) -> bool:
        if sequence_id in self.fail_on:
            self.failed.append(sequence_id)
            raise StorageError("disk unavailable", account_id=account_id)
        return await super().write(account_id, sequence_id)


@pytest.fixture
def mock_settings() -> Settings:
    """Settings for testing."""
    return Settings(
        telegram_bot_token=TEST_TOKEN,
        offset_store_backend="memory",
        poll_timeout_seconds=1,
        log_level="DEBUG",
    )


@pytest.fixture
def offset_store() -> InMemoryOffsetStore:
    """Empty in-memory offset store."""
    return InMemoryOffsetStore()


@pytest.fixture
def consumer() -> RecordingConsumer:
    """Consumer that always succeeds."""
    return RecordingConsumer()
