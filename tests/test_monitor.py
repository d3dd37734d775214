"""
Tests for the monitor orchestrator.

Tests end-to-end poll scenarios, the conflict and reconnect loop with backoff,
cancellation during backoff, fatal error propagation and mode selection.
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import (
    TEST_TOKEN,
    FakeBotClient,
    RecordingConsumer,
    conflict_error,
    network_error,
)
from update_monitor.bot_api import BotAPIClient
from update_monitor.config import Settings
from update_monitor.exceptions import (
    ConfigurationError,
    ConsumerError,
    ProviderAPIError,
    StorageError,
)
from update_monitor.monitor import UpdateMonitor, monitor_updates
from update_monitor.polling.backoff import compute_backoff
from update_monitor.state.offset_store import InMemoryOffsetStore


def no_jitter() -> float:
    return 0.5


class RecordingSleep:
    """Cancellable-sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: list[int] = []

    async def __call__(self, delay_ms: int, cancel_event: asyncio.Event) -> bool:
        self.delays.append(delay_ms)
        return cancel_event.is_set()


class TestPollScenarios:
    """Test poll-mode runs of the orchestrator."""

    def setup_method(self):
        """Set up test fixtures."""
        self.cancel_event = asyncio.Event()
        self.store = InMemoryOffsetStore()
        self.consumer = RecordingConsumer()
        self.sleep = RecordingSleep()

    def make_monitor(self, settings: Settings, client: FakeBotClient) -> UpdateMonitor:
        return UpdateMonitor(
            settings,
            self.consumer,
            offset_store=self.store,
            client=client,
            cancel_event=self.cancel_event,
            sleep=self.sleep,
            random_source=no_jitter,
        )

    @pytest.mark.asyncio
    async def test_empty_store_delivers_all(self, mock_settings):
        """Test the empty-store end-to-end scenario."""
        client = FakeBotClient([[1, 2, 3]], cancel_event=self.cancel_event)

        await self.make_monitor(mock_settings, client).run()

        assert self.consumer.seen == [1, 2, 3]
        assert await self.store.read("default") == 3
        assert self.sleep.delays == []

    @pytest.mark.asyncio
    async def test_stored_offset_and_stale_batch(self, mock_settings):
        """Test resuming from offset 5 and ignoring a stale batch."""
        await self.store.write("default", 5)
        client = FakeBotClient([[6, 7], [3, 4]], cancel_event=self.cancel_event)

        await self.make_monitor(mock_settings, client).run()

        assert client.offsets[0] == 6
        assert self.consumer.seen == [6, 7]
        assert await self.store.read("default") == 7

    @pytest.mark.asyncio
    async def test_two_conflicts_then_success(self, mock_settings):
        """Test exactly two backoff sleeps before a successful session."""
        client = FakeBotClient(
            [conflict_error(), conflict_error(), [1, 2]],
            cancel_event=self.cancel_event,
        )
        monitor = self.make_monitor(mock_settings, client)

        await monitor.run()

        policy = mock_settings.backoff_policy
        assert self.sleep.delays == [
            compute_backoff(policy, 1, no_jitter),
            compute_backoff(policy, 2, no_jitter),
        ]
        assert self.sleep.delays == [2000, 3600]
        assert self.consumer.seen == [1, 2]
        assert monitor.state.attempt == 0

    @pytest.mark.asyncio
    async def test_attempt_resets_after_started_session(self, mock_settings):
        """Test that a session that polled successfully resets the backoff."""
        client = FakeBotClient(
            [conflict_error(), [1], conflict_error()],
            cancel_event=self.cancel_event,
        )

        await self.make_monitor(mock_settings, client).run()

        assert self.sleep.delays == [2000, 2000]
        assert self.consumer.seen == [1]
        assert client.offsets == [None, None, 2, 2]

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_returns_promptly(self, mock_settings):
        """Test that cancellation aborts the sleep and starts no new session."""
        settings = mock_settings.model_copy(
            update={"poll_restart_initial_ms": 60_000, "poll_restart_max_ms": 60_000}
        )
        client = FakeBotClient([conflict_error(), [1]])
        monitor = UpdateMonitor(
            settings,
            self.consumer,
            offset_store=self.store,
            client=client,
            cancel_event=self.cancel_event,
        )
        asyncio.get_running_loop().call_later(0.05, monitor.request_stop)

        start = time.monotonic()
        await asyncio.wait_for(monitor.run(), timeout=2.0)

        assert time.monotonic() - start < 1.0
        assert client.offsets == [None]
        assert self.consumer.seen == []

    @pytest.mark.asyncio
    async def test_non_conflict_error_is_fatal(self, mock_settings):
        """Test that other provider errors propagate without retry."""
        error = ProviderAPIError(
            "Bot API getUpdates failed (500)", method="getUpdates", error_code=500
        )
        client = FakeBotClient([error, [1]])

        with pytest.raises(ProviderAPIError):
            await self.make_monitor(mock_settings, client).run()

        assert self.sleep.delays == []
        assert client.offsets == [None]

    @pytest.mark.asyncio
    async def test_dropped_connection_is_retried(self, mock_settings):
        """Test that a transport failure backs off and polls again."""
        client = FakeBotClient(
            [network_error(), [1]], cancel_event=self.cancel_event
        )
        monitor = self.make_monitor(mock_settings, client)

        await monitor.run()

        assert self.sleep.delays == [2000]
        assert self.consumer.seen == [1]
        assert client.offsets == [None, None, 2]
        assert monitor.state.attempt == 0

    @pytest.mark.asyncio
    async def test_connect_error_then_batch_over_http(self, mock_settings):
        """Test recovery from a refused connection through the real client."""
        poll_calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal poll_calls
            if request.url.path.endswith("/getWebhookInfo"):
                return httpx.Response(200, json={"ok": True, "result": {"url": ""}})
            poll_calls += 1
            if poll_calls == 1:
                raise httpx.ConnectError("connection refused")
            if poll_calls == 2:
                return httpx.Response(
                    200, json={"ok": True, "result": [{"update_id": 1, "message": {}}]}
                )
            self.cancel_event.set()
            return httpx.Response(200, json={"ok": True, "result": []})

        async with BotAPIClient(
            TEST_TOKEN, transport=httpx.MockTransport(handler)
        ) as client:
            await self.make_monitor(mock_settings, client).run()

        assert poll_calls == 3
        assert self.sleep.delays == [2000]
        assert self.consumer.seen == [1]
        assert await self.store.read("default") == 1

    @pytest.mark.asyncio
    async def test_conflict_from_other_method_is_fatal(self, mock_settings):
        """Test that a 409 not naming getUpdates is not retried."""
        error = ProviderAPIError(
            "Bot API setWebhook failed (409)", method="setWebhook", error_code=409
        )

        with pytest.raises(ProviderAPIError):
            await self.make_monitor(mock_settings, FakeBotClient([error])).run()

        assert self.sleep.delays == []

    @pytest.mark.asyncio
    async def test_consumer_failure_is_fatal(self, mock_settings):
        """Test that a consumer failure stops the monitor."""
        self.consumer.fail_on = {2}
        client = FakeBotClient([[1, 2, 3]])

        with pytest.raises(ConsumerError):
            await self.make_monitor(mock_settings, client).run()

        assert await self.store.read("default") == 1

    @pytest.mark.asyncio
    async def test_clears_existing_webhook(self, mock_settings):
        """Test that a leftover push subscription is removed before polling."""
        client = FakeBotClient(
            [[1]], cancel_event=self.cancel_event, webhook_url="https://example.com/hook"
        )

        await self.make_monitor(mock_settings, client).run()

        assert client.deleted_webhook is True
        assert self.consumer.seen == [1]

    @pytest.mark.asyncio
    async def test_webhook_check_failure_is_not_fatal(self, mock_settings):
        """Test that polling proceeds when the webhook check fails."""
        client = FakeBotClient([[1]], cancel_event=self.cancel_event)
        client.webhook_info_error = ProviderAPIError(
            "Bot API getWebhookInfo failed (502)", method="getWebhookInfo", error_code=502
        )

        await self.make_monitor(mock_settings, client).run()

        assert client.deleted_webhook is False
        assert self.consumer.seen == [1]

    @pytest.mark.asyncio
    async def test_supplied_client_is_not_closed(self, mock_settings):
        """Test that the caller keeps ownership of an injected client."""
        client = FakeBotClient([[1]], cancel_event=self.cancel_event)

        await self.make_monitor(mock_settings, client).run()

        assert client.closed is False


class TestMonitorSetup:
    """Test configuration handling and mode selection."""

    @pytest.mark.asyncio
    async def test_missing_token_is_fatal(self):
        """Test that a missing credential fails fast naming the account."""
        settings = Settings(telegram_bot_token="", offset_store_backend="memory")
        client = FakeBotClient([[1]])
        monitor = UpdateMonitor(settings, RecordingConsumer(), account_id="ops", client=client)

        with pytest.raises(ConfigurationError, match='account "ops"'):
            await monitor.run()

        assert client.offsets == []

    @pytest.mark.asyncio
    async def test_unhealthy_offset_store_is_fatal(self, mock_settings):
        """Test that an unusable offset store fails before any poll."""
        store = InMemoryOffsetStore()
        store.health_check = AsyncMock(return_value=False)
        client = FakeBotClient([[1]])
        monitor = UpdateMonitor(
            mock_settings, RecordingConsumer(), offset_store=store, client=client
        )

        with pytest.raises(StorageError) as exc_info:
            await monitor.run()

        assert exc_info.value.account_id == "default"
        assert client.offsets == []

    @pytest.mark.asyncio
    async def test_owned_client_created_and_closed(self, mock_settings):
        """Test that a client the monitor creates is closed on exit."""
        cancel_event = asyncio.Event()
        fake = FakeBotClient([[1]], cancel_event=cancel_event)

        with patch("update_monitor.monitor.BotAPIClient", return_value=fake) as factory:
            await monitor_updates(
                mock_settings,
                RecordingConsumer(),
                offset_store=InMemoryOffsetStore(),
                cancel_event=cancel_event,
            )

        factory.assert_called_once()
        assert factory.call_args.args[0] == mock_settings.telegram_bot_token
        assert fake.closed is True

    @pytest.mark.asyncio
    async def test_configured_offset_store_backend(self, mock_settings, tmp_path):
        """Test that the file backend is built from settings."""
        settings = mock_settings.model_copy(
            update={"offset_store_backend": "file", "state_dir": str(tmp_path)}
        )
        cancel_event = asyncio.Event()
        client = FakeBotClient([[1, 2]], cancel_event=cancel_event)

        await UpdateMonitor(
            settings, RecordingConsumer(), client=client, cancel_event=cancel_event
        ).run()

        assert (tmp_path / "update-offset-default.json").exists()

    @pytest.mark.asyncio
    async def test_webhook_mode_runs_webhook_runner(self, mock_settings):
        """Test that webhook mode never polls."""
        client = FakeBotClient([[1]])
        store = InMemoryOffsetStore({"default": 8})

        with patch("update_monitor.monitor.WebhookRunner") as runner_cls:
            runner_cls.return_value.run = AsyncMock()
            await UpdateMonitor(
                mock_settings,
                RecordingConsumer(),
                use_webhook=True,
                offset_store=store,
                client=client,
            ).run()

        runner_cls.return_value.run.assert_awaited_once()
        delivery = runner_cls.call_args.args[1]
        assert delivery.last_sequence_id == 8
        assert delivery.ordered is False
        assert client.offsets == []
        assert client.deleted_webhook is False
