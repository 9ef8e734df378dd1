"""Unit tests for the Redis event bus and metrics emitter."""
import json
from dataclasses import dataclass
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from croupier.core.events import EventBus, publish_if_connected
from croupier.services.metrics import MetricsEmitter


@dataclass
class SampleEvent:
    request_id: int
    amount: Decimal


@pytest.fixture
def fake_redis():
    client = MagicMock()
    client.ping = AsyncMock()
    client.publish = AsyncMock()
    client.aclose = AsyncMock()
    return client


class TestEventBus:
    @pytest.mark.asyncio
    async def test_publish_requires_connection(self):
        bus = EventBus()
        with pytest.raises(RuntimeError):
            await bus.publish("settlement.completed", {"request_id": 1})

    @pytest.mark.asyncio
    async def test_connect_publish_disconnect(self, fake_redis):
        metrics = MetricsEmitter(registry=CollectorRegistry())
        bus = EventBus(channel_prefix="croupier.", metrics_emitter=metrics)

        with patch("croupier.core.events.redis.from_url", return_value=fake_redis):
            await bus.connect()
        assert bus.is_connected
        fake_redis.ping.assert_awaited_once()

        await bus.publish("settlement.completed", SampleEvent(request_id=42, amount=Decimal("1.5")))

        channel, data = fake_redis.publish.await_args.args
        assert channel == "croupier.settlement.completed"
        assert json.loads(data) == {"request_id": 42, "amount": "1.5"}
        assert (
            metrics.registry.get_sample_value(
                "croupier_event_bus_messages_total", {"channel": "settlement.completed"}
            )
            == 1.0
        )

        await bus.disconnect()
        assert not bus.is_connected
        fake_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged_not_raised(self, fake_redis):
        import redis.asyncio as redis

        fake_redis.publish.side_effect = redis.ConnectionError("gone")
        bus = EventBus()
        with patch("croupier.core.events.redis.from_url", return_value=fake_redis):
            await bus.connect()

        await bus.publish("alert", {"message": "x"})


class TestPublishIfConnected:
    @pytest.mark.asyncio
    async def test_no_bus(self):
        assert await publish_if_connected(None, "alert", {}) is False

    @pytest.mark.asyncio
    async def test_disconnected_bus(self, mock_event_bus):
        mock_event_bus.is_connected = False
        assert await publish_if_connected(mock_event_bus, "alert", {}) is False
        mock_event_bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_uses_to_dict(self, mock_event_bus):
        event = MagicMock()
        event.to_dict.return_value = {"request_id": 7}
        assert await publish_if_connected(mock_event_bus, "settlement.failed", event) is True
        mock_event_bus.publish.assert_awaited_once_with("settlement.failed", {"request_id": 7})


class TestMetricsEmitter:
    def test_exposes_croupier_metrics(self, metrics):
        metrics.record_execution("payout", "completed", amount=19, latency_seconds=61)
        metrics.update_retry_queue_depth("payout", 2)
        output = metrics.get_metrics()
        assert "croupier_executions_total" in output
        assert "croupier_retry_queue_depth" in output
        assert 'version="' in output

    def test_disbursed_amount_only_counts_positive(self, metrics):
        metrics.record_execution("mining", "failed")
        metrics.record_execution("mining", "completed", amount=100)
        value = metrics.registry.get_sample_value(
            "croupier_disbursed_amount_total", {"pipeline": "mining"}
        )
        assert value == 100.0
