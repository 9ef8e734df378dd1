"""
Shared pytest fixtures for Croupier tests.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from croupier.core.clock import VirtualClock
from croupier.domain.pipeline import MiningRules, PayoutRules
from croupier.domain.settlement import PipelineKind
from croupier.services.metrics import MetricsEmitter
from croupier.services.scheduler import RetryScheduler
from croupier.services.pipeline import SettlementPipeline
from tests.fixtures.ledger import FakeLedger

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
START = 1_700_000_000


@pytest.fixture
def clock():
    """Virtual clock starting at a fixed unix time."""
    return VirtualClock(start=START)


@pytest.fixture
def ledger(clock):
    """In-memory ledger sharing the test clock."""
    return FakeLedger(clock, mining_start_time=START - 86_400)


@pytest.fixture
def metrics():
    """MetricsEmitter on a private registry."""
    return MetricsEmitter(registry=CollectorRegistry())


@pytest.fixture
def mock_event_bus():
    """Mock EventBus that reports itself connected."""
    bus = MagicMock()
    bus.is_connected = True
    bus.publish = AsyncMock()
    bus.connect = AsyncMock()
    bus.disconnect = AsyncMock()
    return bus


@pytest.fixture
def mock_config():
    """Mock ConfigManager returning defaults for every key."""
    config = MagicMock()
    config.get.side_effect = lambda key, default=None: default
    config.get_int.side_effect = lambda key, default=0: default
    config.get_float.side_effect = lambda key, default=0.0: default
    config.get_bool.side_effect = lambda key, default=False: default
    config.get_list.side_effect = lambda key, default=None: default or []
    config.get_wei.side_effect = lambda key, default=0: default
    config.get_section.return_value = {}
    return config


@pytest.fixture
def payout_rules():
    return PayoutRules()


@pytest.fixture
def mining_rules():
    return MiningRules(start_time=START - 86_400)


@pytest.fixture
def scheduler(clock, mock_event_bus, metrics):
    """Retry scheduler with small delays."""
    return RetryScheduler(
        clock,
        base_delay=2.0,
        max_delay=60.0,
        max_attempts=5,
        poll_interval=0.01,
        event_bus=mock_event_bus,
        metrics_emitter=metrics,
    )


@pytest.fixture
def payout_pipeline(ledger, payout_rules, scheduler, clock, mock_event_bus, metrics):
    return SettlementPipeline(
        PipelineKind.PAYOUT,
        ledger,
        payout_rules,
        scheduler,
        clock,
        event_bus=mock_event_bus,
        metrics_emitter=metrics,
    )


@pytest.fixture
def mining_pipeline(ledger, mining_rules, scheduler, clock, mock_event_bus, metrics):
    return SettlementPipeline(
        PipelineKind.MINING,
        ledger,
        mining_rules,
        scheduler,
        clock,
        event_bus=mock_event_bus,
        metrics_emitter=metrics,
    )
