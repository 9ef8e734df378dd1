"""
Unit tests for the web3 ledger adapter.

The web3 client and contracts are replaced with mocks; these tests cover
struct decoding, caching, error mapping and transaction plumbing, not the
RPC transport.
"""
from unittest.mock import MagicMock

import pytest

from croupier.core.config import ConfigManager
from croupier.core.errors import ConfigurationError, LedgerRevertError, LedgerUnavailableError
from croupier.core.retry import RetryConfig
from croupier.domain.settlement import (
    AssetType,
    PipelineKind,
    SettlementDraft,
    SettlementStatus,
)
from croupier.integrations.ledger.base import LedgerTimeouts
from croupier.integrations.ledger.web3_ledger import (
    Web3LedgerAdapter,
    decode_bet,
    decode_record,
    decode_stats,
)
from tests.conftest import ALICE

TOKEN = "0x3333333333333333333333333333333333333333"
OPERATOR = "0x00000000000000000000000000000000000000aa"
NO_WAIT = RetryConfig(max_attempts=2, min_wait_seconds=0, max_wait_seconds=0, jitter=False)


def record_struct(request_id=42, status=0, disbursed_at=0, attempts=0):
    return (
        request_id, ALICE, TOKEN, 19 * 10**18, 10 * 10**18,
        1_000, 1_005, 1_010, disbursed_at, status, attempts, True, True, True,
    )


@pytest.fixture
def adapter(clock):
    ledger = Web3LedgerAdapter(
        rpc_url="http://localhost:8545",
        betting_address="0x4444444444444444444444444444444444444444",
        payout_address="0x5555555555555555555555555555555555555555",
        retry_config=NO_WAIT,
        timeouts=LedgerTimeouts(call=1.0, submit=1.0, confirmation=1.0, poll_interval=0.01),
        log_chunk_size=2,
        clock=clock,
    )
    ledger._w3 = MagicMock()
    ledger._betting = MagicMock()
    ledger._contracts[PipelineKind.PAYOUT] = MagicMock()
    ledger._connected = True
    yield ledger
    ledger._executor.shutdown(wait=False)


class TestDecoding:
    def test_decode_won_bet(self):
        raw = (42, ALICE, 10, TOKEN, 19, 100, 160, 2, True, True)
        bet = decode_bet(raw)
        assert bet.request_id == 42
        assert bet.asset == AssetType(TOKEN)
        assert bet.settled_at == 160
        assert bet.choice is True
        assert bet.is_winner is True

    def test_winner_derived_from_parities(self):
        bet = decode_bet((42, ALICE, 10, TOKEN, 0, 100, 160, 3, True, False))
        assert bet.is_winner is False
        assert bet.is_settled

    def test_unsettled_bet_has_no_settlement_time(self):
        bet = decode_bet((42, ALICE, 10, TOKEN, 0, 100, 160, 1, True, False))
        assert bet.settled_at == 0
        assert not bet.is_settled

    def test_missing_bet(self):
        assert decode_bet((0, ALICE, 0, TOKEN, 0, 0, 0, 0, False, False)) is None

    def test_decode_record(self):
        record = decode_record(PipelineKind.PAYOUT, record_struct(status=1, disbursed_at=1_070, attempts=1))
        assert record.status is SettlementStatus.COMPLETED
        assert record.amount == 19 * 10**18
        assert record.created_at == 1_010
        assert record.disbursed_at == 1_070
        assert record.attempt_count == 1

    def test_pending_record_has_no_disbursement_time(self):
        record = decode_record(PipelineKind.MINING, record_struct())
        assert record.status is SettlementStatus.PENDING
        assert record.disbursed_at is None
        assert record.pipeline is PipelineKind.MINING

    def test_missing_record(self):
        assert decode_record(PipelineKind.PAYOUT, record_struct(request_id=0)) is None

    def test_decode_payout_stats(self):
        stats = decode_stats(PipelineKind.PAYOUT, (10, 6, 1, 500))
        assert stats.completed_count == 6
        assert stats.failed_count == 1
        assert stats.pending_count == 3
        assert stats.total_disbursed == 500

    def test_decode_mining_stats(self):
        # Fourth word is the pool balance, not a counter.
        stats = decode_stats(PipelineKind.MINING, (4, 3, 900, 10**24))
        assert stats.completed_count == 3
        assert stats.failed_count == 0
        assert stats.pending_count == 1
        assert stats.total_disbursed == 900

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            decode_record(PipelineKind.PAYOUT, record_struct(status=9))


class TestFromConfig:
    def test_requires_endpoints(self):
        with pytest.raises(ConfigurationError):
            Web3LedgerAdapter.from_config(ConfigManager())

    def test_reads_ledger_section(self):
        config = ConfigManager(overrides={
            "ledger.rpc_url": "http://node:8545",
            "ledger.betting_address": "0x4444444444444444444444444444444444444444",
            "ledger.chain_id": 57054,
            "ledger.gas_price_gwei": 2,
            "ledger.payout_execute_gas": 700_000,
        })
        ledger = Web3LedgerAdapter.from_config(config)
        assert ledger._chain_id == 57054
        assert ledger._gas_price_wei == 2 * 10**9
        assert ledger._bindings[PipelineKind.PAYOUT].execute_gas == 700_000
        assert ledger._bindings[PipelineKind.MINING].submit_gas == 300_000
        assert ledger.operator_address is None


class TestReads:
    @pytest.mark.asyncio
    async def test_requires_connection(self):
        ledger = Web3LedgerAdapter("http://localhost:8545", "0x4444444444444444444444444444444444444444")
        with pytest.raises(ConfigurationError):
            await ledger.get_block_number()

    @pytest.mark.asyncio
    async def test_unconfigured_pipeline(self, adapter):
        with pytest.raises(ConfigurationError):
            await adapter.get_record(PipelineKind.MINING, 1)

    @pytest.mark.asyncio
    async def test_only_terminal_records_cached(self, adapter):
        info = adapter._contracts[PipelineKind.PAYOUT].functions.getPayoutInfo
        info.return_value.call.return_value = record_struct(status=0)

        await adapter.get_record(PipelineKind.PAYOUT, 42)
        await adapter.get_record(PipelineKind.PAYOUT, 42)
        assert info.return_value.call.call_count == 2

        info.return_value.call.return_value = record_struct(status=1)
        await adapter.get_record(PipelineKind.PAYOUT, 42)
        record = await adapter.get_record(PipelineKind.PAYOUT, 42)
        assert info.return_value.call.call_count == 3
        assert record.status is SettlementStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_event_queries_are_chunked_and_sorted(self, adapter):
        def log_entry(request_id, block, index):
            return {
                "args": {
                    "requestId": request_id,
                    "player": ALICE,
                    "betAmount": 10,
                    "payoutAmount": 19,
                    "playerChoice": True,
                    "diceResult": True,
                    "isWinner": True,
                },
                "blockNumber": block,
                "logIndex": index,
                "transactionHash": bytes(32),
            }

        get_logs = adapter._betting.events.BetSettled.return_value.get_logs
        get_logs.side_effect = [
            [log_entry(2, 1, 1), log_entry(1, 1, 0)],
            [log_entry(3, 3, 0)],
            [],
        ]

        events = await adapter.get_bet_resolved_events(0, 5)

        assert get_logs.call_count == 3
        assert [e.request_id for e in events] == [1, 2, 3]
        assert events[0].tx_hash == "0x" + "00" * 32

    @pytest.mark.asyncio
    async def test_stats_derive_pending(self, adapter):
        stats_fn = adapter._contracts[PipelineKind.PAYOUT].functions.getContractStats
        stats_fn.return_value.call.return_value = (10, 6, 1, 500)

        stats = await adapter.get_stats(PipelineKind.PAYOUT)

        assert stats.pending_count == 3
        assert stats.total_disbursed == 500

    @pytest.mark.asyncio
    async def test_connection_errors_classified_after_retries(self, adapter, metrics):
        adapter._metrics = metrics
        info = adapter._contracts[PipelineKind.PAYOUT].functions.getPayoutInfo
        info.return_value.call.side_effect = ConnectionError("connection refused")

        with pytest.raises(LedgerUnavailableError):
            await adapter.get_record(PipelineKind.PAYOUT, 42)
        assert info.return_value.call.call_count == 2
        assert (
            metrics.registry.get_sample_value(
                "croupier_ledger_call_seconds_count",
                {"operation": "payout_get_record", "status": "error"},
            )
            == 2.0
        )


class TestTransactions:
    @pytest.fixture
    def signer(self, adapter):
        account = MagicMock()
        account.address = OPERATOR
        account.sign_transaction.return_value.raw_transaction = b"signed"
        adapter._account = account
        eth = adapter._w3.eth
        eth.get_transaction_count.return_value = 5
        eth.send_raw_transaction.return_value = bytes.fromhex("ab" * 32)
        eth.get_transaction_receipt.return_value = {"blockNumber": 10, "gasUsed": 50_000, "status": 1}
        eth.block_number = 10
        return account

    @pytest.mark.asyncio
    async def test_read_only_without_key(self, adapter):
        with pytest.raises(ConfigurationError):
            await adapter.execute_request(PipelineKind.PAYOUT, 42)

    @pytest.mark.asyncio
    async def test_execute_sends_and_confirms(self, adapter, signer):
        execute = adapter._contracts[PipelineKind.PAYOUT].functions.executePayout

        receipt = await adapter.execute_request(PipelineKind.PAYOUT, 42)

        assert receipt.tx_hash == "0x" + "ab" * 32
        assert receipt.block_number == 10
        assert receipt.status is True
        execute.assert_called_with(42)
        params = execute.return_value.build_transaction.call_args.args[0]
        assert params["nonce"] == 5
        assert params["gas"] == 600_000

    @pytest.mark.asyncio
    async def test_nonce_advances_locally(self, adapter, signer):
        await adapter.execute_request(PipelineKind.PAYOUT, 1)
        await adapter.execute_request(PipelineKind.PAYOUT, 2)

        build = adapter._contracts[PipelineKind.PAYOUT].functions.executePayout.return_value.build_transaction
        assert build.call_args.args[0]["nonce"] == 6

    @pytest.mark.asyncio
    async def test_preflight_revert_not_sent(self, adapter, signer):
        execute = adapter._contracts[PipelineKind.PAYOUT].functions.executePayout
        execute.return_value.call.side_effect = Exception("execution reverted: Too early")

        with pytest.raises(LedgerRevertError) as exc:
            await adapter.execute_request(PipelineKind.PAYOUT, 42)

        assert exc.value.reason == "Too early"
        adapter._w3.eth.send_raw_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, adapter, signer):
        adapter._w3.eth.get_transaction_receipt.return_value = {
            "blockNumber": 10,
            "gasUsed": 50_000,
            "status": 0,
        }
        with pytest.raises(LedgerRevertError):
            await adapter.execute_request(PipelineKind.PAYOUT, 42)

    @pytest.mark.asyncio
    async def test_payout_submit_arguments(self, adapter, signer):
        draft = SettlementDraft(
            pipeline=PipelineKind.PAYOUT,
            request_id=42,
            beneficiary=ALICE,
            asset=AssetType.native(),
            amount=19,
            source_bet_amount=10,
            source_created_at=100,
            source_settled_at=105,
            choice=True,
            outcome=True,
            is_winner=True,
        )

        await adapter.submit_request(draft)

        submit = adapter._contracts[PipelineKind.PAYOUT].functions.submitPayoutRequest
        args = submit.call_args.args
        assert args[0] == 42
        assert args[3] == 19
        assert args[-3:] == (True, True, True)
        assert all(type(a) is bool for a in args[-3:])
