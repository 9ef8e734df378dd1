"""web3.py implementation of the ledger adapter.

This adapter handles:
- BetSettled event queries and bet lookups on the betting ledger
- Record reads, request submission and execution on the payout and
  mining ledgers
- Native and token pool balance queries

web3.py is synchronous, so every call runs in a thread pool and is wrapped
in asyncio.wait_for(). Read-only calls are retried in place on transient
errors; state-changing calls are not (the retry scheduler re-drives the
whole idempotent operation instead).
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Sequence

import structlog
from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from croupier.core.clock import Clock, SystemClock
from croupier.core.config import ConfigManager
from croupier.core.errors import (
    ConfigurationError,
    CroupierError,
    LedgerRevertError,
    LedgerTimeoutError,
    RecordNotFoundError,
    classify_ledger_error,
)
from croupier.core.retry import RetryConfig, call_with_retry
from croupier.domain.settlement import (
    AggregateStats,
    AssetType,
    BetDetails,
    BetResolved,
    PipelineKind,
    SettlementDraft,
    SettlementRequest,
    SettlementStatus,
)
from croupier.integrations.ledger.abi import (
    ABI_BY_KIND,
    BET_STATUS_LOST,
    BET_STATUS_WON,
    BETTING_ABI,
    ERC20_ABI,
)
from croupier.integrations.ledger.base import LedgerAdapter, LedgerTimeouts, TxReceipt
from croupier.integrations.ledger.cache import TTLCache

log = structlog.get_logger()

DEFAULT_GAS_PRICE_GWEI = 2.0
DEFAULT_CONFIRMATIONS = 1
DEFAULT_LOG_CHUNK_SIZE = 500
DEFAULT_CACHE_TTL_SECONDS = 30.0


@dataclass(frozen=True)
class ContractBinding:
    """Function names and gas limits for one disbursement ledger."""

    kind: PipelineKind
    info_fn: str
    batch_info_fn: str
    submit_fn: str
    execute_fn: str
    submit_gas: int
    execute_gas: int


PAYOUT_BINDING = ContractBinding(
    kind=PipelineKind.PAYOUT,
    info_fn="getPayoutInfo",
    batch_info_fn="getBatchPayoutInfo",
    submit_fn="submitPayoutRequest",
    execute_fn="executePayout",
    submit_gas=400_000,
    execute_gas=600_000,
)

MINING_BINDING = ContractBinding(
    kind=PipelineKind.MINING,
    info_fn="getMiningInfo",
    batch_info_fn="getBatchMiningInfo",
    submit_fn="submitMiningRequest",
    execute_fn="executeMining",
    submit_gas=300_000,
    execute_gas=500_000,
)

DEFAULT_BINDINGS = {
    PipelineKind.PAYOUT: PAYOUT_BINDING,
    PipelineKind.MINING: MINING_BINDING,
}


def decode_bet(raw: Sequence[Any]) -> Optional[BetDetails]:
    """Decode a getBetInfo struct; None when the bet does not exist.

    The struct carries the player's parity choice and the rolled parity but no
    winner flag; a bet is won when the two match. Unsettled bets report
    settled_at 0 whatever the stored timestamp.
    """
    if int(raw[0]) == 0:
        return None
    settled = int(raw[7]) in (BET_STATUS_WON, BET_STATUS_LOST)
    choice, outcome = bool(raw[8]), bool(raw[9])
    return BetDetails(
        request_id=int(raw[0]),
        beneficiary=raw[1],
        bet_amount=int(raw[2]),
        asset=AssetType(raw[3]),
        payout_amount=int(raw[4]),
        created_at=int(raw[5]),
        settled_at=int(raw[6]) if settled else 0,
        choice=choice,
        outcome=outcome,
        is_winner=choice == outcome,
    )


def decode_record(kind: PipelineKind, raw: Sequence[Any]) -> Optional[SettlementRequest]:
    """Decode a payout/mining info struct; None when no record exists."""
    if int(raw[0]) == 0:
        return None
    disbursed_at = int(raw[8])
    return SettlementRequest(
        pipeline=kind,
        request_id=int(raw[0]),
        beneficiary=raw[1],
        asset=AssetType(raw[2]),
        amount=int(raw[3]),
        source_bet_amount=int(raw[4]),
        source_created_at=int(raw[5]),
        source_settled_at=int(raw[6]),
        created_at=int(raw[7]),
        disbursed_at=disbursed_at or None,
        status=SettlementStatus.from_wire(raw[9]),
        attempt_count=int(raw[10]),
    )


def decode_stats(kind: PipelineKind, raw: Sequence[Any]) -> AggregateStats:
    """Decode getContractStats.

    Payout ledger: (total, completed, failed, total paid out).
    Mining ledger: (total, completed, total rewarded, pool balance).
    Neither ledger counts expired records, so they stay in pending_count.
    """
    total, completed = int(raw[0]), int(raw[1])
    if kind is PipelineKind.PAYOUT:
        failed, disbursed = int(raw[2]), int(raw[3])
    else:
        failed, disbursed = 0, int(raw[2])
    return AggregateStats(
        total_requests=total,
        completed_count=completed,
        failed_count=failed,
        total_disbursed=disbursed,
        pending_count=max(0, total - completed - failed),
    )


class Web3LedgerAdapter(LedgerAdapter):
    """Ledger adapter backed by a JSON-RPC endpoint.

    Usage:
        ledger = Web3LedgerAdapter.from_config(config)
        await ledger.connect()
        record = await ledger.get_record(PipelineKind.PAYOUT, 42)
    """

    def __init__(
        self,
        rpc_url: str,
        betting_address: str,
        payout_address: Optional[str] = None,
        mining_address: Optional[str] = None,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        gas_price_wei: Optional[int] = None,
        bindings: Optional[dict[PipelineKind, ContractBinding]] = None,
        timeouts: Optional[LedgerTimeouts] = None,
        retry_config: Optional[RetryConfig] = None,
        log_chunk_size: int = DEFAULT_LOG_CHUNK_SIZE,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Optional[Clock] = None,
        metrics: Optional[Any] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """Initialize the adapter.

        Args:
            rpc_url: JSON-RPC endpoint.
            betting_address: Betting ledger contract address.
            payout_address: Payout ledger address (None disables the pipeline).
            mining_address: Mining ledger address (None disables the pipeline).
            private_key: Operator key; without it the adapter is read-only.
            chain_id: Expected chain id, verified on connect.
            confirmations: Blocks required before a transaction is final.
            gas_price_wei: Fixed gas price; None uses the node's estimate.
            bindings: Function names and gas limits per pipeline.
            timeouts: Per-call timeouts.
            retry_config: In-place retry policy for read-only calls.
            log_chunk_size: Maximum block span of a single log query.
            cache_ttl_seconds: Lifetime of cached immutable reads.
            clock: Time source for cache expiry.
            metrics: Optional MetricsEmitter for ledger call latency.
            executor: Thread pool for the synchronous web3 client.
        """
        self._rpc_url = rpc_url
        self._betting_address = betting_address
        self._addresses = {
            PipelineKind.PAYOUT: payout_address,
            PipelineKind.MINING: mining_address,
        }
        self._private_key = private_key
        self._chain_id = chain_id
        self._confirmations = max(1, confirmations)
        self._gas_price_wei = gas_price_wei
        self._bindings = bindings or dict(DEFAULT_BINDINGS)
        self._timeouts = timeouts or LedgerTimeouts()
        self._retry_config = retry_config or RetryConfig()
        self._log_chunk_size = max(1, log_chunk_size)
        self._metrics = metrics
        self._executor = executor or ThreadPoolExecutor(max_workers=8)
        self._log = log.bind(component="web3_ledger")

        clock = clock or SystemClock()
        self._bet_cache: TTLCache[BetDetails] = TTLCache(cache_ttl_seconds, clock=clock)
        self._record_cache: TTLCache[SettlementRequest] = TTLCache(cache_ttl_seconds, clock=clock)

        self._w3: Optional[Web3] = None
        self._account = None
        self._betting = None
        self._contracts: dict[PipelineKind, Any] = {}
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._connected = False

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        clock: Optional[Clock] = None,
        metrics: Optional[Any] = None,
    ) -> "Web3LedgerAdapter":
        """Build an adapter from the ``[ledger]`` config section."""
        rpc_url = config.require("ledger.rpc_url")
        betting_address = config.require("ledger.betting_address")

        gas_price_gwei = config.get_float("ledger.gas_price_gwei", DEFAULT_GAS_PRICE_GWEI)
        bindings = {
            PipelineKind.PAYOUT: replace(
                PAYOUT_BINDING,
                submit_gas=config.get_int("ledger.payout_submit_gas", PAYOUT_BINDING.submit_gas),
                execute_gas=config.get_int("ledger.payout_execute_gas", PAYOUT_BINDING.execute_gas),
            ),
            PipelineKind.MINING: replace(
                MINING_BINDING,
                submit_gas=config.get_int("ledger.mining_submit_gas", MINING_BINDING.submit_gas),
                execute_gas=config.get_int("ledger.mining_execute_gas", MINING_BINDING.execute_gas),
            ),
        }
        timeouts = LedgerTimeouts(
            call=config.get_float("ledger.call_timeout_seconds", 15.0),
            submit=config.get_float("ledger.submit_timeout_seconds", 30.0),
            confirmation=config.get_float("ledger.confirmation_timeout_seconds", 120.0),
            poll_interval=config.get_float("ledger.poll_interval_seconds", 1.0),
        )
        chain_id = config.get_int("ledger.chain_id", 0) or None

        return cls(
            rpc_url=rpc_url,
            betting_address=betting_address,
            payout_address=config.get("ledger.payout_address") or None,
            mining_address=config.get("ledger.mining_address") or None,
            private_key=config.get("ledger.private_key") or None,
            chain_id=chain_id,
            confirmations=config.get_int("ledger.confirmations", DEFAULT_CONFIRMATIONS),
            gas_price_wei=int(gas_price_gwei * 10**9) if gas_price_gwei > 0 else None,
            bindings=bindings,
            timeouts=timeouts,
            retry_config=RetryConfig.from_dict(config.get_section("ledger.retry")),
            log_chunk_size=config.get_int("ledger.log_chunk_size", DEFAULT_LOG_CHUNK_SIZE),
            cache_ttl_seconds=config.get_float(
                "ledger.cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS
            ),
            clock=clock,
            metrics=metrics,
        )

    @property
    def operator_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    @property
    def is_connected(self) -> bool:
        return self._connected and self._w3 is not None

    async def connect(self) -> None:
        """Connect to the RPC endpoint and bind contracts."""
        if self._connected:
            return

        self._w3 = Web3(
            Web3.HTTPProvider(self._rpc_url, request_kwargs={"timeout": self._timeouts.call})
        )
        if not await self._call("is_connected", self._w3.is_connected):
            raise classify_ledger_error(
                ConnectionError(f"Failed to connect to {self._rpc_url}"), context="connect"
            )

        if self._chain_id is not None:
            actual = await self._call("chain_id", lambda: self._w3.eth.chain_id)
            if actual != self._chain_id:
                raise ConfigurationError(
                    f"Connected to chain {actual}, expected {self._chain_id}"
                )

        if self._private_key:
            self._account = Account.from_key(self._private_key)

        self._betting = self._w3.eth.contract(
            address=Web3.to_checksum_address(self._betting_address),
            abi=BETTING_ABI,
        )
        for kind, address in self._addresses.items():
            if address:
                self._contracts[kind] = self._w3.eth.contract(
                    address=Web3.to_checksum_address(address),
                    abi=ABI_BY_KIND[kind],
                )

        self._connected = True
        self._log.info(
            "ledger_connected",
            rpc=self._rpc_url,
            operator=self.operator_address,
            pipelines=[k.value for k in self._contracts],
            confirmations=self._confirmations,
        )

    async def close(self) -> None:
        """Drop the client and caches."""
        self._w3 = None
        self._account = None
        self._betting = None
        self._contracts = {}
        self._connected = False
        self._bet_cache.clear()
        self._record_cache.clear()
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Call plumbing
    # ------------------------------------------------------------------

    async def _run_sync(self, func: Callable[[], Any]) -> Any:
        """Run a synchronous function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func)

    async def _call(
        self,
        operation: str,
        func: Callable[[], Any],
        timeout: Optional[float] = None,
        request_id: Optional[int] = None,
    ) -> Any:
        """One ledger call with a timeout, errors mapped to the taxonomy."""
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._run_sync(func), timeout=timeout or self._timeouts.call
            )
        except Exception as e:
            self._observe(operation, "error", started)
            raise classify_ledger_error(e, context=operation, request_id=request_id) from e
        self._observe(operation, "ok", started)
        return result

    async def _read(
        self,
        operation: str,
        func: Callable[[], Any],
        request_id: Optional[int] = None,
    ) -> Any:
        """Read-only call with in-place retries on transient errors."""
        return await call_with_retry(
            self._call,
            operation,
            func,
            request_id=request_id,
            config=self._retry_config,
            log_context={"operation": operation, "request_id": request_id},
        )

    def _observe(self, operation: str, status: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_ledger_call(operation, status, time.monotonic() - started)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise ConfigurationError("Ledger not connected. Call connect() first.")

    def _contract(self, kind: PipelineKind) -> Any:
        self._ensure_connected()
        contract = self._contracts.get(kind)
        if contract is None:
            raise ConfigurationError(f"No {kind.value} ledger address configured")
        return contract

    # ------------------------------------------------------------------
    # Betting ledger
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        self._ensure_connected()
        return int(await self._read("get_block_number", lambda: self._w3.eth.block_number))

    async def get_bet_resolved_events(self, from_block: int, to_block: int) -> list[BetResolved]:
        self._ensure_connected()
        events: list[BetResolved] = []
        start = max(0, from_block)
        while start <= to_block:
            end = min(to_block, start + self._log_chunk_size - 1)
            logs = await self._read(
                "get_logs",
                lambda s=start, e=end: self._betting.events.BetSettled().get_logs(
                    from_block=s, to_block=e
                ),
            )
            events.extend(self._decode_event(entry) for entry in logs)
            start = end + 1
        events.sort(key=lambda ev: ev.position)
        return events

    @staticmethod
    def _decode_event(entry: Any) -> BetResolved:
        args = entry["args"]
        tx_hash = entry.get("transactionHash")
        return BetResolved(
            request_id=int(args["requestId"]),
            beneficiary=args["player"],
            bet_amount=int(args["betAmount"]),
            payout_amount=int(args["payoutAmount"]),
            choice=bool(args["playerChoice"]),
            outcome=bool(args["diceResult"]),
            is_winner=bool(args["isWinner"]),
            block_number=int(entry["blockNumber"]),
            log_index=int(entry["logIndex"]),
            tx_hash=Web3.to_hex(tx_hash) if tx_hash is not None else "",
        )

    async def get_bet_details(self, request_id: int) -> BetDetails:
        self._ensure_connected()
        cached = self._bet_cache.get(request_id)
        if cached is not None:
            return cached

        raw = await self._read(
            "get_bet_info",
            lambda: self._betting.functions.getBetInfo(request_id).call(),
            request_id=request_id,
        )
        details = decode_bet(raw)
        if details is None:
            raise RecordNotFoundError(
                f"Bet {request_id} not found", request_id=request_id, reason="bet_not_found"
            )
        # Settled bets never change.
        if details.is_settled:
            self._bet_cache.set(request_id, details)
        return details

    # ------------------------------------------------------------------
    # Disbursement ledgers
    # ------------------------------------------------------------------

    async def get_record(self, kind: PipelineKind, request_id: int) -> Optional[SettlementRequest]:
        contract = self._contract(kind)
        cached = self._record_cache.get((kind, request_id))
        if cached is not None:
            return cached

        binding = self._bindings[kind]
        raw = await self._read(
            f"{kind.value}_get_record",
            lambda: getattr(contract.functions, binding.info_fn)(request_id).call(),
            request_id=request_id,
        )
        record = decode_record(kind, raw)
        self._remember(record)
        return record

    async def get_records(
        self, kind: PipelineKind, request_ids: Sequence[int]
    ) -> list[Optional[SettlementRequest]]:
        contract = self._contract(kind)
        if not request_ids:
            return []
        binding = self._bindings[kind]
        ids = [int(rid) for rid in request_ids]
        raws = await self._read(
            f"{kind.value}_get_records",
            lambda: getattr(contract.functions, binding.batch_info_fn)(ids).call(),
        )
        records = [decode_record(kind, raw) for raw in raws]
        for record in records:
            self._remember(record)
        return records

    def _remember(self, record: Optional[SettlementRequest]) -> None:
        # Only terminal records are immutable.
        if record is not None and record.is_terminal:
            self._record_cache.set((record.pipeline, record.request_id), record)

    async def get_stats(self, kind: PipelineKind) -> AggregateStats:
        contract = self._contract(kind)
        raw = await self._read(
            f"{kind.value}_get_stats",
            lambda: contract.functions.getContractStats().call(),
        )
        return decode_stats(kind, raw)

    async def get_mining_start_time(self) -> int:
        """Start time of the mining ledger's decay schedule."""
        contract = self._contract(PipelineKind.MINING)
        return int(
            await self._read("mining_start_time", lambda: contract.functions.startTime().call())
        )

    async def submit_request(self, draft: SettlementDraft) -> TxReceipt:
        contract = self._contract(draft.pipeline)
        binding = self._bindings[draft.pipeline]
        beneficiary = Web3.to_checksum_address(draft.beneficiary)
        token = Web3.to_checksum_address(draft.asset.token)

        if draft.pipeline is PipelineKind.PAYOUT:
            args = (
                draft.request_id,
                beneficiary,
                token,
                draft.amount,
                draft.source_bet_amount,
                draft.source_created_at,
                draft.source_settled_at,
                bool(draft.choice),
                bool(draft.outcome),
                bool(draft.is_winner),
            )
        else:
            # The mining ledger derives the reward from the stake itself.
            args = (
                draft.request_id,
                beneficiary,
                token,
                draft.source_bet_amount,
                draft.source_created_at,
                draft.source_settled_at,
                bool(draft.choice),
                bool(draft.outcome),
                bool(draft.is_winner),
            )

        fn = getattr(contract.functions, binding.submit_fn)(*args)
        self._record_cache.invalidate((draft.pipeline, draft.request_id))
        return await self._transact(
            f"{draft.pipeline.value}_submit", fn, binding.submit_gas, draft.request_id
        )

    async def execute_request(self, kind: PipelineKind, request_id: int) -> TxReceipt:
        contract = self._contract(kind)
        binding = self._bindings[kind]
        fn = getattr(contract.functions, binding.execute_fn)(request_id)
        self._record_cache.invalidate((kind, request_id))
        try:
            return await self._transact(f"{kind.value}_execute", fn, binding.execute_gas, request_id)
        finally:
            self._record_cache.invalidate((kind, request_id))

    async def _transact(self, operation: str, fn: Any, gas: int, request_id: int) -> TxReceipt:
        """Preflight, sign, send and wait for finality."""
        if self._account is None:
            raise ConfigurationError("ledger.private_key is required for transactions")
        sender = self._account.address

        # Preflight surfaces the revert reason without spending gas.
        await self._call(
            f"{operation}_preflight",
            lambda: fn.call({"from": sender}),
            request_id=request_id,
        )

        async with self._nonce_lock:
            pending = await self._read(
                "get_nonce",
                lambda: self._w3.eth.get_transaction_count(sender, "pending"),
            )
            nonce = max(int(pending), self._next_nonce or 0)
            gas_price = self._gas_price_wei
            if gas_price is None:
                gas_price = int(await self._read("gas_price", lambda: self._w3.eth.gas_price))

            tx_params: dict[str, Any] = {
                "from": sender,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": gas_price,
            }
            if self._chain_id is not None:
                tx_params["chainId"] = self._chain_id

            tx = await self._call(
                f"{operation}_build", lambda: fn.build_transaction(tx_params), request_id=request_id
            )
            signed = self._account.sign_transaction(tx)
            try:
                tx_hash = await self._call(
                    operation,
                    lambda: self._w3.eth.send_raw_transaction(signed.raw_transaction),
                    timeout=self._timeouts.submit,
                    request_id=request_id,
                )
            except CroupierError:
                # Unknown whether the node took the nonce; re-read it next time.
                self._next_nonce = None
                raise
            self._next_nonce = nonce + 1

        tx_hash_hex = Web3.to_hex(tx_hash)
        self._log.info(
            "tx_submitted",
            operation=operation,
            request_id=request_id,
            tx_hash=tx_hash_hex,
            nonce=nonce,
            gas=gas,
        )

        receipt = await self._wait_for_confirmation(tx_hash, request_id)
        result = TxReceipt(
            tx_hash=tx_hash_hex,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            status=receipt["status"] == 1,
        )
        if not result.status:
            self._log.error(
                "tx_reverted",
                operation=operation,
                request_id=request_id,
                tx_hash=tx_hash_hex,
                block=result.block_number,
            )
            raise LedgerRevertError(
                f"{operation} transaction {tx_hash_hex} reverted",
                request_id=request_id,
                reason="reverted_on_chain",
            )

        self._log.info(
            "tx_confirmed",
            operation=operation,
            request_id=request_id,
            tx_hash=tx_hash_hex,
            block=result.block_number,
            gas_used=result.gas_used,
        )
        return result

    def _receipt_or_none(self, tx_hash: Any) -> Optional[Any]:
        try:
            return self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def _wait_for_confirmation(self, tx_hash: Any, request_id: int) -> Any:
        """Poll until the receipt has the configured number of confirmations."""

        async def poll() -> Any:
            while True:
                receipt = await self._call(
                    "get_receipt", lambda: self._receipt_or_none(tx_hash), request_id=request_id
                )
                if receipt is not None:
                    head = await self._call(
                        "get_block_number", lambda: self._w3.eth.block_number
                    )
                    if int(head) - int(receipt["blockNumber"]) + 1 >= self._confirmations:
                        return receipt
                await asyncio.sleep(self._timeouts.poll_interval)

        try:
            return await asyncio.wait_for(poll(), timeout=self._timeouts.confirmation)
        except asyncio.TimeoutError as e:
            raise LedgerTimeoutError(
                f"No confirmation for {Web3.to_hex(tx_hash)} within "
                f"{self._timeouts.confirmation}s",
                cause=e,
                request_id=request_id,
            ) from e

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_native_balance(self, address: Optional[str] = None) -> int:
        self._ensure_connected()
        target = address or self.operator_address
        if target is None:
            raise ConfigurationError("No address given and no operator key configured")
        checksum = Web3.to_checksum_address(target)
        return int(await self._read("get_balance", lambda: self._w3.eth.get_balance(checksum)))

    async def get_pool_balance(self, kind: PipelineKind, asset: AssetType) -> int:
        contract = self._contract(kind)
        if asset.is_native:
            return int(
                await self._read("get_balance", lambda: self._w3.eth.get_balance(contract.address))
            )
        token = self._w3.eth.contract(address=Web3.to_checksum_address(asset.token), abi=ERC20_ABI)
        return int(
            await self._read(
                "token_balance",
                lambda: token.functions.balanceOf(contract.address).call(),
            )
        )

