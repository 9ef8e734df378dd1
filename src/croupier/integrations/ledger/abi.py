"""Minimal ABIs for the betting, payout and mining ledgers.

Only the functions and events the settlement pipelines touch are listed.
Types must match the deployed contracts exactly: event topics and function
selectors are hashed from them. Structs are decoded positionally.
"""

from typing import Any

from croupier.domain.settlement import PipelineKind


def _params(fields: list[tuple[str, str]]) -> list[dict[str, Any]]:
    return [{"name": name, "type": typ} for name, typ in fields]


def _function(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[dict[str, Any]],
    mutability: str = "view",
) -> dict[str, Any]:
    return {
        "inputs": _params(inputs),
        "name": name,
        "outputs": outputs,
        "stateMutability": mutability,
        "type": "function",
    }


def _struct(fields: list[tuple[str, str]], array: bool = False) -> list[dict[str, Any]]:
    return [
        {
            "name": "",
            "type": "tuple[]" if array else "tuple",
            "components": _params(fields),
        }
    ]


BET_INFO_FIELDS = [
    ("requestId", "uint256"),
    ("player", "address"),
    ("betAmount", "uint96"),
    ("tokenAddress", "address"),
    ("payoutAmount", "uint96"),
    ("createdAt", "uint64"),
    ("settledAt", "uint64"),
    ("status", "uint8"),
    ("isEvenChoice", "bool"),
    ("diceResult", "bool"),
]

# BetStatus values on the betting ledger.
BET_STATUS_WON = 2
BET_STATUS_LOST = 3

# Shared by both disbursement ledgers. ``amount`` is payoutAmount on the
# payout ledger and miningReward on the mining ledger.
RECORD_FIELDS = [
    ("requestId", "uint256"),
    ("player", "address"),
    ("tokenAddress", "address"),
    ("amount", "uint256"),
    ("betAmount", "uint256"),
    ("betCreatedAt", "uint64"),
    ("betSettledAt", "uint64"),
    ("createdAt", "uint64"),
    ("disbursedAt", "uint64"),
    ("status", "uint8"),
    ("attempts", "uint8"),
    ("playerChoice", "bool"),
    ("diceResult", "bool"),
    ("isWinner", "bool"),
]

# getContractStats returns four words on both ledgers, with different meanings.
PAYOUT_STATS_FIELDS = [
    ("totalPayouts", "uint256"),
    ("successfulPayouts", "uint256"),
    ("failedPayouts", "uint256"),
    ("totalPayoutAmount", "uint256"),
]

MINING_STATS_FIELDS = [
    ("totalMiningRecords", "uint256"),
    ("totalCompletedMining", "uint256"),
    ("totalRewardsDistributed", "uint256"),
    ("contractBalance", "uint256"),
]

BETTING_ABI = [
    _function("getBetInfo", [("requestId", "uint256")], _struct(BET_INFO_FIELDS)),
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "requestId", "type": "uint256"},
            {"indexed": True, "name": "player", "type": "address"},
            {"indexed": False, "name": "betAmount", "type": "uint256"},
            {"indexed": False, "name": "payoutAmount", "type": "uint256"},
            {"indexed": False, "name": "playerChoice", "type": "bool"},
            {"indexed": False, "name": "diceResult", "type": "bool"},
            {"indexed": False, "name": "isWinner", "type": "bool"},
        ],
        "name": "BetSettled",
        "type": "event",
    },
]

_SUBMIT_PAYOUT_INPUTS = [
    ("requestId", "uint256"),
    ("player", "address"),
    ("tokenAddress", "address"),
    ("payoutAmount", "uint256"),
    ("betAmount", "uint256"),
    ("createdAt", "uint64"),
    ("settledAt", "uint64"),
    ("playerChoice", "bool"),
    ("diceResult", "bool"),
    ("isWinner", "bool"),
]

_SUBMIT_MINING_INPUTS = [
    ("requestId", "uint256"),
    ("player", "address"),
    ("tokenAddress", "address"),
    ("originalBetAmount", "uint256"),
    ("betCreatedAt", "uint64"),
    ("betSettledAt", "uint64"),
    ("playerChoice", "bool"),
    ("diceResult", "bool"),
    ("gameResult", "bool"),
]


def _disbursement_abi(
    info: str,
    batch_info: str,
    submit: str,
    submit_inputs: list[tuple[str, str]],
    execute: str,
    stats_fields: list[tuple[str, str]],
) -> list[dict[str, Any]]:
    return [
        _function(info, [("requestId", "uint256")], _struct(RECORD_FIELDS)),
        _function(batch_info, [("requestIds", "uint256[]")], _struct(RECORD_FIELDS, array=True)),
        _function("getContractStats", [], _params(stats_fields)),
        _function("startTime", [], _params([("", "uint256")])),
        _function(submit, submit_inputs, [], mutability="nonpayable"),
        _function(execute, [("requestId", "uint256")], [], mutability="nonpayable"),
    ]


PAYOUT_ABI = _disbursement_abi(
    "getPayoutInfo",
    "getBatchPayoutInfo",
    "submitPayoutRequest",
    _SUBMIT_PAYOUT_INPUTS,
    "executePayout",
    PAYOUT_STATS_FIELDS,
)

MINING_ABI = _disbursement_abi(
    "getMiningInfo",
    "getBatchMiningInfo",
    "submitMiningRequest",
    _SUBMIT_MINING_INPUTS,
    "executeMining",
    MINING_STATS_FIELDS,
)

ERC20_ABI = [
    _function("balanceOf", [("account", "address")], _params([("", "uint256")])),
]

ABI_BY_KIND = {
    PipelineKind.PAYOUT: PAYOUT_ABI,
    PipelineKind.MINING: MINING_ABI,
}
