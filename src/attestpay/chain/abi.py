"""Minimal contract ABIs — only the entries attestpay calls or listens to."""

from typing import Any


def _arg(type_: str, name: str = "", components: list[dict] | None = None, indexed: bool | None = None) -> dict[str, Any]:
    arg: dict[str, Any] = {"type": type_, "name": name, "internalType": type_}
    if components is not None:
        arg["components"] = components
    if indexed is not None:
        arg["indexed"] = indexed
    return arg


def _fn(name: str, inputs: list[dict], outputs: list[dict] | None = None, mutability: str = "view") -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs or [],
        "stateMutability": mutability,
    }


def _event(name: str, inputs: list[dict]) -> dict[str, Any]:
    return {"type": "event", "name": name, "inputs": inputs, "anonymous": False}


REQUEST_BODY_COMPONENTS = [
    _arg("string", "url"),
    _arg("string", "httpMethod"),
    _arg("string", "headers"),
    _arg("string", "queryParams"),
    _arg("string", "body"),
    _arg("string", "postProcessJq"),
    _arg("string", "abiSignature"),
]

RESPONSE_COMPONENTS = [
    _arg("bytes32", "attestationType"),
    _arg("bytes32", "sourceId"),
    _arg("uint64", "votingRound"),
    _arg("uint64", "lowestUsedTimestamp"),
    _arg("tuple", "requestBody", REQUEST_BODY_COMPONENTS),
    _arg("tuple", "responseBody", [_arg("bytes", "abiEncodedData")]),
]

# eth-abi type string of IWeb2Json.Response
RESPONSE_ABI_TYPE = (
    "(bytes32,bytes32,uint64,uint64,"
    "(string,string,string,string,string,string,string),"
    "(bytes))"
)

REGISTRY_ABI = [
    _fn("getContractAddressByName", [_arg("string", "_name")], [_arg("address")]),
]

FDC_HUB_ABI = [
    _fn("requestAttestation", [_arg("bytes", "_data")], mutability="payable"),
    _event("AttestationRequest", [_arg("bytes", "data", indexed=False), _arg("uint256", "fee", indexed=False)]),
]

FEE_CONFIG_ABI = [
    _fn("getRequestFee", [_arg("bytes", "_data")], [_arg("uint256")]),
]

SYSTEMS_MANAGER_ABI = [
    _fn("firstVotingRoundStartTs", [], [_arg("uint64")]),
    _fn("votingEpochDurationSeconds", [], [_arg("uint64")]),
]

RELAY_ABI = [
    _fn("isFinalized", [_arg("uint256", "_protocolId"), _arg("uint256", "_votingRoundId")], [_arg("bool")]),
]

FDC_VERIFICATION_ABI = [
    _fn("fdcProtocolId", [], [_arg("uint8")]),
]

STREAM_COMPONENTS = [
    _arg("address", "employer"),
    _arg("address", "worker"),
    _arg("uint256", "usdRatePerInterval"),
    _arg("uint256", "claimInterval"),
    _arg("uint256", "totalDeposit"),
    _arg("uint256", "totalClaimed"),
    _arg("uint256", "lastClaimTime"),
    _arg("uint256", "createdAt"),
    _arg("bool", "active"),
]

SETTLEMENT_ABI = [
    _fn("getStream", [_arg("uint256", "_streamId")], [_arg("tuple", "", STREAM_COMPONENTS)]),
    _fn(
        "claim",
        [
            _arg("uint256", "_streamId"),
            _arg("tuple", "_proof", [
                _arg("bytes32[]", "merkleProof"),
                _arg("tuple", "data", RESPONSE_COMPONENTS),
            ]),
        ],
        mutability="nonpayable",
    ),
    _event("PaymentClaimed", [
        _arg("uint256", "streamId", indexed=True),
        _arg("address", "worker", indexed=True),
        _arg("uint256", "amountFLR", indexed=False),
        _arg("uint256", "amountUSD", indexed=False),
        _arg("uint256", "flrUsdPrice", indexed=False),
        _arg("bool", "bonusTriggered", indexed=False),
        _arg("uint256", "commitCount", indexed=False),
    ]),
]

PAYOUT_ABI = [
    _fn(
        "recordPayout",
        [
            _arg("bytes32", "_sourceEventId"),
            _arg("address", "_worker"),
            _arg("uint256", "_flareStreamId"),
            _arg("uint256", "_amountFLR"),
            _arg("uint256", "_amountUSD"),
            _arg("bool", "_bonusTriggered"),
            _arg("uint256", "_commitCount"),
        ],
        mutability="nonpayable",
    ),
    _fn("isRecorded", [_arg("bytes32", "_sourceEventId")], [_arg("bool")]),
]
