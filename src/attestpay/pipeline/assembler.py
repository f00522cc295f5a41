"""Proof Assembler — raw DA payload → the structure claim() expects.

The leaf response is the ABI encoding of IWeb2Json.Response:

    (bytes32 attestationType, bytes32 sourceId, uint64 votingRound,
     uint64 lowestUsedTimestamp,
     (string url, string httpMethod, string headers, string queryParams,
      string body, string postProcessJq, string abiSignature) requestBody,
     (bytes abiEncodedData) responseBody)

abiEncodedData carries the filtered result, a tuple(uint256 commitCount).

Decoding never coerces: a payload that does not decode, or that answers a
different round or request, raises ProofDecodeError with the raw hex.
"""

import logging
from dataclasses import dataclass

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from attestpay.chain.abi import RESPONSE_ABI_TYPE
from attestpay.errors import ProofDecodeError
from attestpay.pipeline.request_builder import AttestationRequest, to_utf8_hex
from attestpay.pipeline.retriever import RawProof

logger = logging.getLogger(__name__)

_UNIT_COUNT_TYPE = "(uint256)"


@dataclass(frozen=True)
class Web2JsonRequestBody:
    url: str
    http_method: str
    headers: str
    query_params: str
    body: str
    post_process_jq: str
    abi_signature: str

    def as_tuple(self) -> tuple:
        return (
            self.url,
            self.http_method,
            self.headers,
            self.query_params,
            self.body,
            self.post_process_jq,
            self.abi_signature,
        )


@dataclass(frozen=True)
class Web2JsonResponse:
    """Decoded attestation response, field for field."""

    attestation_type: bytes
    source_id: bytes
    voting_round: int
    lowest_used_timestamp: int
    request_body: Web2JsonRequestBody
    abi_encoded_data: bytes

    def as_tuple(self) -> tuple:
        return (
            self.attestation_type,
            self.source_id,
            self.voting_round,
            self.lowest_used_timestamp,
            self.request_body.as_tuple(),
            (self.abi_encoded_data,),
        )


@dataclass(frozen=True)
class MerkleProof:
    """Inclusion path of one response in one round's Merkle tree."""

    sibling_hashes: tuple[bytes, ...]
    leaf_response: bytes

    @property
    def depth(self) -> int:
        return len(self.sibling_hashes)


@dataclass(frozen=True)
class ClaimProof:
    """Everything claim() needs, bound to one request in one round."""

    merkle_proof: MerkleProof
    decoded_response: Web2JsonResponse
    unit_count: int
    round_id: int
    request_fingerprint: str

    def as_contract_argument(self) -> tuple:
        return (list(self.merkle_proof.sibling_hashes), self.decoded_response.as_tuple())


def _hex_bytes(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


def decode_response(response_hex: str) -> Web2JsonResponse:
    """Decode a leaf response. Raises ProofDecodeError on any mismatch."""
    try:
        (raw,) = decode([RESPONSE_ABI_TYPE], _hex_bytes(response_hex))
    except (DecodingError, ValueError, TypeError) as e:
        raise ProofDecodeError(f"Response does not match the Web2Json schema: {e}", raw_hex=response_hex) from e

    attestation_type, source_id, voting_round, lowest_used, request_body, response_body = raw
    return Web2JsonResponse(
        attestation_type=attestation_type,
        source_id=source_id,
        voting_round=voting_round,
        lowest_used_timestamp=lowest_used,
        request_body=Web2JsonRequestBody(*request_body),
        abi_encoded_data=response_body[0],
    )


def decode_unit_count(abi_encoded_data: bytes) -> int:
    (result,) = decode([_UNIT_COUNT_TYPE], abi_encoded_data)
    return result[0]


def encode_unit_count(unit_count: int) -> bytes:
    return encode([_UNIT_COUNT_TYPE], [(unit_count,)])


class ProofAssembler:
    """Turns a RawProof into a checked ClaimProof."""

    def assemble(self, raw: RawProof, request: AttestationRequest, round_id: int) -> ClaimProof:
        """Decode, cross-check and pair the response with its Merkle path.

        Raises:
            ProofDecodeError: Malformed payload, or it answers another
                round, attestation type or request
        """
        response = decode_response(raw.response_hex)

        def _reject(reason: str) -> ProofDecodeError:
            logger.error("Rejecting proof for round %d: %s", round_id, reason)
            return ProofDecodeError(reason, raw_hex=raw.response_hex)

        if response.voting_round != round_id:
            raise _reject(f"response is for round {response.voting_round}, expected {round_id}")
        if response.attestation_type != _hex_bytes(to_utf8_hex(request.attestation_type)):
            raise _reject(f"unexpected attestation type 0x{response.attestation_type.hex()}")
        if response.request_body.url != request.source_url:
            raise _reject(f"response echoes url {response.request_body.url!r}, expected {request.source_url!r}")
        if response.request_body.post_process_jq != request.post_process_filter:
            raise _reject("response was produced with a different post-process filter")

        try:
            unit_count = decode_unit_count(response.abi_encoded_data)
        except (DecodingError, ValueError, TypeError) as e:
            raise ProofDecodeError(f"Unit count does not decode: {e}", raw_hex=raw.response_hex) from e

        try:
            siblings = tuple(_hex_bytes(h) for h in raw.proof)
        except ValueError as e:
            raise ProofDecodeError(f"Merkle path is not hex: {e}", raw_hex=raw.response_hex) from e
        if any(len(s) != 32 for s in siblings):
            raise _reject("Merkle path contains a hash that is not 32 bytes")

        logger.info("Assembled proof: round %d, depth %d, %d units", round_id, len(siblings), unit_count)
        return ClaimProof(
            merkle_proof=MerkleProof(sibling_hashes=siblings, leaf_response=_hex_bytes(raw.response_hex)),
            decoded_response=response,
            unit_count=unit_count,
            round_id=round_id,
            request_fingerprint=request.fingerprint,
        )
