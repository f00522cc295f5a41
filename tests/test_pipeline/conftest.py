"""Shared fixtures for pipeline tests."""

from typing import Callable

import pytest
from eth_abi import encode

from attestpay.chain.abi import RESPONSE_ABI_TYPE
from attestpay.pipeline.assembler import encode_unit_count
from attestpay.pipeline.request_builder import (
    AttestationRequest,
    GitHubRepoSource,
    build_request,
    to_utf8_hex,
)

SIBLINGS = ("0x" + "11" * 32, "0x" + "22" * 32, "0x" + "33" * 32)


def _tag(value: str) -> bytes:
    return bytes.fromhex(to_utf8_hex(value)[2:])


@pytest.fixture
def github_request() -> AttestationRequest:
    return build_request(GitHubRepoSource("octocat/hello-world"))


@pytest.fixture
def siblings() -> tuple[str, ...]:
    return SIBLINGS


@pytest.fixture
def response_hex() -> Callable[..., str]:
    """Factory: ABI-encoded Web2Json response answering `request`."""

    def _make(
        request: AttestationRequest,
        round_id: int,
        unit_count: int,
        attestation_type: str | None = None,
        url: str | None = None,
    ) -> str:
        request_body = (
            url or request.source_url,
            request.http_method,
            request.headers,
            request.query_params,
            request.body,
            request.post_process_filter,
            request.abi_signature,
        )
        value = (
            _tag(attestation_type or request.attestation_type),
            _tag(request.source_id),
            round_id,
            1_700_000_000,
            request_body,
            (encode_unit_count(unit_count),),
        )
        return "0x" + encode([RESPONSE_ABI_TYPE], [value]).hex()

    return _make
