"""Request Builder — work-evidence source → canonical attestation request.

Building is pure: the same (source, cursor) always gives a byte-identical
descriptor. The post-process filter reducing the API response to a single
unit count is fixed per source kind; attestation providers apply exactly
this filter, so they cannot reinterpret the response.

Turning the descriptor into the submittable ABI encoding is a separate,
side-effect-free call to the verifier (RequestBuilder.prepare).

Usage:
    request = build_request(GitHubRepoSource("owner/repo"), since=stream_cursor)
    async with VerifierClient(settings.verifier_endpoint) as verifier:
        prepared = await RequestBuilder(verifier).prepare(request)
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from attestpay.chain.settlement import Stream
from attestpay.clients.base import APIProviderError
from attestpay.clients.verifier import VerifierClient
from attestpay.errors import RequestPreparationError, TransientError

logger = logging.getLogger(__name__)

ATTESTATION_TYPE = "Web2Json"
SOURCE_ID = "PublicWeb2"

# ABI of the filtered response: a single uint256 unit count
UNIT_COUNT_ABI_SIGNATURE = (
    '{"components": [{"internalType": "uint256", "name": "commitCount", "type": "uint256"}], '
    '"name": "task", "type": "tuple"}'
)


def to_utf8_hex(value: str) -> str:
    """Encode a short tag as 0x-prefixed UTF-8 hex, right-padded to bytes32."""
    encoded = value.encode("utf-8").hex()
    if len(encoded) > 64:
        raise ValueError(f"Tag '{value}' does not fit in 32 bytes")
    return "0x" + encoded.ljust(64, "0")


def _compact_json(value: dict[str, Any]) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _iso_millis(ts: datetime) -> str:
    # Same format as Drive revision times, which jq compares as strings
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


@dataclass(frozen=True)
class GitHubRepoSource:
    """Commits of a public GitHub repository."""

    repo: str  # "owner/name"

    def __post_init__(self) -> None:
        owner, _, name = self.repo.partition("/")
        if not owner or not name or "/" in name:
            raise ValueError(f"GitHub repo must look like 'owner/name', got '{self.repo}'")


@dataclass(frozen=True)
class GoogleDocSource:
    """Revisions of a Google Drive document, read with a bearer token."""

    file_id: str
    access_token: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.file_id:
            raise ValueError("Google document id is required")
        if not self.access_token:
            raise ValueError("Google access token is required")


WorkSource = Union[GitHubRepoSource, GoogleDocSource]


@dataclass(frozen=True)
class WorkSourceConfig:
    """Caller-persisted defaults used to pre-fill a pipeline run.

    Replaces ambient UI state (last used repository, cached token) with an
    explicit object handed to the builder.
    """

    github_repo: str | None = None
    google_file_id: str | None = None
    google_access_token: str | None = field(default=None, repr=False)

    def source(self) -> WorkSource:
        if self.github_repo:
            return GitHubRepoSource(self.github_repo)
        if self.google_file_id and self.google_access_token:
            return GoogleDocSource(self.google_file_id, self.google_access_token)
        raise ValueError("Configure either a GitHub repo or a Google document id and token")


@dataclass(frozen=True)
class AttestationRequest:
    """Canonical Web2Json request descriptor. Immutable once built."""

    source_url: str
    http_method: str
    headers: str
    query_params: str
    body: str
    post_process_filter: str
    abi_signature: str
    attestation_type: str = ATTESTATION_TYPE
    source_id: str = SOURCE_ID

    def request_body(self) -> dict[str, str]:
        return {
            "url": self.source_url,
            "httpMethod": self.http_method,
            "headers": self.headers,
            "queryParams": self.query_params,
            "body": self.body,
            "postProcessJq": self.post_process_filter,
            "abiSignature": self.abi_signature,
        }

    def to_verifier_payload(self) -> dict[str, Any]:
        return {
            "attestationType": to_utf8_hex(self.attestation_type),
            "sourceId": to_utf8_hex(self.source_id),
            "requestBody": self.request_body(),
        }

    def canonical_bytes(self) -> bytes:
        """Deterministic byte form; equal bytes means the same request."""
        return _compact_json(self.to_verifier_payload()).encode("utf-8")

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


@dataclass(frozen=True)
class PreparedRequest:
    """A request together with the verifier's ABI encoding of it."""

    request: AttestationRequest
    abi_encoded_request: bytes

    @property
    def request_hex(self) -> str:
        return "0x" + self.abi_encoded_request.hex()


def build_request(source: WorkSource, since: datetime | None = None) -> AttestationRequest:
    """Build the attestation request counting work units of `source`.

    Args:
        source: Where the work evidence lives
        since: Cursor; None counts all history (first claim of a stream),
            otherwise only units strictly after the cursor are counted

    Returns:
        AttestationRequest whose filter yields {commitCount: <n>}
    """
    if since is not None and since.tzinfo is None:
        raise ValueError("since cursor must be timezone-aware")

    if isinstance(source, GitHubRepoSource):
        # GitHub's `since` is inclusive; shift by one second to make it strict
        params: dict[str, Any] = {"per_page": "100"}
        if since is not None:
            params["since"] = _iso(since + timedelta(seconds=1))
        return AttestationRequest(
            source_url=f"https://api.github.com/repos/{source.repo}/commits",
            http_method="GET",
            headers="{}",
            query_params=_compact_json(params),
            body="{}",
            post_process_filter="{commitCount: . | length}",
            abi_signature=UNIT_COUNT_ABI_SIGNATURE,
        )

    if isinstance(source, GoogleDocSource):
        if since is None:
            jq = "{commitCount: .revisions | length}"
        else:
            jq = f'{{commitCount: [.revisions[] | select(.modifiedTime > "{_iso_millis(since)}")] | length}}'
        return AttestationRequest(
            source_url=f"https://www.googleapis.com/drive/v3/files/{source.file_id}/revisions",
            http_method="GET",
            headers=_compact_json({"Authorization": f"Bearer {source.access_token}"}),
            query_params=_compact_json({"fields": "revisions(id,modifiedTime)"}),
            body="{}",
            post_process_filter=jq,
            abi_signature=UNIT_COUNT_ABI_SIGNATURE,
        )

    raise TypeError(f"Unsupported work source: {type(source).__name__}")


def since_cursor(stream: Stream) -> datetime | None:
    """Cursor for the next claim on `stream`.

    None for the first claim (count all history), else the last claim time.
    """
    if not stream.has_prior_claim:
        return None
    return datetime.fromtimestamp(stream.last_claim_time, tz=timezone.utc)


class RequestBuilder:
    """Prepares canonical requests through the verifier.

    Args:
        verifier: Open VerifierClient
    """

    def __init__(self, verifier: VerifierClient) -> None:
        self.verifier = verifier

    async def prepare(self, request: AttestationRequest) -> PreparedRequest:
        """Obtain the ABI-encoded form of `request`.

        Raises:
            TransientError: Verifier unreachable after client retries
            RequestPreparationError: Verifier refused the request
        """
        try:
            response = await self.verifier.prepare_request(request.to_verifier_payload())
        except APIProviderError as e:
            if e.is_client_error:
                raise RequestPreparationError(
                    f"Verifier rejected request ({e.status_code}): {e.response_body}"
                ) from e
            raise TransientError(f"Verifier unavailable: {e}") from e

        status = response.get("status")
        encoded = response.get("abiEncodedRequest")
        if status != "VALID" or not encoded:
            raise RequestPreparationError(f"Verifier returned status {status!r}", status=status)

        logger.info("Prepared request %s for %s", request.fingerprint[:12], request.source_url)
        return PreparedRequest(request=request, abi_encoded_request=bytes.fromhex(encoded.removeprefix("0x")))
