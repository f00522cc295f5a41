"""Configuration management for attestpay.

Loads endpoints, contract addresses, keys and pipeline timings from
environment variables using Pydantic. Secrets belong in .env (never
hardcoded).

Usage:
    from attestpay.config import settings

    print(settings.network)        # "coston2"
    print(settings.rpc_endpoint)   # preset RPC unless RPC_URL is set
"""

from dataclasses import dataclass

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class NetworkPreset:
    """Default endpoints for one attestation network deployment."""

    chain_id: int
    rpc_url: str
    ws_url: str
    verifier_url: str
    da_layer_url: str


NETWORK_PRESETS: dict[str, NetworkPreset] = {
    "coston2": NetworkPreset(
        chain_id=114,
        rpc_url="https://coston2-api.flare.network/ext/C/rpc",
        ws_url="wss://coston2-api.flare.network/ext/C/ws",
        verifier_url="https://fdc-verifiers-testnet.flare.network",
        da_layer_url="https://ctn2-data-availability.flare.network",
    ),
    "flare": NetworkPreset(
        chain_id=14,
        rpc_url="https://flare-api.flare.network/ext/C/rpc",
        ws_url="wss://flare-api.flare.network/ext/C/ws",
        verifier_url="https://fdc-verifiers-mainnet.flare.network",
        da_layer_url="https://flr-data-availability.flare.network",
    ),
}

# Flare contract registry, identical on every Flare network
FLARE_CONTRACT_REGISTRY_ADDRESS = "0xaD67FE66660Fb8dFE9d6b1b4240d8650e30F6019"

# Public key accepted by the Flare-hosted verifiers
DEFAULT_VERIFIER_API_KEY = "00000000-0000-0000-0000-000000000000"

# eth_getLogs range accepted by the public Flare RPC nodes
DEFAULT_LOG_SCAN_MAX_BLOCKS = 30


class Settings(BaseSettings):
    """attestpay configuration from environment variables.

    Loads from .env file automatically. Validates on instantiation.
    Nothing is required at import time; commands that need a key or a
    contract address check for it before doing any work.

    Attributes:
        network: Attestation network preset ('coston2' or 'flare')
        rpc_url / ws_url / verifier_url / da_layer_url: Preset overrides
        private_key: Hex private key paying fees and submitting claims
        settlement_address: Settlement (escrow) contract on the source ledger
        settlement_start_block: Deployment block of the settlement contract
        log_scan_max_blocks: Block window of one eth_getLogs request
        destination_rpc_url: RPC of the ledger holding payout receipts
        payout_address: Receipt store contract on the destination ledger
        relay_private_key: Credential of the relay writer (falls back to private_key)
        finalization_poll_interval: Seconds between finality checks
        proof_poll_interval: Seconds between DA layer queries
        finalization_max_wait / proof_max_wait: Optional bounds (None = wait forever)
        relay_lookback_blocks: History replayed when the relay starts
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown env vars
    )

    # Network
    network: str = Field(default="coston2", description="Network preset name")
    rpc_url: str | None = Field(default=None, description="Source ledger RPC override")
    ws_url: str | None = Field(default=None, description="Source ledger websocket override")
    verifier_url: str | None = Field(default=None, description="Attestation verifier override")
    da_layer_url: str | None = Field(default=None, description="DA layer override")
    verifier_api_key: str = Field(
        default=DEFAULT_VERIFIER_API_KEY,
        description="X-API-KEY sent to the attestation verifier",
    )
    registry_address: str = Field(
        default=FLARE_CONTRACT_REGISTRY_ADDRESS,
        description="Flare contract registry address",
    )

    # Credentials (optional at import, checked by commands that sign)
    private_key: str | None = Field(default=None, description="Signer private key (hex)")

    # Settlement ledger
    settlement_address: str | None = Field(default=None, description="Settlement contract address")
    settlement_start_block: int = Field(
        default=0,
        ge=0,
        description="First block searched when numbering claims of a stream",
    )
    log_scan_max_blocks: int = Field(
        default=DEFAULT_LOG_SCAN_MAX_BLOCKS,
        ge=1,
        description="Largest block range requested in one eth_getLogs call",
    )

    # Destination ledger (relay)
    destination_rpc_url: str = Field(
        default="https://testnet-rpc.plasma.to",
        description="Destination ledger RPC",
    )
    payout_address: str | None = Field(default=None, description="Payout receipt contract address")
    relay_private_key: str | None = Field(
        default=None,
        description="Key allowed to call recordPayout (defaults to private_key)",
    )
    relay_lookback_blocks: int = Field(
        default=10_000,
        ge=0,
        description="Blocks of PaymentClaimed history replayed on relay start",
    )
    relay_concurrency: int = Field(default=4, ge=1, le=32, description="Concurrent relay writes")

    # Pipeline timings (seconds)
    finalization_poll_interval: float = Field(default=30.0, gt=0)
    finalization_max_wait: float | None = Field(default=None, gt=0)
    proof_initial_delay: float = Field(default=10.0, ge=0)
    proof_poll_interval: float = Field(default=10.0, gt=0)
    proof_max_wait: float | None = Field(default=None, gt=0)
    fee_retry_attempts: int = Field(default=3, ge=1, le=10)
    fee_retry_backoff: float = Field(default=5.0, ge=0)
    transaction_timeout: float = Field(default=180.0, gt=0)

    # Rate Limiting (conservative defaults)
    verifier_rate_limit: int = Field(default=5, ge=1, description="Verifier requests/second")
    da_layer_rate_limit: int = Field(default=5, ge=1, description="DA layer requests/second")

    # System Settings
    log_level: str = Field(default="INFO", description="Logging level")
    checkpoint_dir: str = Field(default="data", description="Pipeline checkpoint directory")

    @field_validator("network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        """Ensure network names a known preset."""
        v_lower = v.lower()
        if v_lower not in NETWORK_PRESETS:
            raise ValueError(f"network must be one of {sorted(NETWORK_PRESETS)}, got '{v}'")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid:
            raise ValueError(f"log_level must be one of {valid}, got {v}")
        return v_upper

    @property
    def preset(self) -> NetworkPreset:
        return NETWORK_PRESETS[self.network]

    @property
    def rpc_endpoint(self) -> str:
        return self.rpc_url or self.preset.rpc_url

    @property
    def ws_endpoint(self) -> str:
        return self.ws_url or self.preset.ws_url

    @property
    def verifier_endpoint(self) -> str:
        return self.verifier_url or self.preset.verifier_url

    @property
    def da_layer_endpoint(self) -> str:
        return self.da_layer_url or self.preset.da_layer_url


# Global settings instance, loaded once at import
settings = Settings()
