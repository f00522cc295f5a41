"""Command-line interface for attestpay.

Usage:
    attestpay claim --stream-id 3 --repo owner/name
    attestpay claim --stream-id 3 --doc-id FILE_ID --token ACCESS_TOKEN
    attestpay relay
    attestpay status --stream-id 3 --format json
"""

import argparse
import asyncio
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from web3 import AsyncHTTPProvider, AsyncWeb3

from attestpay import __version__
from attestpay.chain import AttestationNetwork, PayoutLedger, SettlementLedger, TransactionSigner
from attestpay.clients import DALayerClient, VerifierClient
from attestpay.config import Settings, settings
from attestpay.errors import AttestPayError
from attestpay.pipeline import PipelineRegistry, PipelineServices, ProgressEvent
from attestpay.pipeline.assembler import ProofAssembler
from attestpay.pipeline.checkpoint import CheckpointStore, stream_key
from attestpay.pipeline.poller import FinalizationPoller
from attestpay.pipeline.request_builder import RequestBuilder, WorkSourceConfig
from attestpay.pipeline.retriever import ProofRetriever
from attestpay.pipeline.scheduler import RoundScheduler
from attestpay.pipeline.submitter import ClaimSubmitter
from attestpay.relay import RelayForwarder

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1)


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="attestpay",
        description="attestpay — verified-work payroll claims",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  attestpay claim --stream-id 3 --repo octocat/hello-world
  attestpay relay
  attestpay status --stream-id 3

Endpoints, keys and contract addresses are read from the environment (.env).
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # claim command
    claim_parser = subparsers.add_parser(
        "claim",
        help="Attest work and claim payment for a stream",
        description="Run the full attest → finalize → prove → claim pipeline",
    )
    claim_parser.add_argument("--stream-id", type=int, required=True, help="Payment stream id")
    source_group = claim_parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument("--repo", type=str, help="GitHub repository (owner/name)")
    source_group.add_argument("--doc-id", type=str, help="Google Drive document id")
    claim_parser.add_argument("--token", type=str, default=None, help="Google OAuth access token")

    # relay command
    subparsers.add_parser(
        "relay",
        help="Mirror PaymentClaimed events to the payout ledger",
        description="Replay recent claims, then relay new ones until interrupted",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show a stream and its pending checkpoint")
    status_parser.add_argument("--stream-id", type=int, required=True, help="Payment stream id")
    status_parser.add_argument(
        "--format",
        type=str,
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )

    # version command
    subparsers.add_parser("version", help="Show version information")

    return parser


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context.

    Spins up a new event loop in a dedicated thread to avoid conflicts
    with any existing event loop.
    """
    def _target():
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    future = _executor.submit(_target)
    return future.result()


def _require(value: Optional[str], env_name: str) -> str:
    if not value:
        raise AttestPayError(f"{env_name} is not configured")
    return value


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.state.value:>10}] {event.message}", flush=True)


async def _claim(args: argparse.Namespace, config: Settings) -> dict:
    source = WorkSourceConfig(
        github_repo=args.repo,
        google_file_id=args.doc_id,
        google_access_token=args.token,
    ).source()

    w3 = AsyncWeb3(AsyncHTTPProvider(config.rpc_endpoint))
    signer = TransactionSigner(
        w3, _require(config.private_key, "PRIVATE_KEY"), confirmation_timeout=config.transaction_timeout
    )
    network = AttestationNetwork(w3, config.registry_address, log_scan_max_blocks=config.log_scan_max_blocks)
    settlement = SettlementLedger(
        w3,
        _require(config.settlement_address, "SETTLEMENT_ADDRESS"),
        start_block=config.settlement_start_block,
        log_scan_max_blocks=config.log_scan_max_blocks,
    )

    try:
        async with VerifierClient(
            config.verifier_endpoint, config.verifier_api_key, rate_limit=config.verifier_rate_limit
        ) as verifier, DALayerClient(
            config.da_layer_endpoint, rate_limit=config.da_layer_rate_limit
        ) as da_layer:
            services = PipelineServices(
                builder=RequestBuilder(verifier),
                scheduler=RoundScheduler(
                    network,
                    signer,
                    fee_retry_attempts=config.fee_retry_attempts,
                    fee_retry_backoff=config.fee_retry_backoff,
                ),
                poller=FinalizationPoller(
                    network,
                    interval=config.finalization_poll_interval,
                    max_wait=config.finalization_max_wait,
                ),
                retriever=ProofRetriever(
                    da_layer,
                    interval=config.proof_poll_interval,
                    initial_delay=config.proof_initial_delay,
                    max_wait=config.proof_max_wait,
                ),
                assembler=ProofAssembler(),
                submitter=ClaimSubmitter(settlement, signer),
                settlement=settlement,
                checkpoints=CheckpointStore(config.checkpoint_dir),
            )
            registry = PipelineRegistry(services)
            result = await registry.run(signer.address, args.stream_id, source, on_progress=_print_progress)
            return result.outcome.to_dict() if result else {}
    finally:
        await w3.provider.disconnect()


async def _relay(config: Settings) -> None:
    source_w3 = AsyncWeb3(AsyncHTTPProvider(config.rpc_endpoint))
    destination_w3 = AsyncWeb3(AsyncHTTPProvider(config.destination_rpc_url))
    relay_key = _require(config.relay_private_key or config.private_key, "RELAY_PRIVATE_KEY")

    settlement = SettlementLedger(
        source_w3,
        _require(config.settlement_address, "SETTLEMENT_ADDRESS"),
        start_block=config.settlement_start_block,
        ws_url=config.ws_endpoint,
        log_scan_max_blocks=config.log_scan_max_blocks,
    )
    payout = PayoutLedger(
        destination_w3,
        _require(config.payout_address, "PAYOUT_ADDRESS"),
        TransactionSigner(destination_w3, relay_key, confirmation_timeout=config.transaction_timeout),
    )
    forwarder = RelayForwarder(
        settlement,
        payout,
        lookback_blocks=config.relay_lookback_blocks,
        concurrency=config.relay_concurrency,
    )
    try:
        await forwarder.run()
    finally:
        logger.info("Relay stopped: %s", forwarder.stats)
        await source_w3.provider.disconnect()
        await destination_w3.provider.disconnect()


async def _status(stream_id: int, config: Settings) -> dict:
    w3 = AsyncWeb3(AsyncHTTPProvider(config.rpc_endpoint))
    try:
        settlement = SettlementLedger(w3, _require(config.settlement_address, "SETTLEMENT_ADDRESS"))
        stream = await settlement.get_stream(stream_id)
    finally:
        await w3.provider.disconnect()

    checkpoint = await CheckpointStore(config.checkpoint_dir).load(stream_key(stream.worker, stream_id))
    return {
        "stream_id": stream_id,
        "worker": stream.worker,
        "employer": stream.employer,
        "active": stream.active,
        "rate_per_interval": str(stream.rate_per_interval),
        "total_deposit": str(stream.total_deposit),
        "total_claimed": str(stream.total_claimed),
        "last_claim_time": stream.last_claim_time,
        "next_claim_time": stream.next_claim_time,
        "has_prior_claim": stream.has_prior_claim,
        "checkpoint": None if checkpoint is None else {
            "request_fingerprint": checkpoint.request_fingerprint,
            "submission_tx": checkpoint.submission_tx,
            "round_id": checkpoint.round_id,
            "has_proof": checkpoint.has_proof,
            "claimed": checkpoint.claimed,
            "claim_tx": checkpoint.claim_tx,
        },
    }


def cmd_claim(args: argparse.Namespace) -> int:
    """Execute the claim command.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        if args.doc_id and not args.token:
            print("Error: --token is required with --doc-id", file=sys.stderr)
            return 2

        logger.info("Claiming stream %d", args.stream_id)
        outcome = _run_async(_claim(args, settings))
        print(json.dumps(outcome, indent=2))
        return 0

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except AttestPayError as e:
        # Already reported through the pipeline's progress events
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error("Claim failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_relay(args: argparse.Namespace) -> int:
    """Execute the relay command (runs until interrupted)."""
    try:
        _run_async(_relay(settings))
        return 0
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Relay failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    """Execute the status command."""
    try:
        status = _run_async(_status(args.stream_id, settings))
    except Exception as e:
        logger.error("Status failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.format == "json":
        print(json.dumps(status, indent=2))
        return 0

    print(f"Stream {status['stream_id']} ({'active' if status['active'] else 'inactive'})")
    print(f"  worker:          {status['worker']}")
    print(f"  claimed:         {status['total_claimed']} / {status['total_deposit']}")
    print(f"  next claim at:   {status['next_claim_time']}")
    checkpoint = status["checkpoint"]
    if checkpoint is None:
        print("  no pending run")
    else:
        state = "claimed" if checkpoint["claimed"] else "pending"
        print(f"  last run:        {state}, round {checkpoint['round_id']}, tx {checkpoint['submission_tx']}")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Execute the version command."""
    print(f"attestpay v{__version__}")
    print("Verified-work payroll claims on the Flare Data Connector")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = create_parser()
    args = parser.parse_args(argv)

    # Route to command handler
    if args.command == "claim":
        return cmd_claim(args)
    elif args.command == "relay":
        return cmd_relay(args)
    elif args.command == "status":
        return cmd_status(args)
    elif args.command == "version":
        return cmd_version(args)
    else:
        parser.print_help()
        return 0


def cli_entry() -> None:
    """Console script entry point for setuptools."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
