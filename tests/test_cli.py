"""Tests for CLI interface.

Test Coverage:
    - Argument parsing
    - Command routing
    - Claim, relay and status commands with mocked pipeline
    - Error handling
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from attestpay import __version__
from attestpay.cli import cmd_claim, cmd_status, cmd_version, create_parser, main
from attestpay.config import Settings
from attestpay.errors import ClaimWindowError


def _outcome() -> dict:
    return {
        "tx_hash": "0x" + "ab" * 32,
        "stream_id": 3,
        "worker": "0x00000000000000000000000000000000000000A1",
        "amount_primary": "5000000000000000000",
        "amount_reference": "5000000",
        "price": "1000000",
        "bonus_triggered": False,
        "unit_count": 5,
    }


class TestParserCreation:
    """Test CLI parser creation."""

    def test_parser_prog_name(self):
        parser = create_parser()
        assert parser.prog == "attestpay"

    def test_parser_help_exits(self):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["--help"])


class TestClaimCommand:
    """Test claim command parsing."""

    def test_claim_with_repo(self):
        args = create_parser().parse_args(["claim", "--stream-id", "3", "--repo", "octocat/hello"])
        assert args.command == "claim"
        assert args.stream_id == 3
        assert args.repo == "octocat/hello"
        assert args.doc_id is None

    def test_claim_with_document(self):
        args = create_parser().parse_args(
            ["claim", "--stream-id", "7", "--doc-id", "1AbC", "--token", "ya29.token"]
        )
        assert args.doc_id == "1AbC"
        assert args.token == "ya29.token"

    def test_claim_requires_stream_id(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["claim", "--repo", "o/r"])

    def test_claim_requires_a_source(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["claim", "--stream-id", "3"])

    def test_claim_sources_are_exclusive(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["claim", "--stream-id", "3", "--repo", "o/r", "--doc-id", "x"])

    def test_stream_id_must_be_integer(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["claim", "--stream-id", "three", "--repo", "o/r"])


class TestClaimExecution:
    """Test cmd_claim with a mocked pipeline."""

    @patch("attestpay.cli._claim", new_callable=AsyncMock)
    def test_claim_prints_outcome(self, mock_claim, capsys):
        mock_claim.return_value = _outcome()
        args = create_parser().parse_args(["claim", "--stream-id", "3", "--repo", "o/r"])

        exit_code = cmd_claim(args)

        assert exit_code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["unit_count"] == 5
        assert data["stream_id"] == 3
        mock_claim.assert_awaited_once()

    @patch("attestpay.cli._claim", new_callable=AsyncMock)
    def test_pipeline_error_returns_1(self, mock_claim, capsys):
        mock_claim.side_effect = ClaimWindowError("Stream 3 is claimable in 120s")
        args = create_parser().parse_args(["claim", "--stream-id", "3", "--repo", "o/r"])

        exit_code = cmd_claim(args)

        assert exit_code == 1
        err = capsys.readouterr().err
        assert "ClaimWindowError" in err
        assert "claimable in 120s" in err

    @patch("attestpay.cli._claim", new_callable=AsyncMock)
    def test_document_without_token_rejected(self, mock_claim, capsys):
        args = create_parser().parse_args(["claim", "--stream-id", "3", "--doc-id", "1AbC"])

        assert cmd_claim(args) == 2
        assert "--token" in capsys.readouterr().err
        mock_claim.assert_not_called()

    def test_missing_private_key_returns_1(self, capsys):
        config = Settings(private_key=None, settlement_address=None)
        args = create_parser().parse_args(["claim", "--stream-id", "3", "--repo", "o/r"])

        with patch("attestpay.cli.settings", config):
            exit_code = cmd_claim(args)

        assert exit_code == 1
        assert "PRIVATE_KEY is not configured" in capsys.readouterr().err


class TestStatusExecution:
    """Test cmd_status with a mocked ledger read."""

    @patch("attestpay.cli._status", new_callable=AsyncMock)
    def test_status_json(self, mock_status, capsys):
        mock_status.return_value = {"stream_id": 3, "active": True, "checkpoint": None}
        args = create_parser().parse_args(["status", "--stream-id", "3", "--format", "json"])

        assert cmd_status(args) == 0
        assert json.loads(capsys.readouterr().out)["stream_id"] == 3

    @patch("attestpay.cli._status", new_callable=AsyncMock)
    def test_status_text_with_checkpoint(self, mock_status, capsys):
        mock_status.return_value = {
            "stream_id": 3,
            "active": True,
            "worker": "0xA1",
            "total_claimed": "10",
            "total_deposit": "100",
            "next_claim_time": 1_700_000_000,
            "checkpoint": {"claimed": False, "round_id": 1024, "submission_tx": "0xfeed"},
        }
        args = create_parser().parse_args(["status", "--stream-id", "3"])

        assert cmd_status(args) == 0
        out = capsys.readouterr().out
        assert "Stream 3 (active)" in out
        assert "pending, round 1024" in out

    @patch("attestpay.cli._status", new_callable=AsyncMock)
    def test_status_error_returns_1(self, mock_status, capsys):
        mock_status.side_effect = RuntimeError("rpc down")
        args = create_parser().parse_args(["status", "--stream-id", "3"])

        assert cmd_status(args) == 1
        assert "rpc down" in capsys.readouterr().err


class TestVersionCommand:
    """Test version command."""

    def test_version_command_execution(self, capsys):
        args = create_parser().parse_args(["version"])
        assert cmd_version(args) == 0
        assert f"v{__version__}" in capsys.readouterr().out


class TestMainEntryPoint:
    """Test main() entry point."""

    def test_main_no_args_shows_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_main_version_command(self, capsys):
        assert main(["version"]) == 0
        assert "attestpay" in capsys.readouterr().out

    def test_invalid_command_exits(self):
        with pytest.raises(SystemExit):
            main(["invalid-command"])

    @patch("attestpay.cli._relay", new_callable=AsyncMock)
    def test_main_routes_relay(self, mock_relay):
        assert main(["relay"]) == 0
        mock_relay.assert_awaited_once()

    @patch("attestpay.cli._claim", new_callable=AsyncMock)
    def test_main_routes_claim(self, mock_claim, capsys):
        mock_claim.return_value = _outcome()
        assert main(["claim", "--stream-id", "3", "--repo", "o/r"]) == 0
        assert json.loads(capsys.readouterr().out)["tx_hash"].startswith("0x")
