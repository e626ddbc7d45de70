"""
Tests for the nearbridge CLI.

Run with: pytest tests/test_cli.py -v
"""

import json

import pytest

from nearbridge.chain import Receipt
from nearbridge.cli import BridgeCLI, CLIError, OutputFormat, format_output, main
from nearbridge.transfer import Step, Transfer, TransferStatus


def _run(capsys, *argv):
    code = BridgeCLI().run(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


def _write_transfer(tmp_path) -> str:
    transfer = Transfer.draft(
        id="transfer-1",
        type="@near-eth/near-ether/natural-ether/sendToNear",
        amount="1500000000000000000",
        sender="0x" + "aa" * 20,
        recipient="bob.near",
        source_token_name="ETH",
        destination_token_name="nETH",
        decimals=18,
    ).evolve(
        status=TransferStatus.IN_PROGRESS,
        completed_step=Step.LOCK,
        lock_hashes=["0xlock"],
        lock_receipts=[Receipt(transaction_hash="0xlock", block_number=1001, status=True)],
        completed_confirmations=12,
    )
    path = tmp_path / "transfer.json"
    path.write_text(transfer.to_json())
    return str(path)


class TestFormatOutput:

    def test_json(self):
        assert json.loads(format_output({"a": 1})) == {"a": 1}

    def test_text(self):
        assert format_output({"a": 1, "b": "x"}, OutputFormat.TEXT) == "a: 1\nb: x"

    def test_yaml(self):
        assert format_output({"a": 1}, OutputFormat.YAML).strip() == "a: 1"


class TestCLI:

    def test_no_command_prints_help(self, capsys):
        code, out, _ = _run(capsys)
        assert code == 0
        assert "usage: nearbridge" in out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            BridgeCLI().run(["--version"])
        assert exc_info.value.code == 0
        assert "nearbridge" in capsys.readouterr().out

    def test_config_show(self, capsys):
        code, out, _ = _run(capsys, "config", "show")
        assert code == 0
        assert json.loads(out)["transfer"]["needed_confirmations"] == 20

    def test_config_get(self, capsys):
        code, out, _ = _run(capsys, "config", "get", "destination.evm_account")
        assert code == 0
        assert json.loads(out) == {"path": "destination.evm_account", "value": "aurora"}

    def test_config_get_section_is_an_error(self, capsys):
        code, _, err = _run(capsys, "config", "get", "transfer")
        assert code == 2
        assert "section" in err

    def test_config_get_unknown_path(self, capsys):
        code, _, err = _run(capsys, "config", "get", "transfer.nope")
        assert code == 2
        assert "Invalid config path" in err

    def test_config_validate(self, capsys):
        code, out, _ = _run(capsys, "config", "validate")
        assert code == 0
        assert json.loads(out)["valid"] is True

    def test_config_validate_failure(self, capsys, monkeypatch):
        monkeypatch.setenv("NEARBRIDGE_EVENT_RELAYER_MARGIN", "-1")
        code, _, err = _run(capsys, "config", "validate")
        assert code == 3
        assert "transfer.relay_margin" in err

    def test_config_file_option(self, capsys, tmp_path):
        path = tmp_path / "nearbridge.yaml"
        path.write_text("transfer:\n  relay_margin: 3\n")
        code, out, _ = _run(capsys, "--config", str(path), "config", "get", "transfer.relay_margin")
        assert code == 0
        assert json.loads(out)["value"] == 3

    def test_missing_config_file(self, capsys, tmp_path):
        code, _, err = _run(capsys, "--config", str(tmp_path / "nope.yaml"), "config", "show")
        assert code == 2
        assert "not found" in err

    def test_amount(self, capsys):
        code, out, _ = _run(capsys, "amount", "1.5")
        assert code == 0
        assert json.loads(out)["minorUnits"] == "1500000000000000000"

    def test_amount_with_decimals(self, capsys):
        code, out, _ = _run(capsys, "--format", "text", "amount", "2.25", "--decimals", "6")
        assert code == 0
        assert "minorUnits: 2250000" in out

    def test_amount_too_precise(self, capsys):
        code, _, err = _run(capsys, "amount", "0.0000001", "-d", "6")
        assert code == 2
        assert "decimal places" in err

    def test_transfer_inspect(self, capsys, tmp_path):
        code, out, _ = _run(capsys, "transfer", "inspect", _write_transfer(tmp_path))
        assert code == 0
        summary = json.loads(out)
        assert summary["amount"] == "1.5"
        assert summary["completedStep"] == "lock-natural-ether-to-nep141"
        assert summary["confirmations"] == "12/20"

    def test_transfer_inspect_invalid(self, capsys, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({"id": "x"}))
        code, _, err = _run(capsys, "transfer", "inspect", str(path))
        assert code == 3
        assert "Invalid transfer" in err

    def test_transfer_inspect_missing_file(self, capsys, tmp_path):
        code, _, err = _run(capsys, "transfer", "inspect", str(tmp_path / "none.json"))
        assert code == 2
        assert "Cannot read" in err

    def test_quiet_suppresses_errors(self, capsys, tmp_path):
        code, _, err = _run(capsys, "--quiet", "transfer", "inspect", str(tmp_path / "none.json"))
        assert code == 2
        assert err == ""

    def test_redirect_absorb_and_show(self, capsys, tmp_path):
        channel = str(tmp_path / "redirect.json")
        code, out, _ = _run(capsys, "redirect", "absorb", channel, "https://app/?minting=t1&transactionHashes=h1")
        assert code == 0
        assert json.loads(out)["transactionHashes"] == ["h1"]

        code, out, _ = _run(capsys, "redirect", "show", channel)
        assert json.loads(out)["minting"] == "t1"

        code, out, _ = _run(capsys, "redirect", "clear", channel)
        assert json.loads(out) == {"empty": True}

    def test_unknown_subcommand(self, capsys):
        code, _, err = _run(capsys, "transfer")
        assert code == 1
        assert "Unknown command: transfer" in err

    def test_cli_error_exit_code(self):
        assert CLIError("x", exit_code=4).exit_code == 4

    def test_main(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["nearbridge", "amount", "1"])
        assert main() == 0
        assert json.loads(capsys.readouterr().out)["minorUnits"] == "1000000000000000000"
