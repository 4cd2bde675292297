"""
Tests for the standalone export verifier (tools/verify.py).
"""

import importlib.util
import json
from pathlib import Path

import pytest

from cipherchain.core import ChainStore

VERIFY_PATH = Path(__file__).parent.parent / "tools" / "verify.py"


@pytest.fixture(scope="module")
def verify_tool():
    module_spec = importlib.util.spec_from_file_location("chain_verify_tool", VERIFY_PATH)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def exported():
    chain = ChainStore()
    chain.initialize()
    chain.append("alice", "bob", "ct1")
    chain.append("bob", "alice", "ct2")
    return [block.to_dict() for block in chain.get_full_chain()]


def test_verifies_exported_chain(verify_tool, exported):
    report = verify_tool.ChainVerifier(exported).verify()
    assert report.result == verify_tool.VerificationResult.VERIFIED
    assert report.block_count == 3


def test_detects_tampered_payload(verify_tool, exported):
    exported[2]["payload"] = "edited"
    report = verify_tool.ChainVerifier(exported).verify()
    assert report.result == verify_tool.VerificationResult.TAMPERED
    assert report.checks_failed == ["Hash invalid at position 2"]


def test_detects_broken_link(verify_tool, exported):
    exported[1]["prevHash"] = "0" * 64
    report = verify_tool.ChainVerifier(exported).verify()
    assert report.result == verify_tool.VerificationResult.TAMPERED
    assert report.checks_failed == ["prevHash mismatch at position 1"]


def test_rejects_malformed_export(verify_tool, exported):
    del exported[1]["hash"]
    report = verify_tool.ChainVerifier(exported).verify()
    assert report.result == verify_tool.VerificationResult.INVALID_FORMAT


def test_cli_exit_codes(verify_tool, exported, tmp_path, capsys):
    path = tmp_path / "chain.json"
    path.write_text(json.dumps(exported), encoding="utf-8")
    assert verify_tool.main([str(path), "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["result"] == "VERIFIED"

    exported[0]["from"] = "mallory"
    path.write_text(json.dumps(exported), encoding="utf-8")
    assert verify_tool.main([str(path)]) == 1

    assert verify_tool.main([str(tmp_path / "missing.json")]) == 3


def test_detects_hash_case_change(verify_tool, exported):
    exported[2]["hash"] = exported[2]["hash"].upper()
    report = verify_tool.ChainVerifier(exported).verify()
    assert report.result == verify_tool.VerificationResult.TAMPERED
    assert report.checks_failed == ["Hash invalid at position 2"]


@pytest.mark.parametrize("field", ["timestamp", "from", "to", "payload", "prevHash", "hash"])
def test_rejects_non_string_fields(verify_tool, exported, field):
    exported[1][field] = None
    report = verify_tool.ChainVerifier(exported).verify()
    assert report.result == verify_tool.VerificationResult.INVALID_FORMAT
