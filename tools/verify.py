#!/usr/bin/env python3
"""
CipherChain Export Verifier

A standalone tool to verify an exported chain independently.
No server connection and no package install required - verification
is pure hashing.

Usage:
    python verify.py chain_export.json
    python verify.py chain_export.json --verbose
    python verify.py chain_export.json --json

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash, linkage or index mismatch
    3 - INVALID_FORMAT: Export structure invalid
"""

import argparse
import hashlib
import hmac
import json
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass
class VerificationReport:
    result: VerificationResult
    block_count: int
    checks_passed: list[str]
    checks_failed: list[str]
    details: dict[str, Any]


# ============================================================
# Block Hash (matching cipherchain/core/hasher.py)
# ============================================================

REQUIRED_FIELDS = ("index", "timestamp", "from", "to", "payload", "prevHash", "hash")
STRING_FIELDS = REQUIRED_FIELDS[1:]
GENESIS_PREV_HASH = "0"


def compute_block_hash(block: dict) -> str:
    """
    Compute a block hash.

    MUST match cipherchain/core/hasher.py exactly:
    SHA256(f"{index}{timestamp}{from}{to}{payload}{prevHash}"), UTF-8, lowercase hex
    """
    data = (
        f"{block['index']}{block['timestamp']}{block['from']}"
        f"{block['to']}{block['payload']}{block['prevHash']}"
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


# ============================================================
# Chain Verifier
# ============================================================

class ChainVerifier:
    """Verifies an exported chain (a JSON array of blocks)."""

    def __init__(self, blocks: Any, verbose: bool = False):
        self.blocks = blocks
        self.verbose = verbose
        self.checks_passed = []
        self.checks_failed = []
        self.details = {}

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        """Run all verification checks."""
        if not self._check_structure():
            return self._report(VerificationResult.INVALID_FORMAT)

        if not self._verify_genesis():
            return self._report(VerificationResult.TAMPERED)

        if not self._verify_links():
            return self._report(VerificationResult.TAMPERED)

        return self._report(VerificationResult.VERIFIED)

    def _check_structure(self) -> bool:
        self.log("Checking export structure...")

        if not isinstance(self.blocks, list):
            self.checks_failed.append("Export must be a JSON array of blocks")
            return False

        if not self.blocks:
            self.checks_failed.append("Export has no blocks")
            return False

        for i, block in enumerate(self.blocks):
            if not isinstance(block, dict):
                self.checks_failed.append(f"Block at position {i} is not an object")
                return False
            missing = [k for k in REQUIRED_FIELDS if k not in block]
            if missing:
                self.checks_failed.append(f"Block at position {i} missing fields: {missing}")
                return False
            if not isinstance(block["index"], int) or isinstance(block["index"], bool):
                self.checks_failed.append(f"Block at position {i} has a non-integer index")
                return False
            wrong_type = [k for k in STRING_FIELDS if not isinstance(block[k], str)]
            if wrong_type:
                self.checks_failed.append(f"Block at position {i} has non-string fields: {wrong_type}")
                return False

        self.checks_passed.append("Export structure valid")
        return True

    def _hash_ok(self, block: dict) -> bool:
        computed = compute_block_hash(block)
        return hmac.compare_digest(computed.encode("utf-8"), block["hash"].encode("utf-8"))

    def _verify_genesis(self) -> bool:
        self.log("Verifying genesis block...")
        genesis = self.blocks[0]
        self.details["genesis_hash"] = genesis["hash"]

        if genesis["index"] != 0 or genesis["prevHash"] != GENESIS_PREV_HASH:
            self.checks_failed.append("Genesis block invalid at position 0: bad index or prevHash")
            return False
        if not self._hash_ok(genesis):
            self.checks_failed.append("Genesis block invalid at position 0: hash mismatch")
            return False

        self.checks_passed.append("Genesis block valid")
        return True

    def _verify_links(self) -> bool:
        self.log(f"Verifying {len(self.blocks) - 1} linked blocks...")

        for i in range(1, len(self.blocks)):
            block = self.blocks[i]
            prev = self.blocks[i - 1]

            if block["index"] != prev["index"] + 1:
                self.checks_failed.append(f"Index gap at position {i}")
                return False
            if block["prevHash"] != prev["hash"]:
                self.checks_failed.append(f"prevHash mismatch at position {i}")
                return False
            if not self._hash_ok(block):
                self.checks_failed.append(f"Hash invalid at position {i}")
                return False

            self.log(f"#{block['index']} OK {block['hash'][:16]}...")

        self.details["tail_hash"] = self.blocks[-1]["hash"]
        self.checks_passed.append("All block hashes and links valid")
        return True

    def _report(self, result: VerificationResult) -> VerificationReport:
        return VerificationReport(
            result=result,
            block_count=len(self.blocks) if isinstance(self.blocks, list) else 0,
            checks_passed=self.checks_passed,
            checks_failed=self.checks_failed,
            details=self.details,
        )


# ============================================================
# CLI
# ============================================================

def print_report(report: VerificationReport, json_output: bool = False):
    """Print verification report."""
    if json_output:
        output = {
            "result": report.result.value,
            "block_count": report.block_count,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "details": report.details,
        }
        print(json.dumps(output, indent=2))
        return

    banners = {
        VerificationResult.VERIFIED: "[VERIFIED] - All checks passed",
        VerificationResult.TAMPERED: "[TAMPERED] - Hash or linkage mismatch detected",
        VerificationResult.INVALID_FORMAT: "[INVALID_FORMAT] - Export structure invalid",
    }
    print("\n" + "=" * 60)
    print(f"  {banners[report.result]}")
    print("=" * 60)

    print(f"\nBlocks: {report.block_count}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    print()


EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.INVALID_FORMAT: 3,
}


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Verify an exported CipherChain ledger",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 3=INVALID_FORMAT"
    )
    parser.add_argument("export", type=str, help="Path to the chain export JSON file")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress"
    )
    parser.add_argument("--json", action="store_true", help="Output result as JSON")

    args = parser.parse_args(argv)

    export_path = Path(args.export)
    if not export_path.exists():
        print(f"ERROR: File not found: {export_path}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    try:
        with open(export_path, "r", encoding="utf-8") as f:
            blocks = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"ERROR: Could not read export: {e}")
        return EXIT_CODES[VerificationResult.INVALID_FORMAT]

    report = ChainVerifier(blocks, verbose=args.verbose).verify()
    print_report(report, json_output=args.json)
    return EXIT_CODES[report.result]


if __name__ == "__main__":
    sys.exit(main())
