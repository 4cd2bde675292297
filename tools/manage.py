#!/usr/bin/env python3
"""
CipherChain Management CLI

Commands for managing the ledger:
- init: Create the PostgreSQL schema (if configured) and the genesis block
- verify-chain: Verify ledger chain integrity
- export-chain: Export all blocks to JSON
- show-tail: Print the current tail block
- health-check: Run store and chain health checks
- generate-field-key: Print a new CIPHERCHAIN_FIELD_KEY value

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init
    python -m tools.manage verify-chain
    python -m tools.manage export-chain -o chain.json
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_chain_store():
    from cipherchain.core import ChainStore
    from cipherchain.db.config import LedgerConfig
    from cipherchain.db.factory import create_block_store

    return ChainStore(
        block_store=create_block_store(),
        append_retries=LedgerConfig.from_env().append_retries,
    )


def cmd_init(args):
    """Create the genesis block if the chain is empty."""
    chain_store = _load_chain_store()

    already = chain_store.is_initialized
    genesis = chain_store.initialize()

    if already:
        print("Chain already initialized.")
    else:
        print("[OK] Genesis block created")
    print(f"  Genesis hash: {genesis.hash[:16]}...")
    print(f"  Blocks: {chain_store.block_count}")


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    from cipherchain.core import ChainValidator

    print("Loading chain...")
    chain_store = _load_chain_store()
    print(f"Chain loaded: {chain_store.block_count} blocks")

    result = ChainValidator(chain_store).validate()
    if result.valid:
        print("[OK] Chain integrity verified OK")
        tail = chain_store.get_tail()
        if tail:
            print(f"  Tail: #{tail.index} {tail.hash[:16]}...")
        return 0

    print(f"[FAIL] Chain integrity verification FAILED: {result.error}")
    return 1


def cmd_export_chain(args):
    """Export all blocks to a JSON file."""
    chain_store = _load_chain_store()
    blocks = chain_store.get_full_chain()

    print(f"Found {len(blocks)} blocks")

    export_data = [block.to_dict() for block in blocks]

    output_file = args.output or "chain_export.json"
    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(blocks)} blocks to {output_file}")


def cmd_show_tail(args):
    """Print the tail block."""
    tail = _load_chain_store().get_tail()
    if tail is None:
        print("Chain is empty. Run 'init' first.")
        return 1
    print(json.dumps(tail.to_dict(), indent=2))


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from cipherchain.core import ChainValidator
    from cipherchain.db.config import BlockStoreDriver, get_blockstore_driver
    from cipherchain.observability import check_health

    print("=== CipherChain Health Check ===\n")

    driver = get_blockstore_driver()
    print("Database:")
    print(f"  Driver: {driver.value}")

    try:
        chain_store = _load_chain_store()
    except Exception as e:
        print(f"  Status: [FAIL] {e}")
        return 1
    print("  Status: [OK]")
    if driver == BlockStoreDriver.MEMORY:
        print("  Note: in-memory store, nothing persisted")

    status = check_health(chain_store=chain_store, validator=ChainValidator(chain_store))

    print("\nChecks:")
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        detail = check.get("error", "")
        print(f"  {name}: {marker} {detail}".rstrip())

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def cmd_generate_field_key(args):
    """Print a fresh payload encryption key."""
    from cipherchain.core.codec import SecretBoxCodec

    print(f"CIPHERCHAIN_FIELD_KEY={SecretBoxCodec.generate_key()}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="CipherChain Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init", help="Create the genesis block")
    subparsers.add_parser("verify-chain", help="Verify ledger chain integrity")

    p_export = subparsers.add_parser("export-chain", help="Export all blocks to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: chain_export.json)")

    subparsers.add_parser("show-tail", help="Print the current tail block")
    subparsers.add_parser("health-check", help="Run comprehensive health checks")
    subparsers.add_parser("generate-field-key", help="Generate a payload encryption key")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init": cmd_init,
        "verify-chain": cmd_verify_chain,
        "export-chain": cmd_export_chain,
        "show-tail": cmd_show_tail,
        "health-check": cmd_health_check,
        "generate-field-key": cmd_generate_field_key,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
