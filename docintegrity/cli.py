#!/usr/bin/env python3
"""
docintegrity Command Line Interface

Usage:
    docintegrity keygen --id <identity> [--algorithm rsa-sha256|ed25519]
    docintegrity hash --file <file> [--json]
    docintegrity verify-chain [--db <path>] [--from N] [--to N]
    docintegrity export-audit [--db <path>] [--output <file>]
    docintegrity history --document <id> [--db <path>]
"""

import argparse
import json
import sys
from typing import List, Optional

from . import config
from .config import DB_PATH, KEYSTORE_PATH, LOG_JSON, LOG_LEVEL, SIGNATURE_ALGORITHM
from .logging_config import configure_logging


def load_json(path: str):
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def _open_db(path: str):
    from .db import Database

    db = Database(path)
    db.init_schema()
    return db


def cmd_keygen(args) -> int:
    """Generate an identity and store it in the file key store."""
    from .keys import FileKeyStore, generate_identity

    store = FileKeyStore(args.keystore)
    if args.id in store.list_ids() and not args.force:
        print(f"Identity {args.id} already exists (use --force to replace)", file=sys.stderr)
        return 1

    identity = generate_identity(args.id, signing_algorithm=args.algorithm, bits=args.bits)
    store.put(identity)

    print(json.dumps(identity.public_view().model_dump(exclude_none=True), indent=2))
    print(f"\nStored identity: {args.id} ({args.algorithm})", file=sys.stderr)
    return 0


def cmd_hash(args) -> int:
    """Compute the content hash of a file."""
    from .hashing import content_hash, record_hash

    if args.json:
        print(f"record_hash: {record_hash(load_json(args.file))}")
    else:
        with open(args.file, 'rb') as f:
            print(f"content_hash: {content_hash(f.read())}")
    return 0


def cmd_verify_chain(args) -> int:
    """Verify the audit hash chain."""
    from .audit_chain import AuditChain

    chain = AuditChain(_open_db(args.db))
    result = chain.verify_chain(args.from_seq, args.to_seq)
    print(json.dumps(result.to_dict(), indent=2))

    if result.valid:
        print(f"\n✓ Audit chain intact ({result.entries} entries)", file=sys.stderr)
        return 0
    print(f"\n✗ Audit chain BROKEN at sequence {result.broken_at}: {result.reason}", file=sys.stderr)
    return 1


def cmd_export_audit(args) -> int:
    """Export audit entries as JSON for compliance review."""
    from .audit_chain import AuditChain

    chain = AuditChain(_open_db(args.db))
    if args.actor or args.resource or args.action:
        entries = [
            e.model_dump(mode="json")
            for e in chain.query(actor=args.actor, resource_id=args.resource, action=args.action, limit=args.limit)
        ]
    else:
        entries = chain.export(args.from_seq, args.to_seq)

    if args.output:
        save_json(entries, args.output)
        print(f"{len(entries)} entries saved to: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(entries, indent=2))
    return 0


def cmd_history(args) -> int:
    """Show a document's version history and check its chain."""
    from .version_chain import VersionChain

    versions = VersionChain(_open_db(args.db))
    history = versions.history(args.document)
    if not history:
        print(f"No versions for document {args.document}", file=sys.stderr)
        return 1

    for v in history:
        marker = "*" if v.is_active else " "
        invalid = len([s for s in v.signatures if s.invalidated])
        print(
            f"{marker} v{v.version}  {v.content_hash[:16]}  {v.changed_by:<16} "
            f"{v.created_at.isoformat()}  sigs={len(v.signatures)} invalidated={invalid}  {v.change_description}"
        )

    check = versions.verify_history(args.document)
    if check.valid:
        print(f"\n✓ Version chain intact ({check.versions} versions)", file=sys.stderr)
        return 0
    print(f"\n✗ Version chain broken at v{check.broken_at}: {check.reason}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docintegrity",
        description="Document integrity and provenance tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  docintegrity keygen --id alice
  docintegrity hash -f contract.pdf
  docintegrity verify-chain --db data/docintegrity.db
  docintegrity export-audit -o audit.json
  docintegrity history -d 3f2a...
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate an identity key set")
    keygen_parser.add_argument("-i", "--id", required=True, help="Identity id")
    keygen_parser.add_argument("-a", "--algorithm", default=SIGNATURE_ALGORITHM,
                               choices=["rsa-sha256", "ed25519"], help="Signature algorithm")
    keygen_parser.add_argument("-b", "--bits", type=int, default=2048, help="RSA modulus size")
    keygen_parser.add_argument("-k", "--keystore", default=KEYSTORE_PATH, help="Key store directory")
    keygen_parser.add_argument("--force", action="store_true", help="Replace an existing identity")

    # hash
    hash_parser = subparsers.add_parser("hash", help="Compute a content hash")
    hash_parser.add_argument("-f", "--file", required=True, help="File to hash")
    hash_parser.add_argument("--json", action="store_true", help="Hash the canonical JSON form of the file")

    # verify-chain
    verify_parser = subparsers.add_parser("verify-chain", help="Verify the audit hash chain")
    verify_parser.add_argument("--db", default=DB_PATH, help="Database path")
    verify_parser.add_argument("--from", dest="from_seq", type=int, default=1, help="First sequence number")
    verify_parser.add_argument("--to", dest="to_seq", type=int, help="Last sequence number")

    # export-audit
    export_parser = subparsers.add_parser("export-audit", help="Export audit entries")
    export_parser.add_argument("--db", default=DB_PATH, help="Database path")
    export_parser.add_argument("--from", dest="from_seq", type=int, default=1, help="First sequence number")
    export_parser.add_argument("--to", dest="to_seq", type=int, help="Last sequence number")
    export_parser.add_argument("--actor", help="Only entries by this actor")
    export_parser.add_argument("--resource", help="Only entries about this resource id")
    export_parser.add_argument("--action", help="Only entries with this action")
    export_parser.add_argument("--limit", type=int, default=1000, help="Maximum filtered entries")
    export_parser.add_argument("-o", "--output", help="Output file")

    # history
    history_parser = subparsers.add_parser("history", help="Show document version history")
    history_parser.add_argument("-d", "--document", required=True, help="Document id")
    history_parser.add_argument("--db", default=DB_PATH, help="Database path")

    return parser


STARTUP_CHECKS = ("signature_algorithm", "min_rsa_key_bits")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = "DEBUG" if config.is_debug() else LOG_LEVEL
    configure_logging(level=level, json_format=LOG_JSON, stream=sys.stderr)

    # path checks depend on the command; crypto settings are always required
    checks = config.validate_config()
    bad = [name for name in STARTUP_CHECKS if not checks[name]]
    if bad:
        print(f"✗ Invalid configuration: {', '.join(bad)}", file=sys.stderr)
        return 2

    commands = {
        "keygen": cmd_keygen,
        "hash": cmd_hash,
        "verify-chain": cmd_verify_chain,
        "export-audit": cmd_export_audit,
        "history": cmd_history,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 2
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
