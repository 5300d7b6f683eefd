#!/usr/bin/env python3
"""CLI entry point for chartbridge package.

Usage:
    python -m chartbridge init-db [--db chartbridge.db]
    python -m chartbridge load <patient.json> [--db chartbridge.db]
    python -m chartbridge generate ccd <patient_id> [--output ccd.xml]
    python -m chartbridge generate referral <patient_id> --reason <text> --to <name>
    python -m chartbridge generate discharge <patient_id> --encounter <id>
    python -m chartbridge generate transfer <patient_id> --encounter <id>
    python -m chartbridge parse <document.xml>
    python -m chartbridge reconcile <patient_id> <document.xml>
    python -m chartbridge summary [--db chartbridge.db]
    python -m chartbridge init-config [--output chartbridge.toml]
    python -m chartbridge serve-mcp [--db chartbridge.db]
"""

import argparse
import logging
import sys

DEFAULT_DB = "chartbridge.db"
DEFAULT_CONFIG = "chartbridge.toml"

DOCUMENT_KINDS = ("ccd", "referral", "discharge", "transfer")


def _common_args(p):
    p.add_argument("--db", default=DEFAULT_DB, help="SQLite database path")
    p.add_argument("--config", default=DEFAULT_CONFIG, help="TOML config path")
    p.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chartbridge",
        description="Generate, parse, and reconcile C-CDA clinical documents.",
    )
    sub = parser.add_subparsers(dest="command")

    # --- init-db ---
    p = sub.add_parser("init-db", help="Create the database schema")
    _common_args(p)

    # --- load ---
    p = sub.add_parser("load", help="Load a patient and records from a JSON file")
    p.add_argument("input_file", help="JSON file with 'patient' and per-category record lists")
    p.add_argument("--patient-id", default=None, help="Store under this patient id")
    _common_args(p)

    # --- generate ---
    p = sub.add_parser("generate", help="Generate a C-CDA document")
    p.add_argument("kind", choices=DOCUMENT_KINDS, help="Document kind")
    p.add_argument("patient_id", help="Patient identifier")
    p.add_argument("--encounter", default=None, help="Encounter id (discharge, transfer)")
    p.add_argument("--reason", default="", help="Referral reason")
    p.add_argument("--urgency", default="", help="Referral urgency (routine, urgent, stat)")
    p.add_argument("--history", default="", help="Clinical history for the referral")
    p.add_argument("--services", default="", help="Requested services")
    p.add_argument("--to", dest="referred_to", default="", help="Name of the provider referred to")
    p.add_argument("--npi", default="", help="NPI of the provider referred to")
    p.add_argument("--specialty", default="", help="Specialty of the provider referred to")
    p.add_argument("--output", default="", help="Write XML here instead of stdout")
    _common_args(p)

    # --- parse ---
    p = sub.add_parser("parse", help="Extract structured data from a C-CDA document")
    p.add_argument("input_file", help="C-CDA XML file")
    _common_args(p)

    # --- reconcile ---
    p = sub.add_parser("reconcile", help="Compare a C-CDA document against stored records")
    p.add_argument("patient_id", help="Patient identifier")
    p.add_argument("input_file", help="C-CDA XML file")
    _common_args(p)

    # --- summary ---
    p = sub.add_parser("summary", help="Show database summary")
    _common_args(p)

    # --- init-config ---
    p = sub.add_parser("init-config", help="Write a default chartbridge.toml")
    p.add_argument("--output", default=DEFAULT_CONFIG, help="Output config file path")
    _common_args(p)

    # --- serve-mcp ---
    p = sub.add_parser("serve-mcp", help="Start MCP server")
    _common_args(p)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    handlers = {
        "init-db": _handle_init_db,
        "load": _handle_load,
        "generate": _handle_generate,
        "parse": _handle_parse,
        "reconcile": _handle_reconcile,
        "summary": _handle_summary,
        "init-config": _handle_init_config,
        "serve-mcp": _handle_serve_mcp,
    }

    from chartbridge.exceptions import ChartbridgeError

    try:
        handlers[args.command](args)
    except ChartbridgeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _setup(args) -> dict:
    """Load config and configure logging. Returns the config dict."""
    from chartbridge.config import load_config

    config = load_config(args.config, quiet=args.command in ("init-config", "init-db"))
    level = "DEBUG" if args.verbose else str(config["logging"].get("level", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return config


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8") as f:
        return f.read()


def _handle_init_db(args):
    from chartbridge.db import ChartbridgeDB

    _setup(args)
    with ChartbridgeDB(args.db) as db:
        db.init_schema()
    print(f"Initialized database at {args.db}")


def _handle_load(args):
    import json

    from chartbridge.db import ChartbridgeDB
    from chartbridge.exceptions import ValidationError
    from chartbridge.models import document_from_dict

    _setup(args)
    try:
        data = json.loads(_read_text(args.input_file))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{args.input_file} is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("patient"), dict):
        raise ValidationError(f"{args.input_file} must contain a 'patient' object")

    document = document_from_dict(data)
    with ChartbridgeDB(args.db) as db:
        db.init_schema()
        counts = db.load_document(document, patient_id=args.patient_id)
        patient_id = db.load_history()[0]["patient_id"]

    print(f"Loaded patient {patient_id}")
    for table, count in counts.items():
        if count > 0:
            print(f"  {table:<20} {count:>6}")


def _referral_from_args(args):
    from chartbridge.models import Provider, ReferralDetails

    referred_to = None
    if args.referred_to:
        referred_to = Provider(name=args.referred_to, npi=args.npi, specialty=args.specialty)
    return ReferralDetails(
        reason=args.reason,
        urgency=args.urgency,
        clinical_history=args.history,
        requested_services=args.services,
        referred_to=referred_to,
    )


def _handle_generate(args):
    from chartbridge.ccda.templates import DocumentKind
    from chartbridge.db import ChartbridgeDB
    from chartbridge.service import ClinicalDocumentService

    config = _setup(args)
    kind = DocumentKind.from_slug(args.kind)
    referral = _referral_from_args(args) if kind is DocumentKind.REFERRAL else None

    with ChartbridgeDB(args.db) as db:
        db.init_schema()
        service = ClinicalDocumentService(db, settings=config["organization"])
        xml = service.generate(kind, args.patient_id, referral=referral, encounter_id=args.encounter)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(xml)
        print(f"Wrote {kind.title} to {args.output}")
    else:
        sys.stdout.write(xml)


def _handle_parse(args):
    import json

    from chartbridge.ccda.extract import extract
    from chartbridge.models import document_to_dict

    _setup(args)
    parsed = extract(_read_text(args.input_file))
    print(json.dumps(document_to_dict(parsed), indent=2))


def _handle_reconcile(args):
    from chartbridge.db import ChartbridgeDB
    from chartbridge.service import ClinicalDocumentService

    config = _setup(args)
    with ChartbridgeDB(args.db) as db:
        db.init_schema()
        service = ClinicalDocumentService(db, settings=config["organization"])
        parsed = service.parse_document(_read_text(args.input_file))
        result = service.reconcile(args.patient_id, parsed)

    _print_reconciliation(result)


def _print_reconciliation(result):
    counts = result.counts()
    print(f"\n{'='*50}")
    print(f"Reconciliation for patient {result.patient_id}")
    print(f"{'='*50}")
    for label, count in counts.items():
        print(f"  {label:<25} {count:>6}")
    print(f"{'='*50}")

    for heading, items in (
        ("New", result.new_items),
        ("Conflicts", result.conflict_items),
        ("Matched", result.matched_items),
    ):
        if not items:
            continue
        print(f"\n{heading}:")
        for item in items:
            line = f"  [{item.category}] {item.incoming.display_name or item.incoming.code}"
            if item.conflict_details:
                line += f" ({item.conflict_details})"
            print(line)


def _handle_summary(args):
    from chartbridge.db import ChartbridgeDB

    _setup(args)
    with ChartbridgeDB(args.db) as db:
        db.init_schema()
        _print_db_summary(db)


def _print_db_summary(db):
    counts = db.summary()
    history = db.load_history()

    print(f"\n{'='*50}")
    print("Database Summary")
    print(f"{'='*50}")
    for table, count in counts.items():
        if count > 0:
            print(f"  {table:<25} {count:>6}")
    print(f"{'='*50}")

    if history:
        print("\nLoad History:")
        for h in history:
            print(f"  {h['patient_id']:<25} loaded {h['loaded_at'][:19]} ({h['record_count']} records)")


def _handle_init_config(args):
    from chartbridge.config import write_default_config

    _setup(args)
    path = write_default_config(args.output)
    print(f"Config generated at {path}")


def _handle_serve_mcp(args):
    import os

    _setup(args)
    os.environ["CHARTBRIDGE_DB"] = args.db
    os.environ["CHARTBRIDGE_CONFIG"] = args.config

    from chartbridge.mcp.server import mcp

    mcp.run()


if __name__ == "__main__":
    main()
