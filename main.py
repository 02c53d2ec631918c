"""
main.py - CLI orchestration for the reconciliation engine.

This module is orchestration-only. Each subcommand opens the ledger store,
runs one engine operation and prints the result as JSON:

    import           load a production CSV into the store
    check-duplicate  classify a candidate payable document
    audit-cash       self-pay production vs. cash closure
    audit-providers  provider production vs. invoices (overview or one provider)
    orphans          ledger <-> LIS orphan report
    closure          proof-of-payment check for one cash closure
    link             manually link a transaction to a LIS code
    no-match         mark a LIS item as intentionally unmatched
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel

from cash_audit import audit_self_pay_vs_cash
from duplicates import check_payable_duplicate
from ingest import import_production_frame, load_production_csv
from ledger_store import LedgerStore, RecordNotFoundError
from logging_config import get_logger, setup_logging
from models import PayableCandidate
from normalize import parse_date
from orphans import find_orphans, link_transaction_to_lis, mark_no_match, reconcile_closure
from provider_audit import audit_provider_vs_invoices, provider_audit_overview

logger = get_logger("labrecon")


def _date_arg(raw: str) -> date:
    parsed = parse_date(raw)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid date: {raw!r} (use YYYY-MM-DD or DD/MM/YYYY)")
    return parsed


def _dump(result: Any) -> str:
    if isinstance(result, BaseModel):
        payload = result.model_dump(mode="json")
    elif isinstance(result, list):
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in result]
    else:
        payload = result
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _add_period(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--unit", dest="unit_id", default=None, help="Unit id (all units when omitted)")
    parser.add_argument("--start", type=_date_arg, required=True, help="Period start (inclusive)")
    parser.add_argument("--end", type=_date_arg, required=True, help="Period end (inclusive)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labrecon",
        description=(
            "Reconciliation and duplicate-detection engine for a multi-unit "
            "clinical laboratory ledger."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s import --csv production.csv --unit unit_rp --self-pay\n"
            "  %(prog)s audit-cash --unit unit_rp --start 2024-05-01 --end 2024-05-31\n"
            "  %(prog)s check-duplicate --barcode 34191790010104351004791020150008291070026000\n"
        ),
    )
    parser.add_argument("--ledger", default=None, help="Ledger JSON file (default: $LEDGER_FILE)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--log-json", action="store_true", help="Output logs as JSON lines")

    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser("import", help="Import a LIS production CSV")
    p_import.add_argument("--csv", "-c", required=True, help="Production report CSV")
    p_import.add_argument("--unit", dest="unit_id", default=None)
    p_import.add_argument("--provider", default=None, help="Provider name for the whole file")
    payer = p_import.add_mutually_exclusive_group()
    payer.add_argument("--self-pay", dest="is_self_pay", action="store_const", const=True, default=None)
    payer.add_argument("--insured", dest="is_self_pay", action="store_const", const=False)
    p_import.add_argument("--batch-size", type=int, default=None)

    p_dup = sub.add_parser("check-duplicate", help="Classify a candidate payable document")
    p_dup.add_argument("--barcode", default=None)
    p_dup.add_argument("--typable-line", default=None)
    p_dup.add_argument("--issuer-tax-id", default=None)
    p_dup.add_argument("--document-number", default=None)
    p_dup.add_argument("--value", type=float, default=None)
    p_dup.add_argument("--issue-date", type=_date_arg, default=None)
    p_dup.add_argument("--due-date", type=_date_arg, default=None)
    p_dup.add_argument("--issuer-name", default=None)

    p_cash = sub.add_parser("audit-cash", help="Self-pay production vs. cash closure")
    _add_period(p_cash)

    p_prov = sub.add_parser("audit-providers", help="Provider production vs. invoices")
    _add_period(p_prov)
    p_prov.add_argument("--provider", default=None, help="Detail for one provider")

    p_orphans = sub.add_parser("orphans", help="Ledger <-> LIS orphan report")
    _add_period(p_orphans)

    p_closure = sub.add_parser("closure", help="Proof-of-payment check for one cash closure")
    p_closure.add_argument("closure_id")
    p_closure.add_argument("--tolerance-days", type=int, default=1)

    p_link = sub.add_parser("link", help="Link a transaction to a LIS code")
    p_link.add_argument("--transaction", dest="transaction_id", required=True)
    p_link.add_argument("--code", dest="lis_code", required=True)
    p_link.add_argument("--item", dest="lis_item_id", default=None)
    p_link.add_argument("--date", dest="on_date", type=_date_arg, required=True)
    p_link.add_argument("--user", dest="user_id", default=None)
    p_link.add_argument("--notes", default=None)

    p_nomatch = sub.add_parser("no-match", help="Mark a LIS item as intentionally unmatched")
    p_nomatch.add_argument("--code", dest="lis_code", required=True)
    p_nomatch.add_argument("--item", dest="lis_item_id", required=True)
    p_nomatch.add_argument("--date", dest="on_date", type=_date_arg, required=True)
    p_nomatch.add_argument("--user", dest="user_id", default=None)
    p_nomatch.add_argument("--notes", default=None)

    return parser


def run_command(args: argparse.Namespace, store: LedgerStore) -> Any:
    """Dispatch one parsed subcommand against a store and return its result."""
    if args.command == "import":
        df = load_production_csv(args.csv)
        return import_production_frame(
            store,
            df,
            unit_id=args.unit_id,
            provider_name=args.provider,
            is_self_pay=args.is_self_pay,
            batch_size=args.batch_size,
        )

    if args.command == "check-duplicate":
        candidate = PayableCandidate(
            barcode_digits=args.barcode,
            typable_line_digits=args.typable_line,
            issuer_tax_id=args.issuer_tax_id,
            document_number=args.document_number,
            total_value=args.value,
            issue_date=args.issue_date,
            due_date=args.due_date,
            issuer_name=args.issuer_name,
        )
        return check_payable_duplicate(candidate, store)

    if args.command == "audit-cash":
        return audit_self_pay_vs_cash(store, args.unit_id, args.start, args.end)

    if args.command == "audit-providers":
        if args.provider:
            return audit_provider_vs_invoices(store, args.unit_id, args.provider, args.start, args.end)
        return provider_audit_overview(store, args.unit_id, args.start, args.end)

    if args.command == "orphans":
        return find_orphans(store, args.unit_id, args.start, args.end)

    if args.command == "closure":
        return reconcile_closure(store, args.closure_id, tolerance_days=args.tolerance_days)

    if args.command == "link":
        return link_transaction_to_lis(
            store,
            transaction_id=args.transaction_id,
            lis_code=args.lis_code,
            lis_item_id=args.lis_item_id,
            on_date=args.on_date,
            user_id=args.user_id,
            notes=args.notes,
        )

    if args.command == "no-match":
        return mark_no_match(
            store,
            lis_code=args.lis_code,
            lis_item_id=args.lis_item_id,
            on_date=args.on_date,
            notes=args.notes,
            user_id=args.user_id,
        )

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    try:
        store = LedgerStore(args.ledger) if args.ledger else LedgerStore.from_env()
        logger.info("cli_mode | command=%s | ledger=%s", args.command, store.path)
        result = run_command(args, store)
        print(_dump(result))
    except RecordNotFoundError as exc:
        logger.error("cli_error | type=RecordNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
