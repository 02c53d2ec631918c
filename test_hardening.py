"""
test_hardening.py - Hardening Regression Tests.

Regression suite for:
- input validation (None / empty inputs never crash)
- model validation at the record boundary
- structured logging sanity

Usage:
    python test_hardening.py
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import date

from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cash_audit import audit_self_pay_vs_cash, reconcile_self_pay
from duplicates import check_payable_duplicate
from ledger_store import LedgerStore
from logging_config import LOG_LEVEL_ENV, get_logger, setup_logging
from models import DuplicateTier, LedgerItem, PaymentMethod, PaymentStatus, PayableCandidate, ProductionRecord
from normalize import (
    name_similarity,
    normalize_code,
    normalize_name,
    normalize_tax_id,
    parse_amount,
    parse_date,
    provider_search_terms,
    values_near,
)
from orphans import build_orphan_report, reconcile_closure
from provider_audit import build_overview


def _configure_output_symbols() -> tuple[str, str, str]:
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except Exception:
        pass

    try:
        "✓✗═".encode(sys.stdout.encoding or "utf-8")
        return "✓", "✗", "═"
    except Exception:
        return "[OK]", "[FAIL]", "="


PASS, FAIL, LINE = _configure_output_symbols()


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


def _raises_validation(factory) -> bool:
    try:
        factory()
    except ValidationError:
        return True
    return False


def main() -> int:
    passed = 0
    failed = 0

    def check(name: str, condition: bool) -> None:
        nonlocal passed, failed
        if condition:
            print(f"    {PASS} {name}")
            passed += 1
        else:
            print(f"    {FAIL} {name}")
            failed += 1

    print(LINE * 62)
    print("  Hardening Regression Tests")
    print(LINE * 62)

    # ----------------------------------------------------------
    # Category 1: None and empty inputs
    # ----------------------------------------------------------
    print("\n  None / empty inputs:")
    check("normalize_tax_id(None) -> None", normalize_tax_id(None) is None)
    check("normalize_code('') -> None", normalize_code("") is None)
    check("normalize_name(12345) -> '12345'", normalize_name(12345) == "12345")
    check("name_similarity(None, None) -> 0.0", name_similarity(None, None) == 0.0)
    check("provider_search_terms(None) -> []", provider_search_terms(None) == [])
    check("parse_amount(None) -> None", parse_amount(None) is None)
    check("parse_date(None) -> None", parse_date(None) is None)
    check("values_near(None, None) -> False", values_near(None, None) is False)

    empty_store = LedgerStore()
    check(
        "Empty candidate on empty store -> none",
        check_payable_duplicate(PayableCandidate(), empty_store).tier is DuplicateTier.NONE,
    )
    empty_cash = reconcile_self_pay([], [])
    check("reconcile_self_pay([], []) -> zero summary", empty_cash.summary.count_total == 0 and empty_cash.rows == [])
    check("build_overview([], []) -> []", build_overview([], []) == [])
    empty_report = build_orphan_report([], [])
    check(
        "build_orphan_report([], []) -> empty report",
        empty_report.lis_without_ledger == [] and empty_report.totals.lis_count == 0,
    )
    check("reconcile_closure on unknown closure -> []", reconcile_closure(empty_store, "closure_none") == [])

    # ----------------------------------------------------------
    # Category 2: Record validation
    # ----------------------------------------------------------
    print("\n  Record validation:")
    check(
        "Negative production amount rejected",
        _raises_validation(
            lambda: ProductionRecord(id="p", exam_date=date(2024, 5, 1), external_code="X", amount=-1.0)
        ),
    )
    check(
        "Empty production code rejected",
        _raises_validation(
            lambda: ProductionRecord(id="p", exam_date=date(2024, 5, 1), external_code="", amount=1.0)
        ),
    )
    check(
        "Unknown payment method rejected",
        _raises_validation(
            lambda: LedgerItem(id="c", external_code="X", date=date(2024, 5, 1), amount=1.0, payment_method="BITCOIN")
        ),
    )
    aliased = LedgerItem(
        id="c",
        external_code="X",
        date=date(2024, 5, 1),
        amount=1.0,
        payment_method=" dinheiro ",
        payment_status="fechado_em_envelope",
    )
    check("Payment method alias folded", aliased.payment_method is PaymentMethod.CASH)
    check("Payment status alias folded", aliased.status_class is PaymentStatus.CLOSED_IN_ENVELOPE)
    blank_status = LedgerItem(id="c", external_code="X", date=date(2024, 5, 1), amount=1.0, payment_status="")
    check("Blank status -> OTHER", blank_status.status_class is PaymentStatus.OTHER)
    check(
        "Negative candidate value rejected",
        _raises_validation(lambda: PayableCandidate(total_value=-10.0)),
    )

    # ----------------------------------------------------------
    # Category 3: Logging module
    # ----------------------------------------------------------
    print("\n  Logging Module:")
    setup_ok = True
    try:
        setup_logging(level=logging.DEBUG)
        setup_logging(level=logging.INFO, json_format=True)
        setup_logging(level=logging.INFO, json_format=False)
    except Exception:
        setup_ok = False
    check("setup_logging works", setup_ok)

    original_level = os.environ.get(LOG_LEVEL_ENV)
    try:
        os.environ[LOG_LEVEL_ENV] = "warning"
        setup_logging()
        check("Level read from environment", logging.getLogger().level == logging.WARNING)
        os.environ[LOG_LEVEL_ENV] = "LOUD"
        setup_logging()
        check("Unknown level falls back to INFO", logging.getLogger().level == logging.INFO)
    finally:
        if original_level is None:
            os.environ.pop(LOG_LEVEL_ENV, None)
        else:
            os.environ[LOG_LEVEL_ENV] = original_level

    logger = get_logger("test-hardening")
    logger_ok = isinstance(logger, logging.Logger)
    try:
        logger.info("test message")
    except Exception:
        logger_ok = False
    check("get_logger returns valid logger", logger_ok)

    setup_logging(level=logging.INFO)
    handler = _ListHandler()
    logging.getLogger().addHandler(handler)
    try:
        store = LedgerStore()
        store.upsert_production(
            [
                ProductionRecord(
                    id="p1",
                    unit_id="unit_rp",
                    exam_date=date(2024, 5, 10),
                    external_code="LIS001",
                    is_self_pay=True,
                    amount=150.0,
                )
            ]
        )
        audit_self_pay_vs_cash(store, "unit_rp", date(2024, 5, 1), date(2024, 5, 31))
    finally:
        logging.getLogger().removeHandler(handler)

    audit_lines = [message for message in handler.messages if message.startswith("cash_audit |")]
    check("Operation logs one completion line", len(audit_lines) == 1)
    check("Completion line uses key=value pairs", bool(audit_lines) and "not_found=1" in audit_lines[0])

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  Hardening: COMPLETE {PASS}")
    else:
        print(f"  Hardening: {failed} FAILED - fix before proceeding")
    print(f"{LINE * 62}")
    return failed


def test_hardening() -> None:
    assert main() == 0


if __name__ == "__main__":
    raise SystemExit(1 if main() else 0)
