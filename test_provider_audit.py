"""
test_provider_audit.py - Provider production vs. invoice checks.

Usage:
    python test_provider_audit.py
"""

from __future__ import annotations

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ledger_store import LedgerStore
from models import Invoice, ProductionRecord
from provider_audit import (
    audit_provider_vs_invoices,
    build_overview,
    customer_matches_terms,
    match_invoices_for_provider,
    provider_audit_overview,
)


def _symbols() -> tuple[str, str, str]:
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


PASS, FAIL, LINE = _symbols()

UNIT = "unit_rp"
START = date(2024, 5, 1)
END = date(2024, 5, 31)

_counter = 0


def _production(provider: str, amount: float, day: int, is_self_pay: bool = False) -> ProductionRecord:
    global _counter
    _counter += 1
    return ProductionRecord(
        id=f"prod_{_counter:03d}",
        unit_id=UNIT,
        exam_date=date(2024, 5, day),
        external_code=f"LIS{_counter:03d}",
        provider_name=provider,
        is_self_pay=is_self_pay,
        amount=amount,
    )


def _invoice(customer: str, net_value: float, issued: date, number: str) -> Invoice:
    return Invoice(
        id=f"nf_{number}",
        unit_id=UNIT,
        document_number=number,
        issue_date=issued,
        customer_name=customer,
        net_value=net_value,
    )


def _build_store() -> LedgerStore:
    store = LedgerStore()
    store.upsert_production(
        [
            _production("Convenio Saude ABC", 4000.00, 3),
            _production("Unimed Ribeirao", 1000.00, 4),
            _production("Convenio Saude ABC", 3500.00, 2),
            _production("Vida Plena", 700.00, 8),
            _production("Convenio Saude ABC", 2500.00, 20),
            _production("Unimed Ribeirao", 500.00, 21),
            _production("Particular", 999.00, 21, is_self_pay=True),
        ]
    )
    store.add_invoices(
        [
            _invoice("SAUDE ABC LTDA", 4800.00, date(2024, 5, 28), "1002"),
            _invoice("SAUDE ABC LTDA", 5000.00, date(2024, 5, 15), "1001"),
            _invoice("Unimed Ribeirao", 1500.00, date(2024, 5, 30), "1003"),
            _invoice("SAUDE ABC LTDA", 300.00, date(2024, 6, 3), "1004"),
        ]
    )
    return store


def main() -> int:
    passed = 0
    failed = 0

    def check(name: str, condition: bool) -> None:
        nonlocal passed, failed
        if condition:
            passed += 1
            print(f"    {PASS} {name}")
        else:
            failed += 1
            print(f"    {FAIL} {name}")

    print(LINE * 52)
    print("  Provider Auditor Tests")
    print(LINE * 52)

    store = _build_store()

    print("\n  Name pairing:")
    check("All terms contained -> match", customer_matches_terms("SAUDE ABC LTDA", ["saude", "abc"]))
    check("Missing term -> no match", not customer_matches_terms("SAUDE XYZ LTDA", ["saude", "abc"]))
    check("No terms never match", not customer_matches_terms("ANY", []))
    invoices = store.fetch_invoices(UNIT, START, END)
    matched = match_invoices_for_provider("Convenio Saude ABC", invoices)
    check("Provider label ignored when pairing", [invoice.id for invoice in matched] == ["nf_1001", "nf_1002"])

    print("\n  Single provider:")
    detail = audit_provider_vs_invoices(store, UNIT, "Convenio Saude ABC", START, END)
    check("Production total 10,000", detail.summary.total_production == 10000.00)
    check("Invoiced total 9,800 (June invoice excluded)", detail.summary.total_invoiced == 9800.00)
    check("Difference = production - invoices = 200", detail.summary.difference == 200.00)
    check("Three production items", detail.summary.count_production == 3)
    check("Two invoices", detail.summary.count_invoices == 2)
    check(
        "Production items sorted by exam date",
        [record.exam_date.day for record in detail.production_items] == [2, 3, 20],
    )
    check("Raw invoices returned", len(detail.invoices) == 2)

    unknown = audit_provider_vs_invoices(store, UNIT, "Bradesco Saude", START, END)
    check("Unknown provider -> zero totals", unknown.summary.total_production == 0.0 and unknown.summary.count_invoices == 0)

    print("\n  Overview:")
    overview = provider_audit_overview(store, UNIT, START, END)
    names = [summary.provider_name for summary in overview]
    by_name = {summary.provider_name: summary for summary in overview}
    check("Self-pay production excluded", "Particular" not in names)
    check("Three providers reported", len(overview) == 3)
    check(
        "Sorted by |difference| descending",
        names == ["Vida Plena", "Convenio Saude ABC", "Unimed Ribeirao"],
    )
    differences = [abs(summary.difference) for summary in overview]
    check("Differences non-increasing", all(a >= b for a, b in zip(differences, differences[1:])))
    saude = by_name.get("Convenio Saude ABC")
    check("Saude ABC difference 200", saude is not None and saude.difference == 200.00)
    check("Saude ABC paired by token subset", saude is not None and saude.match_method == "token_subset")
    check("Saude ABC paired with customer", saude is not None and saude.matched_customer_name == "SAUDE ABC LTDA")
    unimed = by_name.get("Unimed Ribeirao")
    check("Exact customer name preferred", unimed is not None and unimed.match_method == "exact")
    check("Exact match balances", unimed is not None and unimed.difference == 0.0)
    vida = by_name.get("Vida Plena")
    check("Unpaired provider keeps full production as difference", vida is not None and vida.difference == 700.00)
    check("Unpaired provider has no match method", vida is not None and vida.match_method is None)

    print("\n  Tie-break:")
    records = [
        ProductionRecord(id="t1", exam_date=date(2024, 5, 1), external_code="T1", provider_name="Alpha Saude", amount=100.0),
        ProductionRecord(id="t2", exam_date=date(2024, 5, 1), external_code="T2", provider_name="Beta Saude", amount=100.0),
        ProductionRecord(id="t3", exam_date=date(2024, 5, 1), external_code="T3", provider_name="Gamma Saude", amount=300.0),
    ]
    tied = build_overview(records, [])
    check(
        "Equal differences keep production order",
        [summary.provider_name for summary in tied] == ["Gamma Saude", "Alpha Saude", "Beta Saude"],
    )

    print(f"\n{LINE * 52}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  Provider Auditor: COMPLETE {PASS}")
    else:
        print(f"  Provider Auditor: {failed} FAILED - fix before proceeding")
    print(f"{LINE * 52}")
    return failed


def test_provider_audit() -> None:
    assert main() == 0


if __name__ == "__main__":
    raise SystemExit(1 if main() else 0)
