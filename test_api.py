"""
test_api.py - HTTP layer checks.

Usage:
    python test_api.py
"""

from __future__ import annotations

import os
import sys
from datetime import date

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import api
from api import app
from ledger_store import LedgerStore
from models import Invoice, LedgerItem, LisItem, Payable, ProductionRecord, Transaction


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
PERIOD = {"unit_id": UNIT, "start": "2024-05-01", "end": "2024-05-31"}
BARCODE = "34191790010104351004791020150008291070026000"


def _seeded_store() -> LedgerStore:
    store = LedgerStore()
    store.add_payables(
        [Payable(id="pay_1", beneficiary_name="Alpha Supplies", amount=199.50, due_date=date(2024, 6, 10), barcode_digits=BARCODE)]
    )
    store.upsert_production(
        [
            ProductionRecord(id="p1", unit_id=UNIT, exam_date=date(2024, 5, 10), external_code="LIS001", provider_name="Particular", is_self_pay=True, amount=150.0),
            ProductionRecord(id="p2", unit_id=UNIT, exam_date=date(2024, 5, 11), external_code="LIS002", provider_name="Particular", is_self_pay=True, amount=200.0),
            ProductionRecord(id="p3", unit_id=UNIT, exam_date=date(2024, 5, 12), external_code="LIS003", provider_name="Convenio Saude ABC", amount=10000.0),
        ]
    )
    store.add_ledger_items(
        [LedgerItem(id="c1", unit_id=UNIT, external_code="LIS001", date=date(2024, 5, 10), amount=150.0, payment_status="CONFIRMADO")]
    )
    store.add_invoices(
        [Invoice(id="nf_1", unit_id=UNIT, document_number="1001", issue_date=date(2024, 5, 20), customer_name="SAUDE ABC LTDA", net_value=9800.0)]
    )
    store.add_lis_items(
        [
            LisItem(id="li1", unit_id=UNIT, closure_id="closure_a", lis_code="1001", date=date(2024, 5, 10), amount=100.0),
            LisItem(id="li2", unit_id=UNIT, closure_id="closure_a", lis_code="1002", date=date(2024, 5, 10), amount=40.0),
        ]
    )
    store.add_transactions(
        [
            Transaction(id="tx1", unit_id=UNIT, date=date(2024, 5, 10), amount=100.0, description="Deposit [LIS 1001]"),
            Transaction(id="tx2", unit_id=UNIT, date=date(2024, 5, 11), amount=35.0),
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

    print(LINE * 62)
    print("  HTTP API Tests")
    print(LINE * 62)

    original_store = api.ledger_store
    api.ledger_store = _seeded_store()
    client = TestClient(app)

    try:
        print("\n  Health:")
        response = client.get("/health")
        check("GET /health returns 200", response.status_code == 200)
        check("Health reports record counts", response.json().get("records", {}).get("payables") == 1)

        print("\n  Duplicates:")
        response = client.post("/duplicates/check", json={"barcode_digits": BARCODE, "total_value": 200.0})
        payload = response.json() if response.status_code == 200 else {}
        check("POST /duplicates/check returns 200", response.status_code == 200)
        check("Barcode duplicate is blocked", payload.get("tier") == "blocked")
        check("Blocked result blocks creation", payload.get("blocks_creation") is True)
        check("Display title included", payload.get("title") == "Duplicate document")
        check("Blocked disallows continue", payload.get("allow_continue") is False)

        response = client.post("/duplicates/check", json={"simple": True, "barcode_digits": BARCODE})
        check("Simple check finds barcode", response.status_code == 200 and response.json().get("tier") == "blocked")

        response = client.post("/duplicates/check", json={"issuer_name": "Nobody", "total_value": 5.0})
        check("Unmatched candidate -> none", response.status_code == 200 and response.json().get("tier") == "none")

        response = client.post("/duplicates/check", json={"total_value": -5})
        check("Negative value rejected with 400", response.status_code == 400)

        print("\n  Audits:")
        response = client.get("/audit/cash", params=PERIOD)
        check("GET /audit/cash returns 200", response.status_code == 200)
        cash = response.json() if response.status_code == 200 else {}
        check("Cash audit lists the unmatched row", [row["source_record"]["external_code"] for row in cash.get("rows", [])] == ["LIS002"])
        check("Cash audit summary difference", cash.get("summary", {}).get("difference") == 200.0)

        response = client.get("/audit/cash", params={**PERIOD, "start": "2024-06-01"})
        check("Inverted period rejected with 400", response.status_code == 400)

        response = client.get("/audit/providers", params=PERIOD)
        providers = response.json() if response.status_code == 200 else []
        check("GET /audit/providers returns 200", response.status_code == 200)
        check("Provider overview pairs Saude ABC", providers and providers[0].get("difference") == 200.0)

        response = client.get("/audit/providers/Convenio Saude ABC", params=PERIOD)
        detail = response.json() if response.status_code == 200 else {}
        check("GET /audit/providers/{name} returns 200", response.status_code == 200)
        check("Provider detail returns invoices", len(detail.get("invoices", [])) == 1)

        print("\n  Reconciliation:")
        response = client.get("/reconciliation/orphans", params=PERIOD)
        orphans = response.json() if response.status_code == 200 else {}
        check("GET /reconciliation/orphans returns 200", response.status_code == 200)
        check(
            "Both LIS items orphaned before linking",
            sorted(item["id"] for item in orphans.get("lis_without_ledger", [])) == ["li1", "li2"],
        )

        response = client.get("/reconciliation/closures/closure_a")
        closure = response.json() if response.status_code == 200 else {}
        check("GET /reconciliation/closures/{id} returns 200", response.status_code == 200)
        check("Closure counts", closure.get("counts") == {"RECONCILED": 1, "NO_PROOF": 1, "DUPLICATE": 0})

        link_payload = {"transaction_id": "tx1", "lis_code": "1001", "lis_item_id": "li1", "date": "2024-05-31"}
        response = client.post("/reconciliation/link", json=link_payload)
        linked = response.json() if response.status_code == 200 else {}
        check("POST /reconciliation/link returns 200", response.status_code == 200)
        check("Link entry is LINKED", linked.get("status") == "LINKED")
        response = client.post("/reconciliation/link", json=link_payload)
        check("Repeated link returns the same entry", response.status_code == 200 and response.json().get("id") == linked.get("id"))

        response = client.post("/reconciliation/link", json={**link_payload, "transaction_id": "tx_missing"})
        check("Unknown transaction -> 404", response.status_code == 404)
        response = client.post("/reconciliation/link", json={"transaction_id": "tx2"})
        check("Incomplete link payload -> 400", response.status_code == 400)
        response = client.post("/reconciliation/link", json={**link_payload, "lis_code": "1002"})
        check("Code mismatch -> 400", response.status_code == 400)

        response = client.post(
            "/reconciliation/no-match",
            json={"lis_code": "1002", "lis_item_id": "li2", "date": "2024-05-31", "notes": "Courtesy"},
        )
        check("POST /reconciliation/no-match returns 200", response.status_code == 200)
        check("No-match entry is NO_MATCH", response.json().get("status") == "NO_MATCH")
        response = client.post(
            "/reconciliation/no-match",
            json={"lis_code": "1002", "lis_item_id": "li_missing", "date": "2024-05-31"},
        )
        check("Unknown LIS item -> 404", response.status_code == 404)

        response = client.get("/reconciliation/orphans", params=PERIOD)
        orphans = response.json() if response.status_code == 200 else {}
        check("No LIS orphans after link and no-match", orphans.get("lis_without_ledger") == [])
        check("No-match listed as resolved", len(orphans.get("resolved", [])) == 1)

        print("\n  Import:")
        csv_bytes = (
            "exam_date,external_code,amount,provider_name\n"
            "2024-05-20,LIS100,150.00,Particular\n"
            "2024-05-21,LIS101,,Particular\n"
        ).encode("utf-8")
        response = client.post(
            "/production/import",
            files={"production_csv": ("production.csv", csv_bytes, "text/csv")},
            data={"unit_id": UNIT},
        )
        imported = response.json() if response.status_code == 200 else {}
        check("POST /production/import returns 200", response.status_code == 200)
        check("One row imported", imported.get("imported") == 1)
        check("One row skipped", imported.get("skipped_invalid") == 1)

        response = client.post(
            "/production/import",
            files={"production_csv": ("bad.csv", b"foo,bar\n1,2\n", "text/csv")},
            data={"unit_id": UNIT},
        )
        check("CSV without required columns -> 400", response.status_code == 400)
    finally:
        api.ledger_store = original_store

    print(f"\n{LINE * 62}")
    print(f"  Results: {passed}/{passed + failed} passed")
    if failed == 0:
        print(f"  HTTP API: COMPLETE {PASS}")
    else:
        print(f"  HTTP API: {failed} FAILED - fix before proceeding")
    print(f"{LINE * 62}")
    return failed


def test_api() -> None:
    assert main() == 0


if __name__ == "__main__":
    raise SystemExit(1 if main() else 0)
