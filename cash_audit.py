"""
cash_audit.py - Self-pay production vs. daily cash closure.

Each self-pay production row is looked up in the cash-closure items of the
same unit and period, first by (code, date) and then by code alone (covers a
closing that drifted the ledger date by a day). Rows are classified:

    no ledger item                          -> NOT_FOUND (pending)
    CLOSED_IN_ENVELOPE / CONFIRMED          -> OK        (resolved)
    UNPAID                                  -> PENDING   ("marked unpaid")
    any other status                        -> PENDING   (echoes the status)

Only the non-OK rows are returned, with an aggregate summary. Reporting only:
nothing is written, so re-running on an unchanged snapshot is idempotent.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from ledger_store import LedgerStore
from logging_config import get_logger
from models import (
    CashAuditResult,
    LedgerItem,
    PaymentStatus,
    ProductionRecord,
    ProductionStatus,
    ReconciliationRow,
    ReconciliationSummary,
)

logger = get_logger(__name__)

RESOLVED_STATUSES = {PaymentStatus.CLOSED_IN_ENVELOPE, PaymentStatus.CONFIRMED}


def _composite_key(code: str, day: date) -> tuple[str, str]:
    return code, day.isoformat()


def build_ledger_indexes(
    items: list[LedgerItem],
) -> tuple[dict[tuple[str, str], LedgerItem], dict[str, LedgerItem]]:
    """Index cash items by (code, date) and by code alone in one pass.

    The (code, date) index keeps the last item seen; the code-only fallback keeps the first.
    """
    by_code_and_date: dict[tuple[str, str], LedgerItem] = {}
    by_code: dict[str, LedgerItem] = {}
    for item in items:
        by_code_and_date[_composite_key(item.external_code, item.date)] = item
        by_code.setdefault(item.external_code, item)
    return by_code_and_date, by_code


def classify_row(record: ProductionRecord, item: Optional[LedgerItem]) -> tuple[ProductionStatus, str]:
    if item is None:
        return ProductionStatus.NOT_FOUND, "Not found in the cash closure"

    status_class = item.status_class
    if status_class in RESOLVED_STATUSES:
        return ProductionStatus.OK, f"Resolved ({item.payment_status})"
    if status_class is PaymentStatus.UNPAID:
        return ProductionStatus.PENDING, "Marked as unpaid"
    return ProductionStatus.PENDING, f"Status: {item.payment_status}"


def reconcile_self_pay(
    production: list[ProductionRecord],
    ledger_items: list[LedgerItem],
) -> CashAuditResult:
    """Match self-pay production rows against cash-closure items (pure)."""
    by_code_and_date, by_code = build_ledger_indexes(ledger_items)

    summary = ReconciliationSummary()
    rows: list[ReconciliationRow] = []
    total_production = 0.0
    total_resolved = 0.0
    total_pending = 0.0

    for record in production:
        item = by_code_and_date.get(_composite_key(record.external_code, record.exam_date))
        if item is None:
            item = by_code.get(record.external_code)

        status, reason = classify_row(record, item)
        summary.counts_by_status[status.value] += 1
        total_production += record.amount
        if status is ProductionStatus.OK:
            total_resolved += record.amount
            continue

        total_pending += record.amount
        logger.debug(
            "cash_audit_row | code=%s | exam_date=%s | status=%s | reason=%r",
            record.external_code,
            record.exam_date,
            status.value,
            reason,
        )
        rows.append(
            ReconciliationRow(
                source_record=record,
                status=status,
                reason=reason,
                linked_target_id=item.id if item else None,
                ledger_payment_status=item.payment_status if item else None,
                ledger_payment_method=item.payment_method if item else None,
                ledger_amount=item.amount if item else None,
            )
        )

    summary.total_production = round(total_production, 2)
    summary.total_resolved = round(total_resolved, 2)
    summary.total_pending = round(total_pending, 2)
    summary.difference = round(total_production - total_resolved, 2)
    summary.count_total = len(production)
    return CashAuditResult(summary=summary, rows=rows)


def audit_self_pay_vs_cash(
    store: LedgerStore,
    unit_id: Optional[str],
    start: date,
    end: date,
) -> CashAuditResult:
    """Fetch self-pay production and cash items for a unit/period and reconcile them."""
    production = store.fetch_production(unit_id, start, end, is_self_pay=True)
    if not production:
        logger.warning(
            "cash_audit | unit_id=%s | start=%s | end=%s | production_rows=0",
            unit_id,
            start,
            end,
        )
        return CashAuditResult(summary=ReconciliationSummary())

    ledger_items = store.fetch_ledger_items(unit_id, start, end)
    result = reconcile_self_pay(production, ledger_items)
    counts = result.summary.counts_by_status
    logger.info(
        "cash_audit | unit_id=%s | start=%s | end=%s | production=%s | ledger_items=%s | ok=%s | pending=%s | not_found=%s | difference=%.2f",
        unit_id,
        start,
        end,
        len(production),
        len(ledger_items),
        counts[ProductionStatus.OK.value],
        counts[ProductionStatus.PENDING.value],
        counts[ProductionStatus.NOT_FOUND.value],
        result.summary.difference,
    )
    return result
