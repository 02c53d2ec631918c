"""
orphans.py - Ledger <-> LIS orphan finder and manual overrides.

find_orphans() compares the LIS closure items of a unit/period with the
incoming ledger transactions of the same period, keyed by LIS code:

    lis_without_ledger  LIS items whose code no transaction references
    ledger_without_lis  transactions carrying no LIS code
    duplicate_codes     codes repeated among LIS items or among transactions
    matched             1:1 pairs, OK when amounts agree within tolerance

Two manual operations write to the store:

    link_transaction_to_lis()  sets the transaction's LIS reference + LINKED log
    mark_no_match()            NO_MATCH log entry (tombstone, never a delete)

Both validate every referenced record before writing anything and are no-ops
when repeated with the same inputs. LIS items carrying a terminal log entry
are reported under `resolved` and never offered as orphans again.

reconcile_closure() is the per-closure proof check used by the cash-closing
screen: it looks for transactions tagging each item's code within a date
tolerance and classifies RECONCILED / NO_PROOF / DUPLICATE.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from ledger_store import LedgerStore, new_id
from logging_config import get_logger
from models import (
    ClosureMatch,
    DuplicateCodeEntry,
    LisItem,
    LogStatus,
    MatchedPair,
    OrphanReport,
    OrphanTotals,
    PairStatus,
    ProofStatus,
    ReconciliationLogEntry,
    Transaction,
)
from normalize import values_near

logger = get_logger(__name__)

VALUE_TOLERANCE = 0.01
CLOSURE_AMOUNT_TOLERANCE = 0.01
DEFAULT_LINK_NOTE = "Manual link from the reconciliation screen"
DEFAULT_NO_MATCH_NOTE = "Marked as having no counterpart"


def _terminal_entry_for(
    item: LisItem,
    by_item: dict[str, ReconciliationLogEntry],
    by_code: dict[str, ReconciliationLogEntry],
) -> Optional[ReconciliationLogEntry]:
    return by_item.get(item.id) or by_code.get(item.lis_code)


def build_orphan_report(
    lis_items: list[LisItem],
    transactions: list[Transaction],
    log_entries: Optional[list[ReconciliationLogEntry]] = None,
) -> OrphanReport:
    """Bidirectional set difference between LIS items and transactions (pure)."""
    terminal_by_item: dict[str, ReconciliationLogEntry] = {}
    terminal_by_code: dict[str, ReconciliationLogEntry] = {}
    for entry in log_entries or []:
        if not entry.status.is_terminal:
            continue
        if entry.lis_item_id:
            terminal_by_item.setdefault(entry.lis_item_id, entry)
        else:
            terminal_by_code.setdefault(entry.lis_code, entry)

    items_by_code: dict[str, list[LisItem]] = {}
    for item in lis_items:
        items_by_code.setdefault(item.lis_code, []).append(item)

    transactions_by_code: dict[str, list[Transaction]] = {}
    for tx in transactions:
        if tx.lis_protocol_id:
            transactions_by_code.setdefault(tx.lis_protocol_id, []).append(tx)

    report = OrphanReport()
    resolved_ids: set[str] = set()

    for lis_code, items in items_by_code.items():
        linked = transactions_by_code.get(lis_code, [])

        if not linked:
            for item in items:
                entry = _terminal_entry_for(item, terminal_by_item, terminal_by_code)
                if entry is None:
                    report.lis_without_ledger.append(item)
                elif entry.id not in resolved_ids:
                    resolved_ids.add(entry.id)
                    report.resolved.append(entry)
        elif len(linked) == 1 and len(items) == 1:
            item, tx = items[0], linked[0]
            report.matched.append(
                MatchedPair(
                    lis_code=lis_code,
                    lis_item_id=item.id,
                    transaction_id=tx.id,
                    lis_amount=item.amount,
                    transaction_amount=tx.amount,
                    lis_date=item.date,
                    transaction_date=tx.date,
                    status=(
                        PairStatus.OK
                        if values_near(item.amount, tx.amount, VALUE_TOLERANCE)
                        else PairStatus.DIVERGENT
                    ),
                    date_diverges=item.date != tx.date,
                )
            )

        if len(items) > 1:
            report.duplicate_codes.append(
                DuplicateCodeEntry(
                    lis_code=lis_code,
                    side="lis",
                    occurrences=len(items),
                    record_ids=[item.id for item in items],
                    dates=[item.date for item in items],
                    total_amount=round(sum(item.amount for item in items), 2),
                )
            )

    for lis_code, linked in transactions_by_code.items():
        if len(linked) > 1:
            report.duplicate_codes.append(
                DuplicateCodeEntry(
                    lis_code=lis_code,
                    side="ledger",
                    occurrences=len(linked),
                    record_ids=[tx.id for tx in linked],
                    dates=[tx.date for tx in linked],
                    total_amount=round(sum(tx.amount for tx in linked), 2),
                )
            )

    report.ledger_without_lis = [tx for tx in transactions if not tx.lis_protocol_id]
    report.totals = OrphanTotals(
        lis_count=len(lis_items),
        lis_amount=round(sum(item.amount for item in lis_items), 2),
        transaction_count=len(transactions),
        transaction_amount=round(sum(tx.amount for tx in transactions), 2),
        matched_count=len(report.matched),
        matched_amount=round(sum(pair.lis_amount for pair in report.matched), 2),
    )
    return report


def find_orphans(
    store: LedgerStore,
    unit_id: Optional[str],
    start: date,
    end: date,
) -> OrphanReport:
    """Orphan report for a unit and period, honoring manual overrides."""
    lis_items = store.fetch_lis_items(unit_id, start, end)
    transactions = store.fetch_incoming_transactions(unit_id, start, end)
    log_entries = store.fetch_log_entries(unit_id=unit_id)
    report = build_orphan_report(lis_items, transactions, log_entries)
    logger.info(
        "orphan_report | unit_id=%s | start=%s | end=%s | lis_without_ledger=%s | ledger_without_lis=%s | duplicate_codes=%s | matched=%s | divergent=%s | resolved=%s",
        unit_id,
        start,
        end,
        len(report.lis_without_ledger),
        len(report.ledger_without_lis),
        len(report.duplicate_codes),
        len(report.matched),
        sum(1 for pair in report.matched if pair.status is PairStatus.DIVERGENT),
        len(report.resolved),
    )
    return report


def link_transaction_to_lis(
    store: LedgerStore,
    transaction_id: str,
    lis_code: str,
    lis_item_id: Optional[str],
    on_date: date,
    user_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> ReconciliationLogEntry:
    """Link a transaction to a LIS code and record the LINKED log entry.

    Raises:
        RecordNotFoundError: unknown transaction or LIS item (nothing written).
        ValueError: the LIS item carries a different code (nothing written).
    """
    lis_code = (lis_code or "").strip()
    if not lis_code:
        raise ValueError("lis_code is required to link a transaction.")

    tx = store.get_transaction(transaction_id)
    if lis_item_id:
        item = store.get_lis_item(lis_item_id)
        if item.lis_code != lis_code:
            raise ValueError(
                f"LIS item {lis_item_id} carries code {item.lis_code!r}, not {lis_code!r}."
            )

    if tx.lis_protocol_id == lis_code:
        for entry in store.fetch_log_entries(lis_code=lis_code, lis_item_id=lis_item_id):
            if entry.status is LogStatus.LINKED and entry.transaction_id == transaction_id:
                logger.info(
                    "manual_link | transaction_id=%s | lis_code=%s | result=already_linked | entry_id=%s",
                    transaction_id,
                    lis_code,
                    entry.id,
                )
                return entry

    entry = ReconciliationLogEntry(
        id=new_id("rlog"),
        lis_code=lis_code,
        unit_id=tx.unit_id,
        date=on_date,
        transaction_id=transaction_id,
        lis_item_id=lis_item_id,
        status=LogStatus.LINKED,
        notes=notes or DEFAULT_LINK_NOTE,
        user_id=user_id,
        reconciled_at=datetime.now(timezone.utc),
    )
    store.apply_link(transaction_id, lis_code, entry)
    logger.info(
        "manual_link | transaction_id=%s | lis_code=%s | lis_item_id=%s | result=linked | entry_id=%s",
        transaction_id,
        lis_code,
        lis_item_id,
        entry.id,
    )
    return entry


def mark_no_match(
    store: LedgerStore,
    lis_code: str,
    lis_item_id: str,
    on_date: date,
    notes: Optional[str] = None,
    user_id: Optional[str] = None,
) -> ReconciliationLogEntry:
    """Record that a LIS item intentionally has no ledger counterpart.

    Raises:
        RecordNotFoundError: unknown LIS item (nothing written).
    """
    item = store.get_lis_item(lis_item_id)
    if item.lis_code != lis_code:
        raise ValueError(f"LIS item {lis_item_id} carries code {item.lis_code!r}, not {lis_code!r}.")

    for entry in store.fetch_log_entries(lis_item_id=lis_item_id):
        if entry.status is LogStatus.NO_MATCH:
            logger.info(
                "mark_no_match | lis_item_id=%s | result=already_marked | entry_id=%s",
                lis_item_id,
                entry.id,
            )
            return entry

    entry = ReconciliationLogEntry(
        id=new_id("rlog"),
        lis_code=lis_code,
        unit_id=item.unit_id,
        date=on_date,
        transaction_id=None,
        lis_item_id=lis_item_id,
        status=LogStatus.NO_MATCH,
        notes=notes or DEFAULT_NO_MATCH_NOTE,
        user_id=user_id,
        reconciled_at=datetime.now(timezone.utc),
    )
    store.append_log(entry)
    logger.info(
        "mark_no_match | lis_code=%s | lis_item_id=%s | result=marked | entry_id=%s",
        lis_code,
        lis_item_id,
        entry.id,
    )
    return entry


def reconcile_closure(
    store: LedgerStore,
    closure_id: str,
    tolerance_days: int = 1,
) -> list[ClosureMatch]:
    """Look for proof of payment for every item of one cash closure."""
    items = store.fetch_closure_items(closure_id)
    results: list[ClosureMatch] = []

    for item in items:
        window = timedelta(days=tolerance_days)
        candidates = store.fetch_transactions_referencing(
            item.lis_code,
            item.date - window,
            item.date + window,
        )
        matching = [tx for tx in candidates if abs(tx.amount - item.amount) < CLOSURE_AMOUNT_TOLERANCE]

        if not matching:
            results.append(ClosureMatch(lis_code=item.lis_code, item_id=item.id, status=ProofStatus.NO_PROOF))
        elif len(matching) == 1:
            tx = matching[0]
            results.append(
                ClosureMatch(
                    lis_code=item.lis_code,
                    item_id=item.id,
                    status=ProofStatus.RECONCILED,
                    matched_transaction_id=tx.id,
                    divergence="DATE" if tx.date != item.date else None,
                    matched_amount=tx.amount,
                    matched_date=tx.date,
                )
            )
        else:
            results.append(ClosureMatch(lis_code=item.lis_code, item_id=item.id, status=ProofStatus.DUPLICATE))

    counts = count_by_proof_status(results)
    logger.info(
        "closure_reconciliation | closure_id=%s | items=%s | reconciled=%s | no_proof=%s | duplicate=%s",
        closure_id,
        len(items),
        counts[ProofStatus.RECONCILED.value],
        counts[ProofStatus.NO_PROOF.value],
        counts[ProofStatus.DUPLICATE.value],
    )
    return results


def count_by_proof_status(results: list[ClosureMatch]) -> dict[str, int]:
    counts = {status.value: 0 for status in ProofStatus}
    for result in results:
        counts[result.status.value] += 1
    return counts
