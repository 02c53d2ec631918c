"""
ledger_store.py - In-process rendition of the hosted ledger store.

Holds one LedgerSnapshot (production, cash-closure items, invoices, payables,
LIS items, transactions, reconciliation log) and optionally persists it to a
local JSON file with atomic writes. The engine only ever reads bounded result
sets from it, filtered by unit and date range; the three mutations are the
duplicate-ignoring production upsert, the manual LIS link and the
reconciliation log append.

Concurrency: unique-key semantics live here, under one lock. A conflicting
production insert is ignored, never merged.
"""

from __future__ import annotations

import json
import os
import secrets
import tempfile
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from logging_config import get_logger
from models import (
    CASH_CLOSURE_METHODS,
    Invoice,
    LedgerItem,
    LisItem,
    Payable,
    PaymentMethod,
    ProductionRecord,
    ReconciliationLogEntry,
    Transaction,
)
from normalize import normalize_code, normalize_tax_id

logger = get_logger(__name__)

DEFAULT_LEDGER_FILE = "data/ledger.json"
INCOME_TYPES = {"INCOME", "ENTRADA"}
APPROVED_STATUSES = {"APPROVED", "APROVADO"}


class LedgerStoreError(Exception):
    """Base error raised by the ledger store."""


class RecordNotFoundError(LedgerStoreError, LookupError):
    """A referenced transaction or LIS item does not exist."""


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(6)}"


def _in_range(value: date, start: Optional[date], end: Optional[date]) -> bool:
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def _unit_matches(record_unit: Optional[str], unit_id: Optional[str]) -> bool:
    return unit_id is None or record_unit == unit_id


class LedgerSnapshot(BaseModel):
    """Full persisted state of the store."""

    model_config = ConfigDict(extra="ignore")

    production: list[ProductionRecord] = Field(default_factory=list)
    ledger_items: list[LedgerItem] = Field(default_factory=list)
    invoices: list[Invoice] = Field(default_factory=list)
    payables: list[Payable] = Field(default_factory=list)
    lis_items: list[LisItem] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    reconciliation_log: list[ReconciliationLogEntry] = Field(default_factory=list)
    updated_at: Optional[str] = None


class LedgerStore:
    """Snapshot-backed store. Memory-only when no path is given."""

    def __init__(
        self,
        path: Optional[str | Path] = None,
        snapshot: Optional[LedgerSnapshot] = None,
    ) -> None:
        self.path = Path(path).resolve() if path else None
        self._lock = threading.Lock()
        if snapshot is not None:
            self.snapshot = snapshot
        else:
            self.snapshot = self._load()

    @classmethod
    def from_env(cls) -> "LedgerStore":
        return cls(os.getenv("LEDGER_FILE", DEFAULT_LEDGER_FILE))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> LedgerSnapshot:
        if self.path is None or not self.path.exists():
            return LedgerSnapshot()

        raw = json.loads(self.path.read_text(encoding="utf-8"))
        snapshot = LedgerSnapshot.model_validate(raw)
        logger.info(
            "ledger_loaded | path=%s | production=%s | ledger_items=%s | payables=%s | transactions=%s",
            self.path,
            len(snapshot.production),
            len(snapshot.ledger_items),
            len(snapshot.payables),
            len(snapshot.transactions),
        )
        return snapshot

    def _commit_locked(self, staged: LedgerSnapshot) -> None:
        """Persist a staged snapshot, then make it current.

        If the write fails the current snapshot is left as it was, so memory
        and disk never disagree.
        """
        staged.updated_at = datetime.now(timezone.utc).isoformat()
        if self.path is not None:
            self._write_locked(staged)
        self.snapshot = staged

    def _stage(self, **changes: Any) -> LedgerSnapshot:
        return self.snapshot.model_copy(update=changes)

    def _write_locked(self, snapshot: LedgerSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = snapshot.model_dump(mode="json")
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.path.parent),
            delete=False,
            suffix=".tmp",
            prefix="ledger-",
        ) as tmp_file:
            json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        try:
            os.replace(tmp_path, self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Seeding (used by fixtures and by the import/registration screens)
    # ------------------------------------------------------------------

    def add_payables(self, payables: Iterable[Payable]) -> None:
        with self._lock:
            self._commit_locked(self._stage(payables=[*self.snapshot.payables, *payables]))

    def add_invoices(self, invoices: Iterable[Invoice]) -> None:
        with self._lock:
            self._commit_locked(self._stage(invoices=[*self.snapshot.invoices, *invoices]))

    def add_ledger_items(self, items: Iterable[LedgerItem]) -> None:
        with self._lock:
            self._commit_locked(self._stage(ledger_items=[*self.snapshot.ledger_items, *items]))

    def add_lis_items(self, items: Iterable[LisItem]) -> None:
        with self._lock:
            self._commit_locked(self._stage(lis_items=[*self.snapshot.lis_items, *items]))

    def add_transactions(self, transactions: Iterable[Transaction]) -> None:
        with self._lock:
            self._commit_locked(self._stage(transactions=[*self.snapshot.transactions, *transactions]))

    # ------------------------------------------------------------------
    # Payables (duplicate detection)
    # ------------------------------------------------------------------

    def find_payable_by_barcode(self, digits: str) -> Optional[Payable]:
        for payable in self.snapshot.payables:
            if normalize_code(payable.barcode_digits) == digits:
                return payable
        return None

    def find_payable_by_typable_line(self, digits: str) -> Optional[Payable]:
        for payable in self.snapshot.payables:
            if normalize_code(payable.typable_line) == digits:
                return payable
        return None

    def find_payable_by_tax_id_and_document(self, tax_id: str, document_number: str) -> Optional[Payable]:
        for payable in self.snapshot.payables:
            if (
                normalize_tax_id(payable.beneficiary_tax_id) == tax_id
                and (payable.document_number or "").strip() == document_number
            ):
                return payable
        return None

    def find_payable_by_tax_id_value_due(
        self,
        tax_id: str,
        value: float,
        due_date: date,
    ) -> Optional[Payable]:
        for payable in self.snapshot.payables:
            if (
                normalize_tax_id(payable.beneficiary_tax_id) == tax_id
                and round(payable.amount, 2) == round(value, 2)
                and payable.due_date == due_date
            ):
                return payable
        return None

    def find_payables_in_window(
        self,
        min_value: float,
        max_value: float,
        start: date,
        end: date,
        limit: int = 10,
    ) -> list[Payable]:
        result: list[Payable] = []
        for payable in self.snapshot.payables:
            if payable.due_date is None:
                continue
            if min_value <= payable.amount <= max_value and start <= payable.due_date <= end:
                result.append(payable)
                if len(result) >= limit:
                    break
        return result

    # ------------------------------------------------------------------
    # Production, cash closure, invoices
    # ------------------------------------------------------------------

    def fetch_production(
        self,
        unit_id: Optional[str],
        start: Optional[date],
        end: Optional[date],
        is_self_pay: Optional[bool] = None,
        provider_name: Optional[str] = None,
    ) -> list[ProductionRecord]:
        return [
            record
            for record in self.snapshot.production
            if _unit_matches(record.unit_id, unit_id)
            and _in_range(record.exam_date, start, end)
            and (is_self_pay is None or record.is_self_pay == is_self_pay)
            and (provider_name is None or record.provider_name == provider_name)
        ]

    def upsert_production(self, records: list[ProductionRecord]) -> list[ProductionRecord]:
        """Insert records, ignoring any whose (unit_id, external_code) already exists.

        Returns the records actually inserted.
        """
        with self._lock:
            seen = {(record.unit_id, record.external_code) for record in self.snapshot.production}
            inserted: list[ProductionRecord] = []
            for record in records:
                key = (record.unit_id, record.external_code)
                if key in seen:
                    continue
                seen.add(key)
                inserted.append(record)

            if inserted:
                self._commit_locked(self._stage(production=[*self.snapshot.production, *inserted]))
            return inserted

    def fetch_ledger_items(
        self,
        unit_id: Optional[str],
        start: Optional[date],
        end: Optional[date],
        methods: frozenset[PaymentMethod] = CASH_CLOSURE_METHODS,
    ) -> list[LedgerItem]:
        return [
            item
            for item in self.snapshot.ledger_items
            if _unit_matches(item.unit_id, unit_id)
            and _in_range(item.date, start, end)
            and item.payment_method in methods
        ]

    def fetch_invoices(
        self,
        unit_id: Optional[str],
        start: Optional[date],
        end: Optional[date],
    ) -> list[Invoice]:
        invoices = [
            invoice
            for invoice in self.snapshot.invoices
            if _unit_matches(invoice.unit_id, unit_id) and _in_range(invoice.issue_date, start, end)
        ]
        return sorted(invoices, key=lambda invoice: invoice.issue_date)

    # ------------------------------------------------------------------
    # LIS items, transactions, reconciliation log
    # ------------------------------------------------------------------

    def fetch_lis_items(
        self,
        unit_id: Optional[str],
        start: Optional[date],
        end: Optional[date],
        methods: frozenset[PaymentMethod] = CASH_CLOSURE_METHODS,
    ) -> list[LisItem]:
        items = [
            item
            for item in self.snapshot.lis_items
            if _unit_matches(item.unit_id, unit_id)
            and _in_range(item.date, start, end)
            and item.payment_method in methods
        ]
        return sorted(items, key=lambda item: item.date)

    def fetch_closure_items(self, closure_id: str) -> list[LisItem]:
        return [item for item in self.snapshot.lis_items if item.closure_id == closure_id]

    def fetch_incoming_transactions(
        self,
        unit_id: Optional[str],
        start: Optional[date],
        end: Optional[date],
    ) -> list[Transaction]:
        transactions = [
            tx
            for tx in self.snapshot.transactions
            if not tx.deleted
            and tx.type.upper() in INCOME_TYPES
            and tx.status.upper() in APPROVED_STATUSES
            and _unit_matches(tx.unit_id, unit_id)
            and _in_range(tx.date, start, end)
        ]
        return sorted(transactions, key=lambda tx: tx.date)

    def fetch_transactions_referencing(
        self,
        lis_code: str,
        start: date,
        end: date,
    ) -> list[Transaction]:
        """Live transactions linked to a LIS code, or tagging it in their description."""
        tags = (f"[lis {lis_code}]".lower(), f"lis:{lis_code}".lower())
        result: list[Transaction] = []
        for tx in self.snapshot.transactions:
            if tx.deleted or not _in_range(tx.date, start, end):
                continue
            description = (tx.description or "").lower()
            if tx.lis_protocol_id == lis_code or any(tag in description for tag in tags):
                result.append(tx)
        return result

    def get_transaction(self, transaction_id: str) -> Transaction:
        for tx in self.snapshot.transactions:
            if tx.id == transaction_id and not tx.deleted:
                return tx
        raise RecordNotFoundError(f"Transaction not found: {transaction_id}")

    def get_lis_item(self, item_id: str) -> LisItem:
        for item in self.snapshot.lis_items:
            if item.id == item_id:
                return item
        raise RecordNotFoundError(f"LIS item not found: {item_id}")

    def fetch_log_entries(
        self,
        unit_id: Optional[str] = None,
        lis_code: Optional[str] = None,
        lis_item_id: Optional[str] = None,
    ) -> list[ReconciliationLogEntry]:
        return [
            entry
            for entry in self.snapshot.reconciliation_log
            if _unit_matches(entry.unit_id, unit_id)
            and (lis_code is None or entry.lis_code == lis_code)
            and (lis_item_id is None or entry.lis_item_id == lis_item_id)
        ]

    def apply_link(
        self,
        transaction_id: str,
        lis_code: str,
        entry: ReconciliationLogEntry,
    ) -> None:
        """Set the transaction's LIS reference and append the log entry in one write."""
        with self._lock:
            for index, tx in enumerate(self.snapshot.transactions):
                if tx.id == transaction_id and not tx.deleted:
                    break
            else:
                raise RecordNotFoundError(f"Transaction not found: {transaction_id}")

            transactions = list(self.snapshot.transactions)
            transactions[index] = tx.model_copy(update={"lis_protocol_id": lis_code, "lis_source": "MANUAL"})
            self._commit_locked(
                self._stage(
                    transactions=transactions,
                    reconciliation_log=[*self.snapshot.reconciliation_log, entry],
                )
            )

    def append_log(self, entry: ReconciliationLogEntry) -> None:
        with self._lock:
            self._commit_locked(self._stage(reconciliation_log=[*self.snapshot.reconciliation_log, entry]))

    def counts(self) -> dict[str, Any]:
        return {
            "production": len(self.snapshot.production),
            "ledger_items": len(self.snapshot.ledger_items),
            "invoices": len(self.snapshot.invoices),
            "payables": len(self.snapshot.payables),
            "lis_items": len(self.snapshot.lis_items),
            "transactions": len(self.snapshot.transactions),
            "reconciliation_log": len(self.snapshot.reconciliation_log),
        }
