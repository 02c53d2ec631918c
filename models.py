"""
models.py - Data Models for the reconciliation engine

This file defines ALL data structures used across the engine. Every module
communicates exclusively through these models:

    ingest.py         ->  ProductionRecord, ImportResult
    duplicates.py     ->  MatchCandidate -> DuplicateCheckResult
    cash_audit.py     ->  ReconciliationRow, ReconciliationSummary
    provider_audit.py ->  ProviderAuditSummary, ProviderAuditDetail
    orphans.py        ->  OrphanReport, ReconciliationLogEntry, ClosureMatch

Design principles:
1. Input records (production, ledger items, invoices, payables, transactions)
   mirror the rows of the hosted store and are never mutated by the engine
2. Output models carry reason strings so every classification is auditable
3. MatchCandidate is ephemeral: built per query, never persisted

Schema relationships:
    Payable        --snapshotted into--> PayableSnapshot
    MatchCandidate --converted into-->   DuplicateCheckResult
    ProductionRecord + LedgerItem --> ReconciliationRow
    LisItem + Transaction --> MatchedPair / DuplicateCodeEntry
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentStatus(str, Enum):
    """Settlement state of a cash-closure line item."""

    CLOSED_IN_ENVELOPE = "CLOSED_IN_ENVELOPE"
    CONFIRMED = "CONFIRMED"
    UNPAID = "UNPAID"
    OTHER = "OTHER"


# Values written by the cash-closing screens of the console.
PAYMENT_STATUS_ALIASES: dict[str, PaymentStatus] = {
    "CLOSED_IN_ENVELOPE": PaymentStatus.CLOSED_IN_ENVELOPE,
    "FECHADO_EM_ENVELOPE": PaymentStatus.CLOSED_IN_ENVELOPE,
    "CONFIRMED": PaymentStatus.CONFIRMED,
    "CONFIRMADO": PaymentStatus.CONFIRMED,
    "UNPAID": PaymentStatus.UNPAID,
    "NAO_PAGO": PaymentStatus.UNPAID,
}


class PaymentMethod(str, Enum):
    CASH = "CASH"
    PIX = "PIX"
    CARD = "CARD"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    TRANSFER = "TRANSFER"
    BOLETO = "BOLETO"
    UNPAID = "UNPAID"


PAYMENT_METHOD_ALIASES: dict[str, PaymentMethod] = {
    "DINHEIRO": PaymentMethod.CASH,
    "CARTAO": PaymentMethod.CARD,
    "CARTAO_CREDITO": PaymentMethod.CREDIT_CARD,
    "CARTAO_DEBITO": PaymentMethod.DEBIT_CARD,
    "TRANSFERENCIA": PaymentMethod.TRANSFER,
    "NAO_PAGO": PaymentMethod.UNPAID,
}

# Methods that land in the daily cash closure (the ones reconciled against
# production and LIS codes).
CASH_CLOSURE_METHODS: frozenset[PaymentMethod] = frozenset(
    {
        PaymentMethod.CASH,
        PaymentMethod.PIX,
        PaymentMethod.CARD,
        PaymentMethod.CREDIT_CARD,
        PaymentMethod.DEBIT_CARD,
    }
)


class DuplicateTier(str, Enum):
    """Confidence tier of a duplicate-detection result.

    Ordered none < low < medium < high < blocked. Only `blocked` prevents the
    caller from creating the new record; the other tiers are advisory and the
    caller may proceed after explicit confirmation.
    """

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BLOCKED = "blocked"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @property
    def blocks_creation(self) -> bool:
        return self is DuplicateTier.BLOCKED

    @property
    def display_title(self) -> str:
        return DUPLICATE_TIER_DISPLAY[self]["title"]

    @property
    def allow_continue(self) -> bool:
        return bool(DUPLICATE_TIER_DISPLAY[self]["allow_continue"])


_TIER_ORDER: list[DuplicateTier] = [
    DuplicateTier.NONE,
    DuplicateTier.LOW,
    DuplicateTier.MEDIUM,
    DuplicateTier.HIGH,
    DuplicateTier.BLOCKED,
]

DUPLICATE_TIER_DISPLAY: dict[DuplicateTier, dict[str, Any]] = {
    DuplicateTier.BLOCKED: {
        "title": "Duplicate document",
        "allow_continue": False,
        "description": "This document is already recorded and cannot be registered again.",
    },
    DuplicateTier.HIGH: {
        "title": "High probability of duplicate",
        "allow_continue": True,
        "description": "A very similar record exists. Confirm before registering anyway.",
    },
    DuplicateTier.MEDIUM: {
        "title": "Possible duplicate",
        "allow_continue": True,
        "description": "A record with similar data exists. Check before continuing.",
    },
    DuplicateTier.LOW: {
        "title": "Similar record found",
        "allow_continue": True,
        "description": "A similar record exists, but it may be a coincidence.",
    },
    DuplicateTier.NONE: {
        "title": "",
        "allow_continue": True,
        "description": "",
    },
}


class MatchedBy(str, Enum):
    """Which cascade rule produced a duplicate match."""

    BARCODE = "barcode"
    TYPABLE_LINE = "typable_line"
    TAX_ID_DOCUMENT = "tax_id_document_number"
    TAX_ID_VALUE_DATE = "tax_id_value_due_date"
    FUZZY_NAME_VALUE_DATE = "fuzzy_name_value_date"


class ProductionStatus(str, Enum):
    """Outcome of matching one self-pay production row against the cash closure."""

    OK = "OK"
    PENDING = "PENDING"
    NOT_FOUND = "NOT_FOUND"


class PairStatus(str, Enum):
    OK = "OK"
    DIVERGENT = "DIVERGENT"


class LogStatus(str, Enum):
    """State recorded by the manual reconciliation operations.

    LINKED and NO_MATCH are terminal: an item carrying either is never
    offered as an orphan again.
    """

    PENDING = "PENDING"
    LINKED = "LINKED"
    NO_MATCH = "NO_MATCH"
    IGNORED = "IGNORED"

    @property
    def is_terminal(self) -> bool:
        return self in (LogStatus.LINKED, LogStatus.NO_MATCH)


class ProofStatus(str, Enum):
    """Per-item outcome of reconciling one cash closure against transactions."""

    RECONCILED = "RECONCILED"
    NO_PROOF = "NO_PROOF"
    DUPLICATE = "DUPLICATE"


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------


class ProductionRecord(BaseModel):
    """One per-exam production row exported by the LIS.

    Produced by bulk import and immutable once stored. The store identifies a
    record by (unit_id, external_code); re-importing the same code for the
    same unit is ignored, never merged.
    """

    id: str = Field(..., description="Store identifier of the production row.")
    unit_id: Optional[str] = Field(
        default=None,
        description="Laboratory unit the exam was produced in. None for single-unit setups.",
    )
    exam_date: date = Field(..., description="Calendar date the exam was performed.")
    external_code: str = Field(
        ...,
        min_length=1,
        description="LIS protocol code of the exam (e.g. 'LIS001', 'CTL-12345').",
    )
    patient_name: Optional[str] = Field(default=None, description="Patient name as printed by the LIS.")
    provider_name: str = Field(
        default="",
        description=(
            "Payer of the exam: an insurance provider name, or the self-pay "
            "label for particular patients."
        ),
    )
    is_self_pay: bool = Field(
        default=False,
        description="True for particular (self-pay) patients, reconciled against the cash closure.",
    )
    amount: float = Field(..., ge=0, description="Production amount billed for the exam.")
    import_session_id: Optional[str] = Field(default=None, description="Import session that created the row.")
    company_name: Optional[str] = Field(default=None, description="Employer/company column of the LIS report.")
    exam_list: Optional[str] = Field(default=None, description="Comma separated exam mnemonics.")
    row_index: Optional[int] = Field(default=None, description="Row position in the source report.")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "prod_0001",
                    "unit_id": "unit_rp",
                    "exam_date": "2024-05-10",
                    "external_code": "LIS001",
                    "patient_name": "Maria Souza",
                    "provider_name": "Particular",
                    "is_self_pay": True,
                    "amount": 150.00,
                }
            ]
        }
    )


class LedgerItem(BaseModel):
    """One cash-closure line item. Read-only to the engine."""

    id: str
    unit_id: Optional[str] = None
    closure_id: Optional[str] = Field(default=None, description="Cash closure the item belongs to.")
    external_code: str = Field(..., description="LIS code the payment refers to.")
    date: date
    patient_name: Optional[str] = None
    amount: float = Field(..., ge=0)
    gross_amount: Optional[float] = Field(default=None, ge=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_status: str = Field(
        default=PaymentStatus.OTHER.value,
        description=(
            "Raw settlement status from the store. Mapped onto PaymentStatus "
            "by status_class; the raw value is echoed in pending reasons."
        ),
    )

    @field_validator("payment_method", mode="before")
    @classmethod
    def _payment_method_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip().upper()
            return PAYMENT_METHOD_ALIASES.get(text, text)
        return value

    @field_validator("payment_status", mode="before")
    @classmethod
    def _payment_status_text(cls, value: Any) -> str:
        if isinstance(value, PaymentStatus):
            return value.value
        return str(value or PaymentStatus.OTHER.value).strip().upper()

    @property
    def status_class(self) -> PaymentStatus:
        return PAYMENT_STATUS_ALIASES.get(self.payment_status, PaymentStatus.OTHER)


class Invoice(BaseModel):
    """Issued service invoice (NF) billed to an insurance provider."""

    id: str
    unit_id: Optional[str] = None
    document_number: str = ""
    issue_date: date
    customer_name: str = ""
    net_value: float = Field(..., ge=0)
    issuer_tax_id: Optional[str] = None
    customer_tax_id: Optional[str] = None


class Payable(BaseModel):
    """Outgoing obligation (bill to be paid) tracked in the ledger."""

    id: str
    unit_id: Optional[str] = None
    beneficiary_name: str = ""
    beneficiary_tax_id: Optional[str] = Field(
        default=None,
        description="Beneficiary CNPJ/CPF. Compared digits-only.",
    )
    amount: float = Field(..., ge=0)
    due_date: Optional[date] = None
    status: str = "PENDING"
    barcode_digits: Optional[str] = Field(default=None, description="Payment-slip barcode (44 digits).")
    typable_line: Optional[str] = Field(default=None, description="Payment-slip typable line (47/48 digits).")
    document_number: Optional[str] = None


class PayableCandidate(BaseModel):
    """Structured fields extracted from a newly uploaded financial document.

    Produced by the external OCR/classification step; every field is optional
    because extraction may miss any of them.
    """

    barcode_digits: Optional[str] = None
    typable_line_digits: Optional[str] = None
    issuer_tax_id: Optional[str] = None
    customer_tax_id: Optional[str] = None
    document_number: Optional[str] = None
    total_value: Optional[float] = Field(default=None, ge=0)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    issuer_name: Optional[str] = None

    @property
    def reference_date(self) -> Optional[date]:
        """Due date, falling back to the issue date."""
        return self.due_date or self.issue_date


class LisItem(BaseModel):
    """LIS closure line item seen by the orphan finder."""

    id: str
    unit_id: Optional[str] = None
    closure_id: Optional[str] = None
    lis_code: str
    date: date
    patient_name: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    amount: float = Field(..., ge=0)
    gross_amount: Optional[float] = Field(default=None, ge=0)

    @field_validator("payment_method", mode="before")
    @classmethod
    def _payment_method_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip().upper()
            return PAYMENT_METHOD_ALIASES.get(text, text)
        return value


class Transaction(BaseModel):
    """Financial ledger transaction (incoming entries are reconciled against the LIS)."""

    id: str
    unit_id: Optional[str] = None
    date: date
    amount: float = Field(..., ge=0)
    description: Optional[str] = None
    lis_protocol_id: Optional[str] = Field(
        default=None,
        description="LIS code the transaction is linked to, if any.",
    )
    lis_source: Optional[str] = Field(
        default=None,
        description="How the link was made: 'IMPORT' or 'MANUAL'.",
    )
    type: str = "INCOME"
    status: str = "APPROVED"
    category_name: Optional[str] = None
    partner_name: Optional[str] = None
    deleted: bool = False


class ReconciliationLogEntry(BaseModel):
    """Audit record written by the manual link / no-match operations."""

    id: str
    lis_code: str
    unit_id: Optional[str] = None
    date: date
    transaction_id: Optional[str] = None
    lis_item_id: Optional[str] = None
    status: LogStatus
    notes: Optional[str] = None
    user_id: Optional[str] = None
    reconciled_at: datetime


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


class PayableSnapshot(BaseModel):
    """Display snapshot of the payable a duplicate result points to."""

    id: str
    beneficiary_name: str
    amount: float
    due_date: Optional[date] = None
    status: str
    document_number: Optional[str] = None

    @classmethod
    def from_payable(cls, payable: Payable) -> "PayableSnapshot":
        return cls(
            id=payable.id,
            beneficiary_name=payable.beneficiary_name,
            amount=payable.amount,
            due_date=payable.due_date,
            status=payable.status,
            document_number=payable.document_number,
        )


class MatchCandidate(BaseModel):
    """One cascade hit. Ephemeral: recomputed per query and never persisted."""

    source_key: str = Field(..., description="Normalized key of the candidate that produced the hit.")
    target_record: Payable
    matched_by: MatchedBy
    confidence_tier: DuplicateTier
    reason: str = ""


class DuplicateCheckResult(BaseModel):
    """Classification of a candidate document against stored payables."""

    tier: DuplicateTier = DuplicateTier.NONE
    reason: str = ""
    matched_by: Optional[MatchedBy] = None
    existing_id: Optional[str] = None
    existing_snapshot: Optional[PayableSnapshot] = None

    @property
    def blocks_creation(self) -> bool:
        return self.tier.blocks_creation

    @property
    def is_duplicate(self) -> bool:
        return self.tier is not DuplicateTier.NONE

    @classmethod
    def from_candidate(cls, candidate: MatchCandidate) -> "DuplicateCheckResult":
        return cls(
            tier=candidate.confidence_tier,
            reason=candidate.reason,
            matched_by=candidate.matched_by,
            existing_id=candidate.target_record.id,
            existing_snapshot=PayableSnapshot.from_payable(candidate.target_record),
        )


# ---------------------------------------------------------------------------
# Production <-> cash
# ---------------------------------------------------------------------------


class ReconciliationRow(BaseModel):
    """Classified production row (only non-OK rows are reported)."""

    source_record: ProductionRecord
    status: ProductionStatus
    reason: str
    linked_target_id: Optional[str] = None
    ledger_payment_status: Optional[str] = None
    ledger_payment_method: Optional[PaymentMethod] = None
    ledger_amount: Optional[float] = None


class ReconciliationSummary(BaseModel):
    total_production: float = 0.0
    total_resolved: float = 0.0
    total_pending: float = 0.0
    difference: float = 0.0
    count_total: int = 0
    counts_by_status: dict[str, int] = Field(
        default_factory=lambda: {status.value: 0 for status in ProductionStatus}
    )


class CashAuditResult(BaseModel):
    summary: ReconciliationSummary
    rows: list[ReconciliationRow] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Provider production <-> invoices
# ---------------------------------------------------------------------------


class ProviderAuditSummary(BaseModel):
    provider_name: str
    total_production: float = 0.0
    total_invoiced: float = 0.0
    difference: float = 0.0
    count_production: int = 0
    count_invoices: int = 0
    matched_customer_name: Optional[str] = Field(
        default=None,
        description="Invoice customer the provider was paired with, if any.",
    )
    match_method: Optional[str] = Field(
        default=None,
        description="'exact' or 'token_subset'; approximate pairings need human confirmation.",
    )


class ProviderAuditDetail(BaseModel):
    summary: ProviderAuditSummary
    production_items: list[ProductionRecord] = Field(default_factory=list)
    invoices: list[Invoice] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Ledger <-> LIS orphans
# ---------------------------------------------------------------------------


class DuplicateCodeEntry(BaseModel):
    lis_code: str
    side: str = Field(..., description="'lis' when the code repeats among LIS items, 'ledger' among transactions.")
    occurrences: int
    record_ids: list[str] = Field(default_factory=list)
    dates: list[date] = Field(default_factory=list)
    total_amount: float = 0.0


class MatchedPair(BaseModel):
    lis_code: str
    lis_item_id: str
    transaction_id: str
    lis_amount: float
    transaction_amount: float
    lis_date: date
    transaction_date: date
    status: PairStatus
    date_diverges: bool = False


class OrphanTotals(BaseModel):
    lis_count: int = 0
    lis_amount: float = 0.0
    transaction_count: int = 0
    transaction_amount: float = 0.0
    matched_count: int = 0
    matched_amount: float = 0.0


class OrphanReport(BaseModel):
    lis_without_ledger: list[LisItem] = Field(default_factory=list)
    ledger_without_lis: list[Transaction] = Field(default_factory=list)
    duplicate_codes: list[DuplicateCodeEntry] = Field(default_factory=list)
    matched: list[MatchedPair] = Field(default_factory=list)
    resolved: list[ReconciliationLogEntry] = Field(
        default_factory=list,
        description="Terminal log entries that removed items from the orphan lists.",
    )
    totals: OrphanTotals = Field(default_factory=OrphanTotals)


class ClosureMatch(BaseModel):
    lis_code: str
    item_id: str
    status: ProofStatus
    matched_transaction_id: Optional[str] = None
    divergence: Optional[str] = None
    matched_amount: Optional[float] = None
    matched_date: Optional[date] = None


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class RowError(BaseModel):
    row_index: int
    reason: str


class ImportResult(BaseModel):
    imported: int = 0
    ignored_duplicates: int = 0
    skipped_invalid: int = 0
    batches: int = 0
    errors: list[RowError] = Field(default_factory=list)
