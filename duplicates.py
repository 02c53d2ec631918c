"""
duplicates.py - Duplicate detection for newly extracted payable documents.

A candidate document (fields produced by the OCR/classification step) is
checked against the stored payables by an ordered cascade of matchers. The
first matcher that returns a hit wins, so a more specific rule can never be
shadowed by a weaker one:

    1. barcode exact                        -> blocked
    2. typable line exact                   -> blocked
    3. tax id + document number             -> high
    4. tax id + value + due (or issue) date -> medium
    5. similar name + value +-1% + date +-5 -> low
    6. nothing                              -> none

Every matcher is a total function returning a MatchCandidate or None; none of
them raises for missing fields. The check never writes to the store.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional

from ledger_store import LedgerStore
from logging_config import get_logger
from models import DuplicateCheckResult, DuplicateTier, MatchCandidate, MatchedBy, PayableCandidate
from normalize import name_similarity, normalize_code, normalize_tax_id

logger = get_logger(__name__)

FUZZY_VALUE_TOLERANCE = 0.01
FUZZY_DATE_WINDOW_DAYS = 5
FUZZY_NAME_THRESHOLD = 0.5
FUZZY_CANDIDATE_LIMIT = 10

Matcher = Callable[[PayableCandidate, LedgerStore], Optional[MatchCandidate]]


def match_barcode(candidate: PayableCandidate, store: LedgerStore) -> Optional[MatchCandidate]:
    digits = normalize_code(candidate.barcode_digits)
    if not digits:
        return None

    existing = store.find_payable_by_barcode(digits)
    if existing is None:
        return None
    return MatchCandidate(
        source_key=digits,
        target_record=existing,
        matched_by=MatchedBy.BARCODE,
        confidence_tier=DuplicateTier.BLOCKED,
        reason="Barcode already registered in the system",
    )


def match_typable_line(candidate: PayableCandidate, store: LedgerStore) -> Optional[MatchCandidate]:
    digits = normalize_code(candidate.typable_line_digits)
    if not digits:
        return None

    existing = store.find_payable_by_typable_line(digits)
    if existing is None:
        return None
    return MatchCandidate(
        source_key=digits,
        target_record=existing,
        matched_by=MatchedBy.TYPABLE_LINE,
        confidence_tier=DuplicateTier.BLOCKED,
        reason="Typable line already registered in the system",
    )


def match_tax_id_and_document(candidate: PayableCandidate, store: LedgerStore) -> Optional[MatchCandidate]:
    tax_id = normalize_tax_id(candidate.issuer_tax_id)
    document_number = (candidate.document_number or "").strip()
    if not tax_id or not document_number:
        return None

    existing = store.find_payable_by_tax_id_and_document(tax_id, document_number)
    if existing is None:
        return None
    return MatchCandidate(
        source_key=f"{tax_id}:{document_number}",
        target_record=existing,
        matched_by=MatchedBy.TAX_ID_DOCUMENT,
        confidence_tier=DuplicateTier.HIGH,
        reason="Tax id and document number identical to an existing record",
    )


def match_tax_id_value_and_date(candidate: PayableCandidate, store: LedgerStore) -> Optional[MatchCandidate]:
    tax_id = normalize_tax_id(candidate.issuer_tax_id)
    reference_date = candidate.reference_date
    if not tax_id or not candidate.total_value or reference_date is None:
        return None

    existing = store.find_payable_by_tax_id_value_due(tax_id, candidate.total_value, reference_date)
    if existing is None:
        return None
    return MatchCandidate(
        source_key=f"{tax_id}:{candidate.total_value:.2f}:{reference_date.isoformat()}",
        target_record=existing,
        matched_by=MatchedBy.TAX_ID_VALUE_DATE,
        confidence_tier=DuplicateTier.MEDIUM,
        reason="Tax id, value and due date identical to an existing record",
    )


def match_similar(candidate: PayableCandidate, store: LedgerStore) -> Optional[MatchCandidate]:
    reference_date = candidate.reference_date
    if not candidate.issuer_name or not candidate.total_value or reference_date is None:
        return None

    value = candidate.total_value
    window = timedelta(days=FUZZY_DATE_WINDOW_DAYS)
    nearby = store.find_payables_in_window(
        min_value=value * (1 - FUZZY_VALUE_TOLERANCE),
        max_value=value * (1 + FUZZY_VALUE_TOLERANCE),
        start=reference_date - window,
        end=reference_date + window,
        limit=FUZZY_CANDIDATE_LIMIT,
    )

    for payable in nearby:
        similarity = name_similarity(candidate.issuer_name, payable.beneficiary_name)
        logger.debug(
            "duplicate_fuzzy_candidate | payable_id=%s | beneficiary=%r | similarity=%.2f",
            payable.id,
            payable.beneficiary_name,
            similarity,
        )
        if similarity >= FUZZY_NAME_THRESHOLD:
            return MatchCandidate(
                source_key=f"{candidate.issuer_name}:{value:.2f}:{reference_date.isoformat()}",
                target_record=payable,
                matched_by=MatchedBy.FUZZY_NAME_VALUE_DATE,
                confidence_tier=DuplicateTier.LOW,
                reason=(
                    "Found a record with similar beneficiary, value and date "
                    f"(name similarity {similarity:.2f})"
                ),
            )
    return None


# Strict priority order. Do not reorder: earlier entries are more specific.
MATCHERS: list[Matcher] = [
    match_barcode,
    match_typable_line,
    match_tax_id_and_document,
    match_tax_id_value_and_date,
    match_similar,
]

SIMPLE_MATCHERS: list[Matcher] = [match_barcode, match_typable_line]


def _first_hit(
    matchers: list[Matcher],
    candidate: PayableCandidate,
    store: LedgerStore,
) -> Optional[MatchCandidate]:
    for matcher in matchers:
        hit = matcher(candidate, store)
        if hit is not None:
            return hit
    return None


def _run_cascade(
    matchers: list[Matcher],
    candidate: PayableCandidate,
    store: LedgerStore,
) -> DuplicateCheckResult:
    hit = _first_hit(matchers, candidate, store)
    if hit is None:
        logger.info(
            "duplicate_check | tier=none | issuer_tax_id=%s | document_number=%s",
            normalize_tax_id(candidate.issuer_tax_id),
            candidate.document_number,
        )
        return DuplicateCheckResult(tier=DuplicateTier.NONE)

    result = DuplicateCheckResult.from_candidate(hit)
    logger.info(
        "duplicate_check | tier=%s | matched_by=%s | existing_id=%s | blocks_creation=%s",
        result.tier.value,
        hit.matched_by.value,
        result.existing_id,
        result.blocks_creation,
    )
    return result


def check_payable_duplicate(candidate: PayableCandidate, store: LedgerStore) -> DuplicateCheckResult:
    """Classify a candidate document against stored payables (full cascade)."""
    return _run_cascade(MATCHERS, candidate, store)


def check_simple_duplicate(
    store: LedgerStore,
    barcode: Optional[str] = None,
    typable_line: Optional[str] = None,
) -> DuplicateCheckResult:
    """Quick form validation: only the two blocking payment-slip rules."""
    candidate = PayableCandidate(barcode_digits=barcode, typable_line_digits=typable_line)
    return _run_cascade(SIMPLE_MATCHERS, candidate, store)
