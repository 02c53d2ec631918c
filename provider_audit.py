"""
provider_audit.py - Insurance provider production vs. issued invoices.

Two modes:
- audit_provider_vs_invoices(): one provider over a period. Invoices are the
  ones whose customer name contains each of the provider's first two tokens.
- provider_audit_overview(): every provider over a period. Production is
  grouped by provider name, invoices by customer name; each provider takes
  the exact customer name if present, else the first customer containing its
  first two tokens. Results are sorted by |difference| descending (stable).

Name pairing is approximate. Non-exact pairings are flagged through
match_method and need human confirmation.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from ledger_store import LedgerStore
from logging_config import get_logger
from models import Invoice, ProductionRecord, ProviderAuditDetail, ProviderAuditSummary
from normalize import provider_search_terms

logger = get_logger(__name__)


def customer_matches_terms(customer_name: str, terms: list[str]) -> bool:
    """Case-insensitive: every term is a substring of the customer name."""
    if not terms:
        return False
    customer_lower = (customer_name or "").lower()
    return all(term in customer_lower for term in terms)


def match_invoices_for_provider(provider_name: str, invoices: list[Invoice]) -> list[Invoice]:
    terms = provider_search_terms(provider_name)
    return [invoice for invoice in invoices if customer_matches_terms(invoice.customer_name, terms)]


def _summarize(
    provider_name: str,
    production_total: float,
    production_count: int,
    invoiced_total: float,
    invoice_count: int,
    matched_customer_name: Optional[str] = None,
    match_method: Optional[str] = None,
) -> ProviderAuditSummary:
    return ProviderAuditSummary(
        provider_name=provider_name,
        total_production=round(production_total, 2),
        total_invoiced=round(invoiced_total, 2),
        difference=round(production_total - invoiced_total, 2),
        count_production=production_count,
        count_invoices=invoice_count,
        matched_customer_name=matched_customer_name,
        match_method=match_method,
    )


def audit_provider_vs_invoices(
    store: LedgerStore,
    unit_id: Optional[str],
    provider_name: str,
    start: date,
    end: date,
) -> ProviderAuditDetail:
    """Production of one provider against the invoices billed to it."""
    production = sorted(
        store.fetch_production(unit_id, start, end, is_self_pay=False, provider_name=provider_name),
        key=lambda record: record.exam_date,
    )
    invoices = match_invoices_for_provider(provider_name, store.fetch_invoices(unit_id, start, end))

    summary = _summarize(
        provider_name,
        production_total=sum(record.amount for record in production),
        production_count=len(production),
        invoiced_total=sum(invoice.net_value for invoice in invoices),
        invoice_count=len(invoices),
        match_method="token_subset" if invoices else None,
    )
    logger.info(
        "provider_audit_detail | provider=%r | terms=%s | production=%s | invoices=%s | difference=%.2f",
        provider_name,
        provider_search_terms(provider_name),
        len(production),
        len(invoices),
        summary.difference,
    )
    return ProviderAuditDetail(summary=summary, production_items=production, invoices=invoices)


def build_overview(
    production: list[ProductionRecord],
    invoices: list[Invoice],
) -> list[ProviderAuditSummary]:
    """Pair grouped production with grouped invoices (pure)."""
    production_by_provider: dict[str, list[float]] = {}
    for record in production:
        production_by_provider.setdefault(record.provider_name, []).append(record.amount)

    invoices_by_customer: dict[str, list[float]] = {}
    for invoice in invoices:
        invoices_by_customer.setdefault(invoice.customer_name, []).append(invoice.net_value)

    results: list[ProviderAuditSummary] = []
    for provider_name, amounts in production_by_provider.items():
        customer_name: Optional[str] = None
        match_method: Optional[str] = None

        if provider_name in invoices_by_customer:
            customer_name = provider_name
            match_method = "exact"
        else:
            terms = provider_search_terms(provider_name)
            for candidate in invoices_by_customer:
                if customer_matches_terms(candidate, terms):
                    customer_name = candidate
                    match_method = "token_subset"
                    break

        invoiced = invoices_by_customer.get(customer_name, []) if customer_name is not None else []
        if match_method == "token_subset":
            logger.debug(
                "provider_audit_pairing | provider=%r | customer=%r | method=token_subset",
                provider_name,
                customer_name,
            )
        results.append(
            _summarize(
                provider_name,
                production_total=sum(amounts),
                production_count=len(amounts),
                invoiced_total=sum(invoiced),
                invoice_count=len(invoiced),
                matched_customer_name=customer_name,
                match_method=match_method,
            )
        )

    # Largest discrepancies first; sorted() is stable so ties keep production order.
    return sorted(results, key=lambda summary: abs(summary.difference), reverse=True)


def provider_audit_overview(
    store: LedgerStore,
    unit_id: Optional[str],
    start: date,
    end: date,
) -> list[ProviderAuditSummary]:
    """Summaries for every insurance provider with production in the period."""
    production = store.fetch_production(unit_id, start, end, is_self_pay=False)
    invoices = store.fetch_invoices(unit_id, start, end)
    results = build_overview(production, invoices)
    logger.info(
        "provider_audit_overview | unit_id=%s | start=%s | end=%s | providers=%s | invoices=%s | unpaired=%s",
        unit_id,
        start,
        end,
        len(results),
        len(invoices),
        sum(1 for summary in results if summary.match_method is None),
    )
    return results
