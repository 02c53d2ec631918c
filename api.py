"""
api.py - FastAPI HTTP layer for the reconciliation engine.

Thin routing over the engine modules; no matching or aggregation logic lives
here. Endpoints:
  - GET  /health
  - POST /duplicates/check
  - GET  /audit/cash
  - GET  /audit/providers
  - GET  /audit/providers/{provider_name}
  - GET  /reconciliation/orphans
  - GET  /reconciliation/closures/{closure_id}
  - POST /reconciliation/link
  - POST /reconciliation/no-match
  - POST /production/import

Error mapping: RecordNotFoundError -> 404, ValueError / ValidationError -> 400.
"""

from __future__ import annotations

import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from cash_audit import audit_self_pay_vs_cash
from duplicates import check_payable_duplicate, check_simple_duplicate
from ingest import BatchImportError, import_production_frame, load_production_csv
from ledger_store import LedgerStore, RecordNotFoundError
from logging_config import get_logger, setup_logging
from models import PayableCandidate
from orphans import (
    count_by_proof_status,
    find_orphans,
    link_transaction_to_lis,
    mark_no_match,
    reconcile_closure,
)
from provider_audit import audit_provider_vs_invoices, provider_audit_overview

load_dotenv()

logger = get_logger("labrecon-api")

app = FastAPI(
    title="Lab Ledger Reconciliation API",
    version="1.0.0",
)

# Allows the console UI to call the API from another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_store = LedgerStore.from_env()


class LinkRequest(BaseModel):
    transaction_id: str
    lis_code: str
    lis_item_id: Optional[str] = None
    date: date
    user_id: Optional[str] = None
    notes: Optional[str] = None


class NoMatchRequest(BaseModel):
    lis_code: str
    lis_item_id: str
    date: date
    user_id: Optional[str] = None
    notes: Optional[str] = None


def _check_period(start: date, end: date) -> None:
    if start > end:
        raise HTTPException(status_code=400, detail=f"start ({start}) is after end ({end}).")


async def _save_upload(upload: UploadFile, destination: Path) -> None:
    """Save an UploadFile to disk."""
    try:
        with destination.open("wb") as out_file:
            while True:
                chunk = await upload.read(1024 * 1024)
                if not chunk:
                    break
                out_file.write(chunk)
    finally:
        await upload.close()


@app.get("/health")
def health() -> dict[str, Any]:
    """Service health check."""
    return {"status": "ok", "records": ledger_store.counts()}


@app.post("/duplicates/check")
def duplicates_check(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Classify a candidate payable document against stored payables.

    With `"simple": true` only the barcode / typable-line tiers run.
    """
    try:
        if payload.get("simple"):
            result = check_simple_duplicate(
                ledger_store,
                barcode=payload.get("barcode_digits"),
                typable_line=payload.get("typable_line_digits"),
            )
        else:
            candidate_fields = {key: value for key, value in payload.items() if key != "simple"}
            candidate = PayableCandidate.model_validate(candidate_fields)
            result = check_payable_duplicate(candidate, ledger_store)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid candidate payload: {exc}") from exc

    response = result.model_dump(mode="json")
    response["blocks_creation"] = result.blocks_creation
    response["title"] = result.tier.display_title
    response["allow_continue"] = result.tier.allow_continue
    return response


@app.get("/audit/cash")
def audit_cash(start: date, end: date, unit_id: Optional[str] = None) -> dict[str, Any]:
    """Self-pay production vs. cash closure for a unit and period."""
    _check_period(start, end)
    return audit_self_pay_vs_cash(ledger_store, unit_id, start, end).model_dump(mode="json")


@app.get("/audit/providers")
def audit_providers(start: date, end: date, unit_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Per-provider production vs. invoices, largest discrepancies first."""
    _check_period(start, end)
    return [
        summary.model_dump(mode="json")
        for summary in provider_audit_overview(ledger_store, unit_id, start, end)
    ]


@app.get("/audit/providers/{provider_name}")
def audit_provider_detail(
    provider_name: str,
    start: date,
    end: date,
    unit_id: Optional[str] = None,
) -> dict[str, Any]:
    _check_period(start, end)
    detail = audit_provider_vs_invoices(ledger_store, unit_id, provider_name, start, end)
    return detail.model_dump(mode="json")


@app.get("/reconciliation/orphans")
def reconciliation_orphans(start: date, end: date, unit_id: Optional[str] = None) -> dict[str, Any]:
    _check_period(start, end)
    return find_orphans(ledger_store, unit_id, start, end).model_dump(mode="json")


@app.get("/reconciliation/closures/{closure_id}")
def reconciliation_closure(closure_id: str, tolerance_days: int = 1) -> dict[str, Any]:
    """Proof-of-payment check for every item of one cash closure."""
    results = reconcile_closure(ledger_store, closure_id, tolerance_days=tolerance_days)
    return {
        "closure_id": closure_id,
        "counts": count_by_proof_status(results),
        "items": [result.model_dump(mode="json") for result in results],
    }


@app.post("/reconciliation/link")
def reconciliation_link(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Manually link a ledger transaction to a LIS code."""
    try:
        request = LinkRequest.model_validate(payload)
        entry = link_transaction_to_lis(
            ledger_store,
            transaction_id=request.transaction_id,
            lis_code=request.lis_code,
            lis_item_id=request.lis_item_id,
            on_date=request.date,
            user_id=request.user_id,
            notes=request.notes,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid link payload: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return entry.model_dump(mode="json")


@app.post("/reconciliation/no-match")
def reconciliation_no_match(payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Mark a LIS item as intentionally having no ledger counterpart."""
    try:
        request = NoMatchRequest.model_validate(payload)
        entry = mark_no_match(
            ledger_store,
            lis_code=request.lis_code,
            lis_item_id=request.lis_item_id,
            on_date=request.date,
            notes=request.notes,
            user_id=request.user_id,
        )
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid no-match payload: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return entry.model_dump(mode="json")


@app.post("/production/import")
async def production_import(
    production_csv: UploadFile = File(...),
    unit_id: Optional[str] = Form(default=None),
    provider_name: Optional[str] = Form(default=None),
    is_self_pay: Optional[bool] = Form(default=None),
) -> dict[str, Any]:
    """Import a LIS production report CSV into the store."""
    if not production_csv.filename:
        raise HTTPException(status_code=400, detail="production_csv file is required.")

    with tempfile.TemporaryDirectory(prefix="production-import-") as tmp_dir:
        csv_name = Path(production_csv.filename).name or "production.csv"
        csv_path = Path(tmp_dir) / csv_name
        try:
            await _save_upload(production_csv, csv_path)
            df = load_production_csv(str(csv_path))
        except (FileNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Failed to load production CSV: {exc}") from exc

        try:
            result = import_production_frame(
                ledger_store,
                df,
                unit_id=unit_id,
                provider_name=provider_name,
                is_self_pay=is_self_pay,
            )
        except BatchImportError as exc:
            logger.error(
                "api_import_error | batch_index=%s | imported_before=%s | error=%s",
                exc.batch_index,
                exc.imported_before,
                exc,
            )
            raise HTTPException(
                status_code=500,
                detail={
                    "message": str(exc),
                    "imported_before": exc.imported_before,
                    "batch_index": exc.batch_index,
                },
            ) from exc

    return result.model_dump(mode="json")


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
