"""
ingest.py - Bulk import of LIS production reports.

1. load_production_csv()    read + validate columns (pandas)
2. parse_production_rows()  per-row validation into ProductionRecord
3. import_production()      chunked, duplicate-ignoring insert

Row problems (missing date, code or amount) are collected per row and never
abort the batch. Inserts go in chunks of IMPORT_BATCH_SIZE rows keyed on
(unit_id, external_code); re-importing the same report is a no-op. When a
chunk fails, BatchImportError reports how many rows were imported before it.
"""

from __future__ import annotations

import os
from typing import Optional

import pandas as pd

from ledger_store import LedgerStore, LedgerStoreError, new_id
from logging_config import get_logger
from models import ImportResult, ProductionRecord, RowError
from normalize import parse_amount, parse_date

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500

REQUIRED_COLUMNS = ["exam_date", "external_code", "amount"]
OPTIONAL_COLUMNS = ["patient_name", "provider_name", "is_self_pay", "company_name", "exam_list"]

# Header spellings found in LIS exports.
COLUMN_ALIASES: dict[str, str] = {
    "data": "exam_date",
    "data cad": "exam_date",
    "data cad.": "exam_date",
    "date": "exam_date",
    "codigo": "external_code",
    "código": "external_code",
    "code": "external_code",
    "lis_code": "external_code",
    "valor": "amount",
    "valor pago": "amount",
    "paciente": "patient_name",
    "patient": "patient_name",
    "convenio": "provider_name",
    "convênio": "provider_name",
    "provider": "provider_name",
    "empresa": "company_name",
    "exames": "exam_list",
}

SELF_PAY_LABELS = {"particular", "self-pay", "self pay", "selfpay"}
TRUE_TEXTS = {"1", "true", "yes", "y", "sim", "s"}


class BatchImportError(LedgerStoreError):
    """A chunk insert failed. Rows of earlier chunks stay imported."""

    def __init__(self, message: str, imported_before: int, batch_index: int) -> None:
        super().__init__(message)
        self.imported_before = imported_before
        self.batch_index = batch_index


def batch_size_from_env() -> int:
    raw = os.getenv("IMPORT_BATCH_SIZE", "").strip()
    if not raw:
        return DEFAULT_BATCH_SIZE
    try:
        size = int(raw)
    except ValueError:
        logger.warning("import_config_warning | IMPORT_BATCH_SIZE=%r | fallback=%s", raw, DEFAULT_BATCH_SIZE)
        return DEFAULT_BATCH_SIZE
    return size if size > 0 else DEFAULT_BATCH_SIZE


def load_production_csv(csv_path: str) -> pd.DataFrame:
    """Load and validate a production report CSV file."""
    if csv_path is None:
        raise ValueError("csv_path cannot be None")

    csv_path = str(csv_path).strip()
    if not csv_path:
        raise ValueError("csv_path cannot be empty")
    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"Production CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", sep=None, engine="python", dtype=str)
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            csv_path,
        )
        df = pd.read_csv(csv_path, encoding="latin-1", sep=None, engine="python", dtype=str)
    except Exception as exc:
        raise ValueError(f"Failed to read CSV '{csv_path}': {exc}") from exc

    return prepare_production_frame(df, source=csv_path)


def prepare_production_frame(df: pd.DataFrame, source: str = "<frame>") -> pd.DataFrame:
    """Canonicalize headers, drop empty rows and check required columns."""
    df = df.copy()
    canonical = []
    for column in df.columns:
        name = str(column).strip().lower()
        canonical.append(COLUMN_ALIASES.get(name, name))
    df.columns = canonical
    df = df.dropna(how="all")

    if df.empty:
        raise ValueError(f"Production CSV is empty: {source}")

    missing = [column for column in REQUIRED_COLUMNS if column not in df.columns]
    if missing:
        raise ValueError(
            f"Production CSV missing required columns: {missing}\n"
            f"Required: {REQUIRED_COLUMNS}\n"
            f"Found: {list(df.columns)}"
        )

    for optional in OPTIONAL_COLUMNS:
        if optional not in df.columns:
            df[optional] = None

    logger.info("csv_loaded | source=%s | rows=%s | columns=%s", source, len(df), list(df.columns))
    return df.reset_index(drop=True)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    text = str(value).strip()
    return text or None


def _is_self_pay(raw_flag, provider_name: str) -> bool:
    flag = _text(raw_flag)
    if flag is not None:
        return flag.lower() in TRUE_TEXTS
    return provider_name.strip().lower() in SELF_PAY_LABELS


def parse_production_rows(
    df: pd.DataFrame,
    unit_id: Optional[str],
    provider_name: Optional[str] = None,
    is_self_pay: Optional[bool] = None,
    import_session_id: Optional[str] = None,
) -> tuple[list[ProductionRecord], list[RowError]]:
    """Turn frame rows into ProductionRecords, collecting per-row errors.

    provider_name / is_self_pay override the row columns when the whole report
    belongs to one payer (one file per provider in LIS exports).
    """
    records: list[ProductionRecord] = []
    errors: list[RowError] = []

    for index, row in df.iterrows():
        row_index = int(index)
        exam_date = parse_date(row.get("exam_date"))
        code = _text(row.get("external_code"))
        amount = parse_amount(row.get("amount"))

        problems = []
        if exam_date is None:
            problems.append("missing or invalid date")
        if code is None:
            problems.append("missing code")
        if amount is None:
            problems.append("missing or invalid amount")
        if problems:
            errors.append(RowError(row_index=row_index, reason=", ".join(problems)))
            logger.warning("import_row_skipped | row_index=%s | reason=%r", row_index, ", ".join(problems))
            continue

        payer = provider_name if provider_name is not None else (_text(row.get("provider_name")) or "")
        self_pay = is_self_pay if is_self_pay is not None else _is_self_pay(row.get("is_self_pay"), payer)
        records.append(
            ProductionRecord(
                id=new_id("prod"),
                unit_id=unit_id,
                exam_date=exam_date,
                external_code=code,
                patient_name=_text(row.get("patient_name")),
                provider_name=payer,
                is_self_pay=self_pay,
                amount=amount,
                import_session_id=import_session_id,
                company_name=_text(row.get("company_name")),
                exam_list=_text(row.get("exam_list")),
                row_index=row_index,
            )
        )

    return records, errors


def import_production(
    store: LedgerStore,
    records: list[ProductionRecord],
    batch_size: Optional[int] = None,
    errors: Optional[list[RowError]] = None,
) -> ImportResult:
    """Insert records in chunks, ignoring (unit_id, external_code) conflicts.

    Raises:
        BatchImportError: a chunk failed; `imported_before` counts rows
            inserted by the earlier chunks. The store error is chained.
    """
    size = batch_size or batch_size_from_env()
    result = ImportResult(errors=list(errors or []))
    result.skipped_invalid = len(result.errors)

    for batch_index, offset in enumerate(range(0, len(records), size)):
        batch = records[offset : offset + size]
        try:
            inserted = store.upsert_production(batch)
        except Exception as exc:
            logger.error(
                "production_import_error | batch_index=%s | imported_before=%s | error_type=%s | error=%s",
                batch_index,
                result.imported,
                type(exc).__name__,
                exc,
            )
            raise BatchImportError(
                f"Import failed at batch {batch_index} after {result.imported} rows: {exc}",
                imported_before=result.imported,
                batch_index=batch_index,
            ) from exc

        result.imported += len(inserted)
        result.ignored_duplicates += len(batch) - len(inserted)
        result.batches += 1

    logger.info(
        "production_import | rows=%s | imported=%s | ignored_duplicates=%s | skipped_invalid=%s | batches=%s | batch_size=%s",
        len(records),
        result.imported,
        result.ignored_duplicates,
        result.skipped_invalid,
        result.batches,
        size,
    )
    return result


def import_production_frame(
    store: LedgerStore,
    df: pd.DataFrame,
    unit_id: Optional[str],
    provider_name: Optional[str] = None,
    is_self_pay: Optional[bool] = None,
    batch_size: Optional[int] = None,
) -> ImportResult:
    """Parse an already-prepared frame and import it under one session id."""
    session_id = new_id("imp")
    records, errors = parse_production_rows(
        df,
        unit_id=unit_id,
        provider_name=provider_name,
        is_self_pay=is_self_pay,
        import_session_id=session_id,
    )
    return import_production(store, records, batch_size=batch_size, errors=errors)
