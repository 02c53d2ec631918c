"""
normalize.py - Canonical comparison keys and proximity predicates.

Exact keys:
    normalize_tax_id(raw)   -> digits-only CNPJ/CPF or None
    normalize_code(raw)     -> digits-only barcode / typable line or None

Fuzzy comparison:
    normalize_name(raw)     -> folded text (lowercase, no accents, no punctuation)
    name_similarity(a, b)   -> float in [0, 1]
    provider_search_terms() -> first two tokens of a provider name

Proximity:
    dates_near(d1, d2, max_days=5)
    values_near(v1, v2, tolerance=0.01)

Import parsing:
    parse_amount(raw)       -> non-negative float or None
    parse_date(raw)         -> date or None

Design principles:
    - SAME normalization on BOTH sides of every comparison
    - Pure, total functions: same input -> same key, no side effects
    - Exact keys never go through normalize_name
"""

from __future__ import annotations

import math
import re
import unicodedata
from collections import Counter
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd
from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

MIN_TOKEN_LENGTH = 3
CONTAINMENT_SIMILARITY = 0.8
PROVIDER_SEARCH_TOKENS = 2

# Category labels the LIS prepends to insurance provider report names.
PROVIDER_LABEL_PREFIXES: frozenset[str] = frozenset({"convenio", "convênio", "plano"})

NULL_TEXTS = {"", "n/a", "na", "none", "null", "nan", "-"}

_NON_DIGITS = re.compile(r"\D")
_BR_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ]")
_YEAR_FIRST = re.compile(r"^\d{4}\D")
_THOUSANDS_DOTS = re.compile(r"^\d{1,3}(\.\d{3})+$")


def _digits_only(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    return digits or None


def normalize_tax_id(raw: Any) -> Optional[str]:
    """Strip formatting from a CNPJ/CPF. None when nothing digit-like remains."""
    return _digits_only(raw)


def normalize_code(raw: Any) -> Optional[str]:
    """Strip formatting from a payment-slip barcode or typable line."""
    return _digits_only(raw)


def normalize_name(raw: Any) -> str:
    """Fold a free-text name for fuzzy comparison only."""
    if raw is None:
        return ""

    name = str(raw).lower()
    name = unicodedata.normalize("NFD", name)
    name = "".join(char for char in name if unicodedata.category(char) != "Mn")
    name = re.sub(r"[^\w\s]", "", name, flags=re.UNICODE)
    name = re.sub(r"\s+", " ", name).strip()
    return name


def name_similarity(name_a: Any, name_b: Any) -> float:
    """Similarity between two names in [0, 1].

    1.0 on equal folded text, 0.8 when one contains the other, otherwise the
    token-overlap ratio 2*|common| / (|tokens_a| + |tokens_b|) over tokens of
    at least three characters.
    """
    n1 = normalize_name(name_a)
    n2 = normalize_name(name_b)
    if not n1 or not n2:
        return 0.0

    if n1 == n2:
        return 1.0

    if n1 in n2 or n2 in n1:
        return CONTAINMENT_SIMILARITY

    words1 = [word for word in n1.split() if len(word) >= MIN_TOKEN_LENGTH]
    words2 = [word for word in n2.split() if len(word) >= MIN_TOKEN_LENGTH]
    if not words1 or not words2:
        return 0.0

    common = sum((Counter(words1) & Counter(words2)).values())
    similarity = (common * 2) / (len(words1) + len(words2))
    logger.debug(
        "name_similarity | a=%r | b=%r | common=%s | score=%.3f",
        n1,
        n2,
        common,
        similarity,
    )
    return similarity


def provider_search_terms(provider_name: Any) -> list[str]:
    """First two lowercase tokens of a provider name, skipping the LIS category label."""
    tokens = str(provider_name or "").lower().split()
    if len(tokens) > 1 and tokens[0] in PROVIDER_LABEL_PREFIXES:
        tokens = tokens[1:]
    return tokens[:PROVIDER_SEARCH_TOKENS]


def _as_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_date(value)


def dates_near(first: Any, second: Any, max_days: int = 5) -> bool:
    """Whether two calendar dates are at most `max_days` apart."""
    d1 = _as_date(first)
    d2 = _as_date(second)
    if d1 is None or d2 is None:
        return False
    return abs((d2 - d1).days) <= max_days


def values_near(first: Optional[float], second: Optional[float], tolerance: float = 0.01) -> bool:
    """Relative proximity against the larger value. Both zero is near; one zero never is."""
    if first is None or second is None:
        return False
    if first == 0 and second == 0:
        return True
    if first == 0 or second == 0:
        return False

    diff = abs(first - second)
    largest = max(abs(first), abs(second))
    return (diff / largest) <= tolerance


def parse_amount(raw: Any) -> Optional[float]:
    """Parse an amount cell ('R$ 1.234,56', '1234.56', 150) into a 2-decimal float.

    Returns None for blank, unparseable, non-finite or negative input so the
    import path can report the row instead of guessing.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, (int, float)):
        value = float(raw)
        if not math.isfinite(value) or value < 0:
            logger.debug("parse_amount | rejected=%r", raw)
            return None
        return round(value, 2)

    try:
        if pd.isna(raw):
            return None
    except (TypeError, ValueError):
        pass

    cleaned = str(raw).strip()
    if cleaned.lower() in NULL_TEXTS:
        return None

    negative = cleaned.startswith("-") or (cleaned.startswith("(") and cleaned.endswith(")"))
    cleaned = re.sub(r"R\$|\s|\(|\)|-", "", cleaned)
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    elif _THOUSANDS_DOTS.match(cleaned):
        cleaned = cleaned.replace(".", "")

    try:
        value = float(cleaned)
    except ValueError:
        logger.debug("parse_amount | parse_failed | raw=%r", raw)
        return None

    if negative or not math.isfinite(value) or value < 0:
        logger.debug("parse_amount | rejected=%r", raw)
        return None
    return round(value, 2)


def parse_date(raw: Any) -> Optional[date]:
    """Parse a date cell into a calendar date. DD/MM/YY(YY) is read day-first."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw

    try:
        if pd.isna(raw):
            return None
    except (TypeError, ValueError):
        pass

    text = str(raw).strip()
    if text.lower() in NULL_TEXTS or not any(char.isdigit() for char in text):
        return None

    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None

    iso_prefix = _ISO_DATETIME.match(text)
    if iso_prefix:
        try:
            return date.fromisoformat(iso_prefix.group(1))
        except ValueError:
            return None

    match = _BR_DATE.match(text)
    if match:
        day, month, year = match.groups()
        if len(year) == 2:
            year = "20" + year
        try:
            return date(int(year), int(month), int(day))
        except ValueError:
            return None

    # Day-first applies only when the year does not lead.
    year_first = bool(_YEAR_FIRST.match(text))
    try:
        return dateparser.parse(text, dayfirst=not year_first, yearfirst=year_first).date()
    except (ValueError, TypeError, OverflowError) as exc:
        logger.debug("parse_date | parse_error=%s | raw=%r", type(exc).__name__, text)
        return None
