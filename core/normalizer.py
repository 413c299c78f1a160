"""
normalizer.py
--------------
Field normalization: currency detection, amount parsing and merchant-name
cleanup, plus the date helpers shared by the refiner and the aggregator.

Amounts are returned as Decimal in the currency's major unit. Whole-unit
currencies (JPY) are rounded half-up to integers, all others to two
decimal places.
"""

import re
import unicodedata
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Tuple

import pandas as pd

from config.config_loader import get_classification_config, get_normalization_config
from core.exceptions import AmountParseError


_LEADING_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_ISO_YMD = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}")
_SLASH_YMD = re.compile(r"^\d{4}/\d{1,2}/\d{1,2}")
_GROUPING_SEPARATORS = (",", "，", "_", " ")


class FieldNormalizer:
    """
    Normalizes extracted amount / currency / merchant fields.

    Built once from the config normalization block. Stateless after init,
    so one instance can be shared across classifier threads.
    """

    def __init__(self, config: Dict[str, Any] | None = None, home_currency: str | None = None):
        self.config = config if config is not None else get_normalization_config()
        self.home_currency = home_currency or get_classification_config()["home_currency"]
        self.currency_markers: list[tuple[str, list[str]]] = [
            (entry["currency"], [m.lower() for m in entry["markers"]])
            for entry in self.config["currency_markers"]
        ]
        self.whole_unit_currencies = set(self.config["whole_unit_currencies"])
        self.boilerplate_phrases: list[str] = list(self.config["boilerplate_phrases"])
        self.bracket_characters: str = self.config["bracket_characters"]
        self.corrections: Dict[str, str] = dict(self.config.get("corrections") or {})

    # -------------------------------------------------------------------------
    # CURRENCY
    # -------------------------------------------------------------------------

    def detect_currency(self, text: str) -> str:
        """
        Returns the first currency (config order, home currency first) whose
        symbol or keyword appears in `text`. Defaults to the home currency.
        """
        lowered = (text or "").lower()
        for currency, markers in self.currency_markers:
            if any(marker in lowered for marker in markers):
                return currency
        return self.home_currency

    # -------------------------------------------------------------------------
    # AMOUNT
    # -------------------------------------------------------------------------

    def normalize_amount(self, raw: str, currency: str) -> Decimal:
        """
        Parses an amount literal such as "1,490" or "9.99".

        Raises:
            AmountParseError: If no numeric value can be read, or it is not finite.
        """
        cleaned = str(raw or "")
        for sep in _GROUPING_SEPARATORS:
            cleaned = cleaned.replace(sep, "")

        match = _LEADING_NUMBER.match(cleaned)
        if not match:
            raise AmountParseError(raw)

        try:
            amount = Decimal(match.group(0))
        except InvalidOperation as e:
            raise AmountParseError(raw) from e

        if not amount.is_finite():
            raise AmountParseError(raw)

        quantum = Decimal("1") if currency in self.whole_unit_currencies else Decimal("0.01")
        return amount.quantize(quantum, rounding=ROUND_HALF_UP)

    # -------------------------------------------------------------------------
    # MERCHANT
    # -------------------------------------------------------------------------

    def normalize_merchant(self, raw: str | None) -> Tuple[str, str]:
        """
        Cleans a raw merchant string.

        Returns:
            (merchant, merchant_normalized). When cleanup strips everything,
            the raw text is kept so the record still has a grouping key.
        """
        raw = raw or ""
        text = unicodedata.normalize("NFKC", raw)
        for phrase in self.boilerplate_phrases:
            text = text.replace(unicodedata.normalize("NFKC", phrase), "")
        for ch in self.bracket_characters:
            text = text.replace(ch, "")
        text = text.strip()

        text = self.corrections.get(text, text)

        merchant = text or raw.strip()
        return merchant, merchant.lower()


# -----------------------------------------------------------------------------
# DATE HELPERS
# -----------------------------------------------------------------------------

def normalize_ymd(value: str) -> str:
    """Normalizes "YYYY/M/D", "YYYY.M.D" or "YYYY-M-D" into "YYYY-MM-DD"."""
    parts = value.replace(".", "-").replace("/", "-").split("-")
    if len(parts) < 3:
        return value
    year, month, day = parts[0], parts[1], parts[2]
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def to_month(value: Any) -> str:
    """
    Converts a datetime or a date-like string into "YYYY-MM".

    Accepts hyphen- and slash-delimited year-month-day prefixes, then falls
    back to a generic parse. Returns "" when nothing can be parsed.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m")

    text = str(value).strip()
    if not text:
        return ""
    if _ISO_YMD.match(text) or _SLASH_YMD.match(text):
        head = normalize_ymd(text.split()[0].split("T")[0])
        return head[:7]

    parsed = pd.to_datetime(text, errors="coerce", utc=True)
    if pd.isna(parsed):
        return ""
    return parsed.strftime("%Y-%m")


def month_of(received_at: datetime | None, occurred_at: str | None) -> str:
    """Month key for a record: received timestamp first, else the extracted occurrence date."""
    if received_at is not None:
        return to_month(received_at)
    return to_month(occurred_at)
