"""
Delivery pricing by ZIP code.

Loads the ZIP rules file (JSON or CSV, local path or URL) into an immutable
`PricingTable` snapshot so the agent can quote delivery minimums, fees and
ETAs without asking the model.

Accepted source shapes:
- JSON array of row objects: [{"zip": "95816", "min": 40, "fee": 1.99}, ...]
- JSON object keyed by ZIP: {"95816": {"minimum": 40, "fee": 1.99}, ...}
- CSV with a header row (header names are matched through a synonym table)

Bad rows are skipped, never fatal. A reload builds a complete new snapshot and
swaps the reference, so readers see either the old table or the new one.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import httpx
import structlog

from src.callbridge.speech import digits_only

logger = structlog.get_logger(__name__)

_ZIP_RE = re.compile(r"^\d{5}$")

REMOTE_TIMEOUT_SECONDS = 10.0


class PricingLoadError(Exception):
    """Raised when a pricing source cannot be loaded at all."""
    pass


class UnsupportedFormatError(PricingLoadError):
    """Raised when the source is neither .json nor .csv."""
    pass


class EtaPolicy(str, Enum):
    """How an ETA window is derived when a row has no explicit one."""
    MINIMUM = "minimum"
    LEAD_TIME = "lead_time"


@dataclass(frozen=True)
class PricingEntry:
    postal_code: str
    minimum: Decimal
    fee: Decimal
    lead_minutes: Optional[int] = None
    eta_window: Optional[str] = None
    last_call_minutes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zip": self.postal_code,
            "minimum": float(self.minimum),
            "fee": float(self.fee),
            "lead_minutes": self.lead_minutes,
            "eta_window": self.eta_window,
            "last_call_minutes": self.last_call_minutes,
        }


def eta_from_lead_minutes(lead_minutes: Optional[int]) -> str:
    if not lead_minutes:
        return "30 minutes to 2 hours"
    if lead_minutes <= 30:
        return "1 to 2 hours"
    if lead_minutes >= 90:
        return "1.5 to 2.5 hours"
    return "30 minutes to 2 hours"


_MINIMUM_BUCKETS: Tuple[Tuple[Decimal, str], ...] = (
    (Decimal("40"), "30 to 60 minutes"),
    (Decimal("50"), "45 to 90 minutes"),
    (Decimal("70"), "60 to 120 minutes"),
    (Decimal("90"), "75 to 150 minutes"),
    (Decimal("110"), "90 to 180 minutes"),
)


def eta_from_minimum(minimum: Decimal) -> str:
    for ceiling, window in _MINIMUM_BUCKETS:
        if minimum <= ceiling:
            return window
    return "2 to 4 hours"


@dataclass(frozen=True)
class PricingTable:
    """Immutable ZIP -> PricingEntry snapshot."""

    entries: Mapping[str, PricingEntry] = field(default_factory=dict)
    eta_policy: EtaPolicy = EtaPolicy.MINIMUM
    source: str = ""

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, code: object) -> bool:
        return self.lookup(code) is not None

    def lookup(self, code: object) -> Optional[PricingEntry]:
        """Find the entry for a ZIP code. Non-digits are ignored; never raises."""
        try:
            return self.entries.get(digits_only(code))
        except Exception:
            return None

    def lookup_many(self, codes: Iterable[object]) -> List[PricingEntry]:
        """Resolve several codes, keeping order and dropping duplicates and misses."""
        found: List[PricingEntry] = []
        seen = set()
        for code in codes or ():
            entry = self.lookup(code)
            if entry is None or entry.postal_code in seen:
                continue
            seen.add(entry.postal_code)
            found.append(entry)
        return found

    def eta_for(self, entry: PricingEntry) -> str:
        if entry.eta_window:
            return entry.eta_window
        if self.eta_policy == EtaPolicy.LEAD_TIME:
            return eta_from_lead_minutes(entry.lead_minutes)
        return eta_from_minimum(entry.minimum)


# Canonical field -> accepted header spellings (after normalization)
_HEADER_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "postal_code": ("zipcode", "zip", "zip_code", "postal_code", "postcode", "postal", "code"),
    "minimum": (
        "delivery_minimum",
        "minimum",
        "min",
        "min_order",
        "minimum_order",
        "delivery_min",
        "min_delivery",
    ),
    "fee": ("delivery_fee", "fee", "delivery_cost", "service_fee", "d_fee"),
    "lead_minutes": ("lead_minutes", "lead_time", "lead", "lead_time_minutes", "eta_minutes", "eta_min"),
    "eta_window": ("eta_window", "window", "delivery_window", "eta_text", "eta"),
    "last_call_minutes": ("last_call_minutes", "last_call", "cutoff", "cutoff_minutes", "last_call_cutoff"),
}


def _normalize_header(name: object) -> str:
    return re.sub(r"[\s\-]+", "_", str(name or "").strip().lower())


def normalize_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Map a raw row onto canonical field names (first matching synonym wins)."""
    lowered = {_normalize_header(k): v for k, v in (row or {}).items()}
    out: Dict[str, Any] = {}
    for canonical, synonyms in _HEADER_SYNONYMS.items():
        for synonym in synonyms:
            value = lowered.get(synonym)
            if value is not None and str(value).strip() != "":
                out[canonical] = value
                break
    return out


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip().replace("$", "").replace(",", "")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def _parse_minutes(value: Any) -> Optional[int]:
    amount = _parse_amount(value)
    if amount is None:
        return None
    return int(amount)


def build_entry(row: Mapping[str, Any], *, postal_code: Optional[str] = None) -> Optional[PricingEntry]:
    """
    Build an entry from a raw row, or None if the row is unusable.

    `postal_code` overrides the row's own code (object-keyed JSON).
    """
    fields = normalize_row(row)
    code = digits_only(postal_code if postal_code is not None else fields.get("postal_code"))
    if not _ZIP_RE.match(code):
        return None

    minimum = _parse_amount(fields.get("minimum"))
    fee = _parse_amount(fields.get("fee"))
    if minimum is None or fee is None:
        return None

    lead_minutes = _parse_minutes(fields.get("lead_minutes"))
    eta_window: Optional[str] = None
    raw_eta = fields.get("eta_window")
    if raw_eta is not None:
        numeric_eta = _parse_minutes(raw_eta)
        if numeric_eta is not None:
            if lead_minutes is None:
                lead_minutes = numeric_eta
        else:
            eta_window = " ".join(str(raw_eta).split()) or None

    return PricingEntry(
        postal_code=code,
        minimum=minimum,
        fee=fee,
        lead_minutes=lead_minutes,
        eta_window=eta_window,
        last_call_minutes=_parse_minutes(fields.get("last_call_minutes")),
    )


def _rows_from_json(raw: str) -> List[Tuple[Optional[str], Any]]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise PricingLoadError(f"Invalid JSON: {e}") from e

    if isinstance(data, list):
        return [(None, row) for row in data]
    if isinstance(data, dict):
        return [(str(key), row) for key, row in data.items()]
    raise PricingLoadError("JSON pricing data must be an array of rows or an object keyed by ZIP")


def _rows_from_csv(raw: str) -> List[Tuple[Optional[str], Any]]:
    reader = csv.DictReader(io.StringIO(raw.lstrip("\ufeff")))
    if not reader.fieldnames:
        return []
    return [(None, row) for row in reader]


def parse_pricing(raw: str, fmt: str) -> Dict[str, PricingEntry]:
    """Parse raw source text (fmt is "json" or "csv") into ZIP -> entry."""
    if fmt == "json":
        rows = _rows_from_json(raw)
    elif fmt == "csv":
        rows = _rows_from_csv(raw)
    else:
        raise UnsupportedFormatError(f"Unsupported pricing format '{fmt}'. Use .json or .csv")

    entries: Dict[str, PricingEntry] = {}
    skipped = 0
    for key, row in rows:
        if not isinstance(row, dict):
            skipped += 1
            continue
        try:
            entry = build_entry(row, postal_code=key)
        except Exception as e:
            logger.debug("Pricing row rejected", row=str(row)[:120], error=str(e))
            entry = None
        if entry is None:
            skipped += 1
            continue
        entries[entry.postal_code] = entry

    if skipped:
        logger.info("Skipped unusable pricing rows", skipped=skipped, loaded=len(entries))
    return entries


def _project_root() -> Path:
    # src/callbridge/pricing.py -> src/callbridge -> src -> project root
    return Path(__file__).resolve().parent.parent.parent


def is_remote(source: str) -> bool:
    return urlparse(source or "").scheme in ("http", "https")


def resolve_source_path(source: str) -> Path:
    """Relative paths are interpreted relative to the project root."""
    path = Path(source)
    if path.is_absolute():
        return path
    return _project_root() / path


def detect_format(source: str) -> str:
    path = urlparse(source).path if is_remote(source) else source
    suffix = Path(path).suffix.lower()
    if suffix == ".json":
        return "json"
    if suffix == ".csv":
        return "csv"
    raise UnsupportedFormatError(f"Unsupported pricing source extension '{suffix}'. Use .json or .csv")


async def _read_source(source: str, client: Optional[httpx.AsyncClient]) -> str:
    if is_remote(source):
        try:
            if client is not None:
                response = await client.get(source, timeout=REMOTE_TIMEOUT_SECONDS)
            else:
                async with httpx.AsyncClient() as owned:
                    response = await owned.get(source, timeout=REMOTE_TIMEOUT_SECONDS)
        except httpx.HTTPError as e:
            raise PricingLoadError(f"Failed to fetch {source}: {e}") from e
        if not response.is_success:
            raise PricingLoadError(f"Failed to fetch {source}: HTTP {response.status_code}")
        return response.text

    path = resolve_source_path(source)
    try:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PricingLoadError(f"Failed to read {path}: {e}") from e


async def load_pricing_table(
    source: str,
    *,
    eta_policy: EtaPolicy = EtaPolicy.MINIMUM,
    client: Optional[httpx.AsyncClient] = None,
) -> PricingTable:
    """
    Load a pricing table from a local file or URL.

    Raises:
        UnsupportedFormatError: if the extension is not .json/.csv
        PricingLoadError: if the source cannot be read or parsed at all
    """
    if not source:
        raise PricingLoadError("No pricing source configured")

    fmt = detect_format(source)
    raw = await _read_source(source, client)
    entries = parse_pricing(raw, fmt)
    return PricingTable(entries=entries, eta_policy=EtaPolicy(eta_policy), source=source)


@dataclass(frozen=True)
class LoadResult:
    ok: bool
    count: int = 0
    source: str = ""
    error: Optional[str] = None


class PricingStore:
    """
    Owns the current pricing snapshot.

    `table` is read without locking; `reload()` assigns a complete new
    snapshot in a single reference swap.
    """

    def __init__(
        self,
        source: str = "",
        *,
        eta_policy: EtaPolicy = EtaPolicy.MINIMUM,
        table: Optional[PricingTable] = None,
    ):
        self.source = source
        self.eta_policy = EtaPolicy(eta_policy)
        self._table = table if table is not None else PricingTable(eta_policy=self.eta_policy, source=source)

    @property
    def table(self) -> PricingTable:
        return self._table

    def replace(self, table: PricingTable) -> None:
        self._table = table

    async def reload(
        self,
        source: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> LoadResult:
        """
        Reload from `source` (default: the configured source).

        On failure the table is replaced by an empty one and the error is
        returned, not raised.
        """
        target = source or self.source
        try:
            table = await load_pricing_table(target, eta_policy=self.eta_policy, client=client)
        except PricingLoadError as e:
            logger.error("Failed to load pricing table", source=target, error=str(e))
            self.replace(PricingTable(eta_policy=self.eta_policy, source=target))
            return LoadResult(ok=False, source=target, error=str(e))

        self.replace(table)
        logger.info("Pricing table loaded", source=target, count=len(table))
        return LoadResult(ok=True, count=len(table), source=target)


_store: Optional[PricingStore] = None


def get_pricing_store() -> PricingStore:
    """Get or create the process-wide pricing store."""
    global _store

    if _store is None:
        from src.callbridge.config import get_config

        config = get_config()
        _store = PricingStore(config.pricing_source, eta_policy=EtaPolicy(config.pricing_eta_policy))

    return _store


def reset_pricing_store() -> None:
    global _store
    _store = None
