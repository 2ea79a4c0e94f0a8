"""Provider payload normalization.

Every upstream provider returns loosely typed JSON.  The functions in this
module map one raw provider item to a :data:`~memefeed.models.TokenRecord`
with canonical field names and coerced values.  They are pure: no I/O, no
shared state, and they never raise on unexpected input.  Items without a
usable identifier normalize to ``None`` and are dropped.

Numeric fields are coerced with :func:`coerce_float` which rejects ``NaN``,
infinities, booleans and unparsable strings; rejected values are omitted
rather than propagated.  Provider fields without a canonical mapping are
passed through when they are JSON-representable.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .models import TokenRecord, format_timestamp

logger = logging.getLogger(__name__)

JUPITER_RECENT = "jupiter_recent"
JUPITER_TOP_TRENDING = "jupiter_top_trending"
GMGN = "gmgn"

STAT_WINDOWS: tuple[str, ...] = ("5m", "1h", "6h", "24h")

_STAT_FIELDS: tuple[str, ...] = (
    "priceChange",
    "holderChange",
    "liquidityChange",
    "volumeChange",
    "buyVolume",
    "sellVolume",
    "buyOrganicVolume",
    "sellOrganicVolume",
    "numBuys",
    "numSells",
    "numTraders",
    "numOrganicBuyers",
    "numNetBuyers",
)

_ENVELOPE_KEYS: tuple[str, ...] = ("data", "tokens", "items", "rank", "pairs", "results", "list")

_MAX_PASSTHROUGH_DEPTH = 6
_DROP = object()


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def coerce_float(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float, or ``None`` when it is not one."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            result = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def coerce_int(value: Any) -> Optional[int]:
    number = coerce_float(value)
    if number is None:
        return None
    return int(number)


def coerce_str(value: Any) -> Optional[str]:
    """Return a stripped non-empty string, or ``None``."""

    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return None


def coerce_timestamp(value: Any) -> Optional[str]:
    """Accept epoch seconds/milliseconds or ISO strings and return ISO ``Z``."""

    if isinstance(value, str) and not value.strip().replace(".", "", 1).isdigit():
        text = value.strip()
        return text or None
    number = coerce_float(value)
    if number is None or number <= 0:
        return None
    if number > 1e12:
        number /= 1000.0
    try:
        moment = datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return format_timestamp(moment)


def _json_safe(value: Any, depth: int = 0) -> Any:
    if depth > _MAX_PASSTHROUGH_DEPTH:
        return _DROP
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _DROP
    if isinstance(value, Mapping):
        cleaned: Dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                continue
            safe = _json_safe(item, depth + 1)
            if safe is not _DROP:
                cleaned[key] = safe
        return cleaned
    if isinstance(value, (list, tuple)):
        items = [_json_safe(item, depth + 1) for item in value]
        return [item for item in items if item is not _DROP]
    return _DROP


def _first(raw: Mapping[str, Any], keys: Sequence[str], coerce: Callable[[Any], Any]) -> Any:
    for key in keys:
        if key not in raw:
            continue
        value = coerce(raw[key])
        if value is not None:
            return value
    return None


def _string_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, (list, tuple)):
        return None
    return [text for text in (coerce_str(item) for item in value) if text]


def _passthrough(raw: Mapping[str, Any], consumed: Set[str]) -> TokenRecord:
    record: TokenRecord = {}
    for key, value in raw.items():
        if not isinstance(key, str) or key in consumed:
            continue
        safe = _json_safe(value)
        if safe is not _DROP and safe is not None:
            record[key] = safe
    return record


def _set(record: TokenRecord, key: str, value: Any) -> None:
    if value is None:
        record.pop(key, None)
    else:
        record[key] = value


def _normalize_stats(block: Any) -> Optional[Dict[str, float]]:
    if not isinstance(block, Mapping):
        return None
    stats: Dict[str, float] = {}
    for key, value in block.items():
        if not isinstance(key, str):
            continue
        number = coerce_float(value)
        if number is not None:
            stats[key] = number
    return stats


# ---------------------------------------------------------------------------
# Jupiter
# ---------------------------------------------------------------------------

_JUPITER_ID_KEYS = ("id", "address", "mint", "tokenId")
_JUPITER_NUMERIC: Dict[str, tuple[str, ...]] = {
    "usdPrice": ("usdPrice", "price_usd", "price"),
    "liquidity": ("liquidity",),
    "fdv": ("fdv", "fully_diluted_valuation"),
    "mcap": ("mcap", "market_cap"),
    "bondingCurve": ("bondingCurve",),
    "circSupply": ("circSupply", "circulating_supply", "circulatingSupply"),
    "totalSupply": ("totalSupply", "total_supply"),
}
_JUPITER_INT: Dict[str, tuple[str, ...]] = {
    "holderCount": ("holderCount",),
    "decimals": ("decimals",),
}
_JUPITER_CONSUMED: Set[str] = (
    set(_JUPITER_ID_KEYS)
    | {alias for aliases in _JUPITER_NUMERIC.values() for alias in aliases}
    | {alias for aliases in _JUPITER_INT.values() for alias in aliases}
    | {"symbol", "name", "icon", "logoURI", "updatedAt", "updated_at"}
    | {f"stats{window}" for window in STAT_WINDOWS}
)


def normalize_jupiter_token(raw: Any) -> Optional[TokenRecord]:
    """Normalize one Jupiter token (``/tokens/v2/recent`` item)."""

    if not isinstance(raw, Mapping):
        return None
    token_id = _first(raw, _JUPITER_ID_KEYS, coerce_str)
    if not token_id:
        return None

    record = _passthrough(raw, _JUPITER_CONSUMED)
    symbol = _first(raw, ("symbol",), coerce_str)
    name = _first(raw, ("name",), coerce_str)
    record["id"] = token_id
    record["symbol"] = symbol or name or ""
    record["name"] = name or symbol or ""
    _set(record, "icon", _first(raw, ("icon", "logoURI"), coerce_str))
    for field, aliases in _JUPITER_NUMERIC.items():
        _set(record, field, _first(raw, aliases, coerce_float))
    for field, aliases in _JUPITER_INT.items():
        _set(record, field, _first(raw, aliases, coerce_int))
    for window in STAT_WINDOWS:
        _set(record, f"stats{window}", _normalize_stats(raw.get(f"stats{window}")))
    _set(record, "updatedAt", _first(raw, ("updatedAt", "updated_at"), coerce_timestamp))
    return record


def normalize_top_trending_token(raw: Any) -> Optional[TokenRecord]:
    """Normalize one Jupiter ``/tokens/v2/toptrending`` item."""

    record = normalize_jupiter_token(raw)
    if record is None:
        return None
    _set(record, "organicScore", coerce_float(raw.get("organicScore")))
    _set(record, "isVerified", coerce_bool(raw.get("isVerified")))
    _set(record, "tags", _string_list(raw.get("tags")))
    _set(record, "cexes", _string_list(raw.get("cexes")))
    _set(record, "priceBlockId", coerce_int(raw.get("priceBlockId")))
    return record


# ---------------------------------------------------------------------------
# GMGN
# ---------------------------------------------------------------------------

_GMGN_ID_KEYS = ("address", "token", "mint", "token_address", "base_address", "id")
_GMGN_NUMERIC: Dict[str, tuple[str, ...]] = {
    "usdPrice": ("usd_price", "price", "price_usd"),
    "mcap": ("usd_market_cap", "market_cap"),
    "fdv": ("usd_fdv", "fdv", "fully_diluted_valuation"),
    "liquidity": ("liquidity", "usd_liquidity"),
    "totalSupply": ("total_supply",),
}
_GMGN_TIMESTAMP_KEYS = ("created_timestamp", "open_timestamp", "creation_time", "created_at")
_GMGN_STAT_SOURCES: Dict[str, tuple[str, ...]] = {
    "priceChange": ("price_change_percent{w}", "price_change_rate_{w}"),
    "volume": ("volume_{w}",),
    "numBuys": ("buys_{w}",),
    "numSells": ("sells_{w}",),
    "numSwaps": ("swaps_{w}",),
}


def _gmgn_stats(raw: Mapping[str, Any], window: str) -> Optional[Dict[str, float]]:
    stats: Dict[str, float] = {}
    for field, templates in _GMGN_STAT_SOURCES.items():
        value = _first(raw, [template.format(w=window) for template in templates], coerce_float)
        if value is not None:
            stats[field] = value
    return stats or None


def normalize_gmgn_token(raw: Any) -> Optional[TokenRecord]:
    """Normalize one GMGN token/pair item.

    GMGN nests token metadata under ``base_token_info`` on pair endpoints;
    top-level keys win over nested ones.  ``progress`` is a 0..1 fraction on
    pump endpoints and is reported as a percentage in ``bondingCurve``.
    """

    if not isinstance(raw, Mapping):
        return None
    nested = raw.get("base_token_info")
    nested = nested if isinstance(nested, Mapping) else {}
    sources: tuple[Mapping[str, Any], ...] = (raw, nested)

    def lookup(keys: Sequence[str], coerce: Callable[[Any], Any]) -> Any:
        for source in sources:
            value = _first(source, keys, coerce)
            if value is not None:
                return value
        return None

    token_id = lookup(_GMGN_ID_KEYS, coerce_str)
    if not token_id:
        return None

    record = _passthrough(raw, set(_GMGN_ID_KEYS) | {"base_token_info"})
    symbol = lookup(("symbol", "token_symbol"), coerce_str)
    name = lookup(("name", "token_name"), coerce_str)
    record["id"] = token_id
    record["symbol"] = symbol or name or ""
    record["name"] = name or symbol or ""
    _set(record, "icon", lookup(("logo", "icon", "image"), coerce_str))
    for field, aliases in _GMGN_NUMERIC.items():
        _set(record, field, lookup(aliases, coerce_float))
    _set(record, "holderCount", lookup(("holder_count", "holders"), coerce_int))

    progress = lookup(("progress", "bonding_curve_progress"), coerce_float)
    if progress is not None and 0.0 <= progress <= 1.0:
        progress *= 100.0
    _set(record, "bondingCurve", progress)
    _set(record, "launchpad", lookup(("launchpad_platform", "launchpad", "platform"), coerce_str))
    _set(record, "createdAt", lookup(_GMGN_TIMESTAMP_KEYS, coerce_timestamp))
    for window in STAT_WINDOWS:
        _set(record, f"stats{window}", _gmgn_stats(raw, window))
    return record


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


def envelope_error(payload: Any) -> Optional[str]:
    """Return the provider-reported error of an API envelope, if any.

    GMGN wraps responses as ``{"code": 0, "msg": "success", "data": ...}``;
    a non-zero ``code`` signals failure even on HTTP 200.  Jupiter error
    bodies carry an ``error`` string.
    """

    if not isinstance(payload, Mapping):
        return None
    code = payload.get("code")
    if code is not None and not isinstance(code, bool):
        number = coerce_int(code)
        if number is not None and number != 0:
            message = coerce_str(payload.get("msg")) or coerce_str(payload.get("message")) or "error"
            return f"provider error {number}: {message}"
    error = payload.get("error")
    if isinstance(error, str) and error.strip() and not any(key in payload for key in _ENVELOPE_KEYS):
        return error.strip()
    return None


def extract_items(payload: Any, depth: int = 0) -> List[Any]:
    """Return the list of raw records inside a provider envelope."""

    if isinstance(payload, list):
        return payload
    if not isinstance(payload, Mapping) or depth > 3:
        return []
    for key in _ENVELOPE_KEYS:
        candidate = payload.get(key)
        if isinstance(candidate, list):
            return candidate
        if isinstance(candidate, Mapping):
            nested = extract_items(candidate, depth + 1)
            if nested:
                return nested
    return []


Normalizer = Callable[[Any], Optional[TokenRecord]]

NORMALIZERS: Dict[str, Normalizer] = {
    JUPITER_RECENT: normalize_jupiter_token,
    JUPITER_TOP_TRENDING: normalize_top_trending_token,
    GMGN: normalize_gmgn_token,
}


def dedupe_by_id(records: Iterable[TokenRecord]) -> List[TokenRecord]:
    """Drop records without an id and repeated ids (first occurrence wins)."""

    seen: Set[str] = set()
    result: List[TokenRecord] = []
    for record in records:
        token_id = record.get("id") if isinstance(record, Mapping) else None
        if not isinstance(token_id, str) or not token_id or token_id in seen:
            continue
        seen.add(token_id)
        result.append(record)
    return result


def normalize_payload(provider: str, payload: Any) -> List[TokenRecord]:
    """Normalize a whole provider response into unique token records."""

    try:
        normalizer = NORMALIZERS[provider]
    except KeyError:
        raise ValueError(f"unknown provider {provider!r}") from None
    items = extract_items(payload)
    records = [record for record in (normalizer(item) for item in items) if record is not None]
    dropped = len(items) - len(records)
    if dropped:
        logger.debug("%s: dropped %d item(s) without a usable id", provider, dropped)
    return dedupe_by_id(records)


__all__ = [
    "JUPITER_RECENT",
    "JUPITER_TOP_TRENDING",
    "GMGN",
    "NORMALIZERS",
    "coerce_float",
    "coerce_int",
    "coerce_str",
    "coerce_bool",
    "coerce_timestamp",
    "normalize_jupiter_token",
    "normalize_top_trending_token",
    "normalize_gmgn_token",
    "envelope_error",
    "extract_items",
    "dedupe_by_id",
    "normalize_payload",
]
