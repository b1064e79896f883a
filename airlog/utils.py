import math
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, Dict, Any

from .errors import InvalidPayload

# delta -> total
HOUR_FIELDS = {
    "hours_flown_airframe": "total_airframe_hr",
    "hours_flown_engine": "total_engine_hr_tsn",
}
COUNT_FIELDS = {
    "landings": "total_landings",
    "tc": "total_tc",
    "no_of_starts": "total_no_of_starts",
    "gg_cycle": "total_gg_cycle_tsn",
    "ft_cycle": "total_ft_cycle_tsn",
}
DELTA_TO_TOTAL = {**HOUR_FIELDS, **COUNT_FIELDS}
DELTA_FIELDS = tuple(DELTA_TO_TOTAL.keys())
TOTAL_FIELDS = tuple(DELTA_TO_TOTAL.values())

TEXT_FIELDS = {"usage", "remarks"}
SCOPE_FIELDS = {"tlp_no", "record_date"}
ALLOWED_FIELDS = set(DELTA_FIELDS) | TEXT_FIELDS | SCOPE_FIELDS

_HHMM_RE = re.compile(r"^(\d+):(\d{1,2})$")
_TWO_PLACES = Decimal("0.01")
_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?$")

# per-record counter ceiling
MAX_COUNT = 2 ** 31 - 1


def strip_or_none(x: Optional[str]):
    if x is None:
        return None
    s = str(x).strip().replace("\t", "")
    return s if s else None


def hhmm_to_hours(value) -> Decimal:
    """
    "01:30" -> Decimal("1.5"). Empty values count as zero; a bare number is
    taken as decimal hours. Raises ValueError on anything else.
    """
    s = strip_or_none(value)
    if s is None:
        return Decimal(0)
    m = _HHMM_RE.match(s)
    if m:
        hours, minutes = int(m.group(1)), int(m.group(2))
        if minutes > 59:
            raise ValueError(f"Minutos fuera de rango en '{s}'")
        return Decimal(hours) + Decimal(minutes) / Decimal(60)
    try:
        d = Decimal(s)
    except InvalidOperation:
        raise ValueError(f"Tiempo inválido '{s}' (se espera HH:MM)")
    if not d.is_finite() or d < 0:
        raise ValueError(f"Tiempo inválido '{s}'")
    return d


def format_hours(d: Decimal) -> str:
    return str(Decimal(d).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))


def normalize_hhmm(value) -> Optional[str]:
    s = strip_or_none(value)
    if s is None:
        return None
    m = _HHMM_RE.match(s)
    if not m:
        raise ValueError(f"Tiempo inválido '{s}' (se espera HH:MM)")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if minutes > 59:
        raise ValueError(f"Minutos fuera de rango en '{s}'")
    return f"{hours:02d}:{minutes:02d}"


def to_count(x, field: str) -> Optional[int]:
    if isinstance(x, str):
        x = x.replace(",", "").strip()
    if x is None or x == "":
        return None
    if isinstance(x, bool):
        raise InvalidPayload(f"{field} inválido")
    try:
        f = float(x)
    except (TypeError, ValueError):
        raise InvalidPayload(f"{field} inválido")
    if not math.isfinite(f) or f != int(f) or f < 0:
        raise InvalidPayload(f"{field} debe ser un entero >= 0")
    if f > MAX_COUNT:
        raise InvalidPayload(f"{field} supera el máximo permitido ({MAX_COUNT})")
    return int(f)


def to_date_iso(x, field: str = "record_date") -> str:
    if isinstance(x, datetime):
        return x.date().isoformat()
    if isinstance(x, date):
        return x.isoformat()
    s = strip_or_none(x)
    if not s:
        raise InvalidPayload(f"{field} es requerido en formato YYYY-MM-DD")
    # a trailing ISO time part is accepted and dropped
    m = _DATE_RE.match(s)
    if not m:
        raise InvalidPayload(f"{field} inválido, formato YYYY-MM-DD")
    try:
        return datetime.strptime(m.group(1), "%Y-%m-%d").date().isoformat()
    except ValueError:
        raise InvalidPayload(f"{field} inválido, formato YYYY-MM-DD")


def normalize_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    # keep only known fields, normalize types; total_* never gets through
    out = {}
    for k, v in payload.items():
        if k not in ALLOWED_FIELDS:
            continue
        if k in HOUR_FIELDS:
            try:
                out[k] = normalize_hhmm(v)
            except ValueError as e:
                raise InvalidPayload(f"{k}: {e}")
        elif k in COUNT_FIELDS:
            out[k] = to_count(v, k)
        elif k == "record_date":
            out[k] = to_date_iso(v)
        elif k == "tlp_no":
            tlp = strip_or_none(v)
            if not tlp:
                raise InvalidPayload("tlp_no es requerido")
            out[k] = tlp.upper()
        else:
            out[k] = strip_or_none(v)
    return out


def diff_rows(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    changed = {}
    keys = set(before.keys()) | set(after.keys())
    for k in keys:
        if before.get(k) != after.get(k):
            changed[k] = {"from": before.get(k), "to": after.get(k)}
    return changed
