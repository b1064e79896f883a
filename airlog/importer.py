import io
from typing import Any, Dict, List, Tuple

import pandas as pd

from .errors import InvalidPayload
from .utils import COUNT_FIELDS, HOUR_FIELDS, normalize_hhmm, to_count

EXPECTED_COLS = [
    'Record Date', 'TLP No', 'Hours Flown Airframe', 'Hours Flown Engine', 'Landings',
    'TC', 'No Of Starts', 'GG Cycle', 'FT Cycle', 'Usage', 'Remarks'
]

COLUMN_MAP = {
    'Record Date': 'record_date',
    'TLP No': 'tlp_no',
    'Hours Flown Airframe': 'hours_flown_airframe',
    'Hours Flown Engine': 'hours_flown_engine',
    'Landings': 'landings',
    'TC': 'tc',
    'No Of Starts': 'no_of_starts',
    'GG Cycle': 'gg_cycle',
    'FT Cycle': 'ft_cycle',
    'Usage': 'usage',
    'Remarks': 'remarks',
}


def strip_or_none(x):
    if pd.isna(x):
        return None
    s = str(x).strip().replace("\t", "")
    return s if s != "" else None


def to_date_or_none(x):
    if x is None or pd.isna(x) or str(x).strip() == "":
        return None
    ts = pd.to_datetime(x, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date().isoformat()


def _val(row, field):
    v = row[field]
    return None if v is None or (not isinstance(v, str) and pd.isna(v)) else v


def sanitize_dataframe(df: pd.DataFrame) -> pd.DataFrame:
    san = pd.DataFrame()
    san["record_date_raw"] = df["Record Date"].map(strip_or_none)
    san["record_date"] = san["record_date_raw"].map(to_date_or_none)
    san["tlp_no"] = df["TLP No"].map(lambda x: strip_or_none(x.upper() if isinstance(x, str) else x))
    for col, field in COLUMN_MAP.items():
        if field in HOUR_FIELDS or field in ("usage", "remarks"):
            san[field] = df[col].map(strip_or_none)
        elif field in COUNT_FIELDS:
            san[field] = df[col]
    return san


def validate_rows(san: pd.DataFrame) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split sanitized rows into clean payloads and per-field errors."""
    valid: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    def add_error(i, field, msg):
        errors.append({"row_index": int(i), "field": field, "message": msg})

    for i, row in san.iterrows():
        n_before = len(errors)
        if not _val(row, "record_date"):
            add_error(i, "record_date", f"Fecha inválida '{row['record_date_raw']}'.")
        if not _val(row, "tlp_no"):
            add_error(i, "tlp_no", "TLP No es requerido.")
        rec: Dict[str, Any] = {
            "row_index": int(i),
            "record_date": _val(row, "record_date"),
            "tlp_no": _val(row, "tlp_no"),
            "usage": _val(row, "usage"),
            "remarks": _val(row, "remarks"),
        }
        for field in HOUR_FIELDS:
            try:
                rec[field] = normalize_hhmm(_val(row, field))
            except ValueError as e:
                add_error(i, field, str(e))
        for field in COUNT_FIELDS:
            try:
                rec[field] = to_count(_val(row, field), field)
            except InvalidPayload as e:
                add_error(i, field, e.message)
        if len(errors) == n_before:
            valid.append(rec)
    return valid, errors


def parse_csv_bytes(content: bytes) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], int]:
    try:
        df = pd.read_csv(io.BytesIO(content), dtype={"TLP No": str, "Record Date": str})
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise InvalidPayload(f"CSV ilegible: {e}")
    missing = [c for c in EXPECTED_COLS if c not in df.columns]
    if missing:
        raise InvalidPayload(f"Faltan columnas esperadas: {missing}")
    san = sanitize_dataframe(df)
    valid, errors = validate_rows(san)
    return valid, errors, len(san)
