"""
Tabular input handling shared by the annotation and raw-data importers.

Inputs may be a CSV/TSV path, a pandas DataFrame or a list of dicts. Headers
are normalized through per-section alias maps so vendor sheets with
differently named columns load without manual renaming.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union

import pandas as pd

from hcspipe.errors import SchemaMismatch
from hcspipe.utils.logging import get_logger

log = get_logger(__name__)

SheetInput = Union[str, Path, pd.DataFrame, Sequence[Mapping[str, Any]]]

HEADER_MAPS: Dict[str, Dict[str, str]] = {
    "plate": {
        "study": "asnm",
        "study_name": "asnm",
        "asnm": "asnm",
        "phase": "asph",
        "asph": "asph",
        "stimulus": "stimulus",
        "chemical": "stimulus",
        "treatment": "stimulus",
        "conc": "conc",
        "concentration": "conc",
        "expo_time": "expo_time",
        "exposure": "expo_time",
        "exposure_duration": "expo_time",
        "apid": "apid",
        "plate": "apid",
        "plate_id": "apid",
        "well": "well",
        "position": "well",
        "well_position": "well",
        "rowi": "rowi",
        "row": "rowi",
        "coli": "coli",
        "col": "coli",
        "column": "coli",
        "wllt": "wllt",
        "well_type": "wllt",
        "vehicle": "vehicle",
        "vehicle_id": "vehicle",
        "ecat": "ecat",
        "endpoint_category": "ecat",
        "category": "ecat",
        "box": "box",
        "box_id": "box",
        "tube": "tube",
        "tube_id": "tube",
        "wllq": "wllq",
        "well_quality": "wllq",
    },
    "assay": {
        "ecat": "ecat",
        "endpoint_category": "ecat",
        "category": "ecat",
        "aenm": "aenm",
        "endpoint": "aenm",
        "endpoint_name": "aenm",
        "channel": "channel",
        "machine_name": "channel",
    },
    "raw": {
        "apid": "apid",
        "plate": "apid",
        "plate_id": "apid",
        "box": "apid",
        "well": "well",
        "position": "well",
        "well_position": "well",
        "rowi": "rowi",
        "row": "rowi",
        "coli": "coli",
        "col": "coli",
        "column": "coli",
        "channel": "channel",
        "machine_name": "channel",
        "rval": "rval",
        "value": "rval",
        "measured_value": "rval",
    },
}

REQUIRED_COLUMNS: Dict[str, List[str]] = {
    "plate": ["asnm", "asph", "apid", "wllt", "ecat"],
    "assay": ["ecat", "aenm", "channel"],
    "raw": ["apid", "channel", "rval"],
}


def read_sheet(section: str, source: SheetInput) -> pd.DataFrame:
    """
    Load `source` into a DataFrame with normalized column names.

    Raises SchemaMismatch when required columns are missing.
    """
    if isinstance(source, pd.DataFrame):
        frame = source.copy()
    elif isinstance(source, (str, Path)):
        path = Path(source)
        if not path.is_file():
            raise FileNotFoundError(f"Sheet file for '{section}' not found: {path}")
        sep = "\t" if path.suffix.lower() in (".tsv", ".tab", ".txt") else ","
        frame = pd.read_csv(path, sep=sep, encoding="utf-8-sig")
        log.debug("Read %d row(s) for '%s' from %s", len(frame), section, path)
    else:
        frame = pd.DataFrame(list(source))

    header_map = HEADER_MAPS.get(section, {})
    renamed: Dict[str, str] = {}
    for col in frame.columns:
        key = str(col).strip()
        renamed[col] = header_map.get(key.lower(), key)
    frame = frame.rename(columns=renamed)
    frame = frame.loc[:, ~frame.columns.duplicated()]

    # Blank strings count as missing
    for col in frame.columns:
        if frame[col].dtype == object:
            frame[col] = frame[col].map(_strip_blank)

    frame = frame.dropna(how="all").reset_index(drop=True)

    required = REQUIRED_COLUMNS.get(section, [])
    missing = [col for col in required if col not in frame.columns]
    if missing:
        raise SchemaMismatch(f"{section} sheet is missing required column(s): {', '.join(missing)}")
    empty = [col for col in required if frame[col].isna().any()]
    if empty:
        raise SchemaMismatch(f"{section} sheet has empty values in required column(s): {', '.join(empty)}")
    return frame


def unique_values(frame: pd.DataFrame, column: str) -> List[Any]:
    """Distinct non-null values of a column, in first-seen order."""
    if column not in frame.columns:
        return []
    return list(dict.fromkeys(v for v in frame[column].tolist() if pd.notna(v)))


def text(value: Any) -> Any:
    """Return a stripped string, or None for missing values."""
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def iter_records(frame: pd.DataFrame) -> Iterable[Dict[str, Any]]:
    for record in frame.to_dict("records"):
        yield {k: (None if _is_missing(v) else v) for k, v in record.items()}


def _strip_blank(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _is_missing(value: Any) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False
