"""
Annotation loader: registers a study with its endpoints, channels,
chemicals and wells from plate-level and assay-level metadata sheets.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from hcspipe.db import api as db_api
from hcspipe.errors import DuplicateStudy, SchemaMismatch, UnresolvedReference
from hcspipe.importers.sheets import SheetInput, iter_records, read_sheet, text, unique_values
from hcspipe.utils.logging import get_logger
from hcspipe.utils.wells import normalize_well_type, parse_position

log = get_logger(__name__)


def load_annotations(
    conn: sqlite3.Connection,
    plate_metadata: SheetInput,
    assay_metadata: SheetInput,
    prior_asid: Optional[int] = None,
) -> int:
    """
    Register a study from plate and assay metadata and return its asid.

    A (study, phase) pair that is already registered is only accepted when
    `prior_asid` names it explicitly; the existing identifiers are then kept
    and dimension rows are upserted. All rows for the study are written in
    one transaction.
    """
    plate = read_sheet("plate", plate_metadata)
    assay = read_sheet("assay", assay_metadata)

    asnm, asph = _study_key(plate)
    plate_categories = {text(v) for v in unique_values(plate, "ecat")}
    endpoints = _build_endpoints(assay, plate_categories)
    wells = _build_wells(plate)
    chemicals = [text(s) for s in unique_values(plate, "stimulus")]

    for category in sorted(plate_categories - {ep["ecat"] for ep in endpoints}):
        log.warning("Endpoint category '%s' has wells but no assay metadata; its wells carry no endpoints.", category)

    existing = db_api.find_study(conn, asnm, asph)
    if prior_asid is None:
        if existing is not None:
            raise DuplicateStudy(
                f"Study '{asnm}' phase '{asph}' is already registered as asid={existing['asid']}; "
                "pass the prior asid to update it."
            )
    else:
        prior = db_api.get_study(conn, prior_asid)
        if prior is None:
            raise UnresolvedReference(f"No study with asid={prior_asid}.")
        if (prior["asnm"], prior["asph"]) != (asnm, asph):
            raise UnresolvedReference(
                f"asid={prior_asid} is study '{prior['asnm']}' phase '{prior['asph']}', "
                f"not '{asnm}' phase '{asph}'."
            )
        log.info("Updating annotations of existing study asid=%s", prior_asid)

    return db_api.insert_annotations(
        conn,
        asnm=asnm,
        asph=asph,
        endpoints=endpoints,
        chemicals=chemicals,
        wells=wells,
        prior_asid=prior_asid,
    )


def _study_key(plate: pd.DataFrame) -> Tuple[str, str]:
    pairs = {(text(r["asnm"]), text(r["asph"])) for r in iter_records(plate)}
    if len(pairs) != 1:
        listed = ", ".join(f"{n}/{p}" for n, p in sorted(pairs))
        raise SchemaMismatch(f"Plate metadata must describe exactly one study/phase, found: {listed or 'none'}")
    return pairs.pop()


def _build_endpoints(assay: pd.DataFrame, plate_categories: set) -> List[Dict[str, Any]]:
    """
    Group assay metadata rows into endpoints with their channel lists.
    """
    endpoints: Dict[str, Dict[str, Any]] = {}
    channel_owner: Dict[str, str] = {}
    for row in iter_records(assay):
        ecat, aenm, channel = text(row["ecat"]), text(row["aenm"]), text(row["channel"])
        if ecat not in plate_categories:
            raise SchemaMismatch(
                f"Channel '{channel}' (endpoint '{aenm}') belongs to category '{ecat}', "
                f"which does not appear in the plate metadata."
            )
        owner = channel_owner.setdefault(channel, aenm)
        if owner != aenm:
            raise SchemaMismatch(f"Channel '{channel}' is mapped to both '{owner}' and '{aenm}'.")
        entry = endpoints.setdefault(aenm, {"aenm": aenm, "ecat": ecat, "channels": []})
        if entry["ecat"] != ecat:
            raise SchemaMismatch(f"Endpoint '{aenm}' is listed under categories '{entry['ecat']}' and '{ecat}'.")
        if channel not in entry["channels"]:
            entry["channels"].append(channel)
    if not endpoints:
        raise SchemaMismatch("Assay metadata defines no endpoints.")
    return list(endpoints.values())


def _build_wells(plate: pd.DataFrame) -> List[Dict[str, Any]]:
    wells: List[Dict[str, Any]] = []
    seen: Dict[Tuple[str, int, int], int] = {}
    for idx, row in enumerate(iter_records(plate)):
        apid = text(row["apid"])
        rowi, coli = _position(row, idx)
        key = (apid, rowi, coli)
        if key in seen:
            raise SchemaMismatch(
                f"Plate metadata rows {seen[key] + 1} and {idx + 1} both describe plate '{apid}' well {rowi},{coli}."
            )
        seen[key] = idx

        wllt = normalize_well_type(row.get("wllt"))
        if wllt is None:
            raise SchemaMismatch(f"Unknown well type '{row.get('wllt')}' in plate metadata row {idx + 1}.")

        wells.append(
            {
                "apid": apid,
                "rowi": rowi,
                "coli": coli,
                "wllt": wllt,
                "wllq": _quality(row.get("wllq"), idx),
                "stimulus": text(row.get("stimulus")),
                "conc": _float(row.get("conc"), "conc", idx),
                "expo_time": _float(row.get("expo_time"), "expo_time", idx),
                "vehicle": text(row.get("vehicle")),
                "ecat": text(row.get("ecat")),
                "box": text(row.get("box")),
                "tube": text(row.get("tube")),
            }
        )
    return wells


def _position(row: Dict[str, Any], idx: int) -> Tuple[int, int]:
    if row.get("well") is not None:
        try:
            return parse_position(row["well"])
        except ValueError as exc:
            raise SchemaMismatch(f"Plate metadata row {idx + 1}: {exc}") from exc
    if row.get("rowi") is not None and row.get("coli") is not None:
        try:
            return int(row["rowi"]), int(row["coli"])
        except (TypeError, ValueError) as exc:
            raise SchemaMismatch(f"Plate metadata row {idx + 1} has a non-integer row/column.") from exc
    raise SchemaMismatch(f"Plate metadata row {idx + 1} has no well position.")


def _quality(value: Any, idx: int) -> int:
    if value is None:
        return 1
    try:
        flag = int(float(value))
    except (TypeError, ValueError) as exc:
        raise SchemaMismatch(f"Invalid wllq '{value}' in plate metadata row {idx + 1}.") from exc
    if flag not in (0, 1):
        raise SchemaMismatch(f"wllq must be 0 or 1, got {value!r} in plate metadata row {idx + 1}.")
    return flag


def _float(value: Any, name: str, idx: int) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise SchemaMismatch(f"Invalid {name} '{value}' in plate metadata row {idx + 1}.") from exc
