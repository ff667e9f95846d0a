"""
Data preparer: resolves raw vendor measurements against a registered study
and writes them as level-0 records. Also hosts well masking.
"""

from __future__ import annotations

import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from hcspipe.db import api as db_api
from hcspipe.errors import SchemaMismatch, UnresolvedReference
from hcspipe.importers.sheets import SheetInput, iter_records, read_sheet, text
from hcspipe.utils.logging import get_logger
from hcspipe.utils.wells import parse_position

log = get_logger(__name__)

LEVEL0_COLUMNS = ["acid", "aeid", "waid", "rval", "wllq", "apid", "rowi", "coli", "channel"]

# Problems listed in an UnresolvedReference message before truncation.
_MAX_REPORTED = 10


def prepare_for_load(conn: sqlite3.Connection, asid: int, raw_rows: SheetInput) -> pd.DataFrame:
    """
    Join raw rows to the wells and channels registered under `asid`.

    Every row must resolve to exactly one well (by plate id and position) and
    one component (by channel name), and no two rows may land on the same
    (component, well). Any failure raises UnresolvedReference listing the
    offending rows; nothing is returned partially.
    """
    if db_api.get_study(conn, asid) is None:
        raise UnresolvedReference(f"No study with asid={asid}.")

    raw = read_sheet("raw", raw_rows)
    wells = db_api.fetch_wells_frame(conn, asid)
    comps = db_api.fetch_components_frame(conn, asid)

    well_index: Dict[Tuple[str, int, int], List[Dict[str, Any]]] = {}
    for well in iter_records(wells):
        key = (str(well["apid"]), int(well["rowi"]), int(well["coli"]))
        well_index.setdefault(key, []).append(well)
    channel_index: Dict[str, List[Dict[str, Any]]] = {}
    for comp in iter_records(comps):
        channel_index.setdefault(str(comp["machine_name"]), []).append(comp)

    problems: List[str] = []
    records: List[Dict[str, Any]] = []
    seen: Dict[Tuple[int, int], int] = {}
    for idx, row in enumerate(iter_records(raw)):
        line = idx + 1
        apid = text(row["apid"])
        channel = text(row["channel"])
        try:
            rowi, coli = _position(row)
        except ValueError as exc:
            raise SchemaMismatch(f"Raw data row {line}: {exc}") from exc
        try:
            rval = float(row["rval"])
        except (TypeError, ValueError) as exc:
            raise SchemaMismatch(f"Raw data row {line}: non-numeric value {row['rval']!r}.") from exc

        well_hits = well_index.get((apid, rowi, coli), [])
        comp_hits = channel_index.get(channel, [])
        if len(well_hits) != 1:
            problems.append(f"row {line}: plate '{apid}' well {rowi},{coli} matched {len(well_hits)} wells")
            continue
        if len(comp_hits) != 1:
            problems.append(f"row {line}: channel '{channel}' matched {len(comp_hits)} components")
            continue
        well, comp = well_hits[0], comp_hits[0]
        if well.get("ecat") not in (None, comp["ecat"]):
            problems.append(
                f"row {line}: channel '{channel}' ({comp['ecat']}) is not measured on "
                f"plate '{apid}' ({well['ecat']})"
            )
            continue
        key = (int(comp["acid"]), int(well["waid"]))
        if key in seen:
            problems.append(f"row {line}: duplicates row {seen[key]} for channel '{channel}' on plate '{apid}' well {rowi},{coli}")
            continue
        seen[key] = line

        records.append(
            {
                "acid": int(comp["acid"]),
                "aeid": int(comp["aeid"]),
                "waid": int(well["waid"]),
                "rval": rval,
                "wllq": int(well["wllq"]),
                "apid": apid,
                "rowi": rowi,
                "coli": coli,
                "channel": channel,
            }
        )

    if problems:
        shown = "; ".join(problems[:_MAX_REPORTED])
        more = f" (+{len(problems) - _MAX_REPORTED} more)" if len(problems) > _MAX_REPORTED else ""
        raise UnresolvedReference(f"{len(problems)} raw row(s) could not be resolved: {shown}{more}")

    log.info("Prepared %d level-0 record(s) for asid=%s", len(records), asid)
    return pd.DataFrame(records, columns=LEVEL0_COLUMNS)


def load_level0(conn: sqlite3.Connection, asid: int, records: pd.DataFrame) -> int:
    """Persist prepared level-0 records; every well must belong to `asid`."""
    if records.empty:
        return 0
    known = set(db_api.fetch_wells_frame(conn, asid)["waid"].astype(int))
    stray = sorted(set(records["waid"].astype(int)) - known)
    if stray:
        raise UnresolvedReference(f"Level-0 records reference wells outside asid={asid}: {stray[:_MAX_REPORTED]}")
    return db_api.write_lvl0(conn, records)


def load_raw_data(conn: sqlite3.Connection, asid: int, raw_rows: SheetInput) -> int:
    """Prepare and persist raw rows in one call; returns the number of records written."""
    return load_level0(conn, asid, prepare_for_load(conn, asid, raw_rows))


def mask_wells(
    conn: sqlite3.Connection,
    asid: int,
    *,
    waids: Optional[Iterable[int]] = None,
    apid: Optional[str] = None,
    positions: Optional[Iterable[str]] = None,
    wllq: int = 0,
) -> int:
    """
    Flag wells of a study as unusable (wllq=0) or usable again (wllq=1).

    Wells are selected by id, by plate, or by plate plus positions. Raw
    level-0 rows are kept; derived levels drop masked wells on re-run.
    """
    wells = db_api.fetch_wells_frame(conn, asid)
    selected = pd.Series(False, index=wells.index)
    if waids is not None:
        ids = {int(w) for w in waids}
        unknown = ids - set(wells["waid"].astype(int))
        if unknown:
            raise UnresolvedReference(f"Well id(s) not in study asid={asid}: {sorted(unknown)}")
        selected |= wells["waid"].isin(ids)
    if apid is not None:
        on_plate = wells["apid"] == str(apid)
        if not on_plate.any():
            raise UnresolvedReference(f"Plate '{apid}' not in study asid={asid}.")
        if positions is None:
            selected |= on_plate
        else:
            for pos in positions:
                rowi, coli = parse_position(pos)
                hit = on_plate & (wells["rowi"] == rowi) & (wells["coli"] == coli)
                if not hit.any():
                    raise UnresolvedReference(f"Plate '{apid}' has no well {pos}.")
                selected |= hit
    elif positions is not None:
        raise ValueError("Positions require a plate id.")

    targets = wells.loc[selected, "waid"].astype(int).tolist()
    if not targets:
        log.warning("mask_wells selected no wells for asid=%s", asid)
        return 0
    return db_api.set_well_quality(conn, targets, wllq)


def _position(row: Dict[str, Any]) -> Tuple[int, int]:
    if row.get("well") is not None:
        return parse_position(row["well"])
    if row.get("rowi") is not None and row.get("coli") is not None:
        return int(row["rowi"]), int(row["coli"])
    raise ValueError("no well position")
