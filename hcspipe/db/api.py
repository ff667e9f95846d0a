# hcspipe/db/api.py
"""
This module provides a minimal, stateless API for database interactions:
schema setup, dimension registration, level reads/writes, method catalog
bookkeeping, noise bands and run tracking.
"""

import json
import math
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from hcspipe.db.schema import (
    ALL_INDEXES,
    ALL_TABLES,
    LEVEL_COLUMNS,
    LEVEL_TABLES,
    QUERYABLE_COLUMNS,
)
from hcspipe.errors import StoreIntegrityViolation
from hcspipe.utils.logging import get_logger

log = get_logger(__name__)


_LOCK_RETRY_MESSAGES: tuple[str, ...] = (
    "database is locked",
    "database is busy",
    "database is in use",
)


def _is_lock_error(err: sqlite3.Error) -> bool:
    """Return True if the sqlite error looks like a lock/busy condition."""
    msg = str(err).lower()
    return any(token in msg for token in _LOCK_RETRY_MESSAGES)


def _run_with_retry(
    conn: sqlite3.Connection,
    operation: Callable[[], Any],
    description: str,
    *,
    retries: int = 5,
    initial_delay: float = 0.1,
    backoff: float = 2.0,
) -> Any:
    """
    Execute `operation`, retrying when SQLite reports a lock/busy error.

    Retries are exponential-backoff with jitter-free timing to keep behaviour
    predictable for batch jobs.
    """
    delay = initial_delay
    last_error: Optional[sqlite3.Error] = None
    for attempt in range(1, retries + 1):
        try:
            return operation()
        except sqlite3.OperationalError as err:
            last_error = err
            if not _is_lock_error(err):
                raise
            if attempt == retries:
                break
            log.warning(
                "SQLite busy during %s (attempt %s/%s); retrying in %.2fs",
                description,
                attempt,
                retries,
                delay,
            )
            try:
                conn.rollback()
            except sqlite3.Error:
                log.debug("Rollback after busy error failed during %s", description)
            time.sleep(delay)
            delay *= backoff
    if last_error is not None:
        raise last_error


def _write(conn: sqlite3.Connection, operation: Callable[[], Any], description: str) -> Any:
    """
    Run a write with lock retries; integrity breaches become StoreIntegrityViolation.
    """
    try:
        return _run_with_retry(conn, operation, description)
    except sqlite3.IntegrityError as e:
        log.error("Integrity violation during %s: %s", description, e)
        raise StoreIntegrityViolation(f"{description}: {e}") from e


def _py(value: Any) -> Any:
    """Convert numpy scalars and NaN into values sqlite3 can bind."""
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def _records(frame: pd.DataFrame, columns: Sequence[str]) -> List[Dict[str, Any]]:
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise ValueError(f"Frame is missing column(s): {', '.join(missing)}")
    rows: List[Dict[str, Any]] = []
    for record in frame.loc[:, list(columns)].to_dict("records"):
        rows.append({key: _py(val) for key, val in record.items()})
    return rows


def connect(db_path: Path) -> sqlite3.Connection:
    """
    Establishes a connection to the SQLite database.

    Args:
        db_path: The file path to the SQLite database.

    Returns:
        A sqlite3.Connection object.
    """
    try:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        # Ensure FK constraints (including ON DELETE CASCADE) are enforced
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        log.debug("Database connection established to %s", db_path)
        return conn
    except sqlite3.Error as e:
        log.exception("Database connection failed: %s", e)
        raise


def init_schema(conn: sqlite3.Connection):
    """
    Initializes the database schema by creating all tables and indexes.
    """
    try:
        with conn:
            for table_sql in ALL_TABLES:
                conn.execute(table_sql)
            for index_sql in ALL_INDEXES:
                conn.execute(index_sql)
        log.debug("Database schema initialized successfully.")
    except sqlite3.Error as e:
        log.exception("Schema initialization failed: %s", e)
        raise


# --- Generic reads ----------------------------------------------------------

def fetch_rows(conn: sqlite3.Connection, table: str, **filters: Any) -> List[sqlite3.Row]:
    """
    Return rows of `table` matching every column=value filter.

    Only tables and columns listed in QUERYABLE_COLUMNS may be queried. A
    filter value of None matches NULL. No match returns an empty list.
    """
    allowed = QUERYABLE_COLUMNS.get(table)
    if allowed is None:
        raise ValueError(f"Table '{table}' is not queryable.")
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in filters.items():
        if column not in allowed:
            raise ValueError(f"Unknown field '{column}' for table '{table}'.")
        if value is None:
            clauses.append(f"{column} IS NULL")
        else:
            clauses.append(f"{column} = ?")
            params.append(_py(value))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"SELECT * FROM {table} {where} ORDER BY 1"
    return conn.execute(sql, params).fetchall()


def list_studies(conn: sqlite3.Connection, **filters: Any) -> List[Dict[str, Any]]:
    """Return (asid, asnm, asph) dicts for registered studies, optionally filtered."""
    rows = fetch_rows(conn, "studies", **filters)
    return [{"asid": int(r["asid"]), "asnm": r["asnm"], "asph": r["asph"]} for r in rows]


def get_study(conn: sqlite3.Connection, asid: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM studies WHERE asid = ?", (int(asid),)).fetchone()


def find_study(conn: sqlite3.Connection, asnm: str, asph: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM studies WHERE asnm = ? AND asph = ?",
        (str(asnm), str(asph)),
    ).fetchone()


def fetch_endpoints(conn: sqlite3.Connection, asid: int) -> List[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM assay_endpoints WHERE asid = ? ORDER BY aeid",
        (int(asid),),
    ).fetchall()


def fetch_wells_frame(conn: sqlite3.Connection, asid: int) -> pd.DataFrame:
    return pd.read_sql_query(
        "SELECT * FROM wells WHERE asid = ? ORDER BY waid",
        conn,
        params=(int(asid),),
    )


def fetch_components_frame(conn: sqlite3.Connection, asid: int) -> pd.DataFrame:
    sql = """
        SELECT c.acid, c.aeid, c.machine_name, e.aenm, e.ecat
        FROM assay_components c
        JOIN assay_endpoints e ON e.aeid = c.aeid
        WHERE c.asid = ?
        ORDER BY c.acid
    """
    return pd.read_sql_query(sql, conn, params=(int(asid),))


# --- Annotation registration ------------------------------------------------

def insert_annotations(
    conn: sqlite3.Connection,
    *,
    asnm: str,
    asph: str,
    endpoints: Iterable[Mapping[str, Any]],
    chemicals: Iterable[str],
    wells: Iterable[Mapping[str, Any]],
    prior_asid: Optional[int] = None,
) -> int:
    """
    Register a study and all of its dimension rows in a single transaction.

    With `prior_asid` the existing study is reused and rows are upserted so
    previously allocated aeid/acid/chid/waid values are preserved.

    Endpoints are dicts of {aenm, ecat, channels}; wells carry the wells
    table columns plus a `stimulus` key resolved to chid here.
    """
    endpoints = list(endpoints)
    chemicals = list(chemicals)
    wells = list(wells)

    def _op() -> int:
        with conn:
            if prior_asid is None:
                cur = conn.execute(
                    "INSERT INTO studies (asnm, asph) VALUES (?, ?)",
                    (asnm, asph),
                )
                asid = int(cur.lastrowid)
            else:
                asid = int(prior_asid)

            for ep in endpoints:
                conn.execute(
                    """
                    INSERT INTO assay_endpoints (asid, aenm, ecat) VALUES (?, ?, ?)
                    ON CONFLICT(asid, aenm) DO UPDATE SET ecat = excluded.ecat
                    """,
                    (asid, ep["aenm"], ep["ecat"]),
                )
                aeid = conn.execute(
                    "SELECT aeid FROM assay_endpoints WHERE asid = ? AND aenm = ?",
                    (asid, ep["aenm"]),
                ).fetchone()[0]
                for channel in ep.get("channels") or []:
                    conn.execute(
                        """
                        INSERT INTO assay_components (aeid, asid, machine_name) VALUES (?, ?, ?)
                        ON CONFLICT(asid, machine_name) DO UPDATE SET aeid = excluded.aeid
                        """,
                        (aeid, asid, channel),
                    )

            conn.executemany(
                """
                INSERT INTO chemicals (asid, stimulus) VALUES (?, ?)
                ON CONFLICT(asid, stimulus) DO NOTHING
                """,
                [(asid, stim) for stim in chemicals],
            )
            chid_map = {
                row["stimulus"]: int(row["chid"])
                for row in conn.execute(
                    "SELECT chid, stimulus FROM chemicals WHERE asid = ?", (asid,)
                ).fetchall()
            }

            well_rows = []
            for well in wells:
                stim = well.get("stimulus")
                row = {k: _py(well.get(k)) for k in (
                    "apid", "rowi", "coli", "wllt", "wllq", "conc",
                    "expo_time", "vehicle", "ecat", "box", "tube",
                )}
                row["asid"] = asid
                row["chid"] = chid_map.get(stim) if stim not in (None, "") else None
                well_rows.append(row)
            conn.executemany(
                """
                INSERT INTO wells (
                    asid, apid, rowi, coli, wllt, wllq, chid, conc,
                    expo_time, vehicle, ecat, box, tube
                ) VALUES (
                    :asid, :apid, :rowi, :coli, :wllt, :wllq, :chid, :conc,
                    :expo_time, :vehicle, :ecat, :box, :tube
                )
                ON CONFLICT(asid, apid, rowi, coli) DO UPDATE SET
                    wllt = excluded.wllt,
                    wllq = excluded.wllq,
                    chid = excluded.chid,
                    conc = excluded.conc,
                    expo_time = excluded.expo_time,
                    vehicle = excluded.vehicle,
                    ecat = excluded.ecat,
                    box = excluded.box,
                    tube = excluded.tube
                """,
                well_rows,
            )
            conn.execute(
                """
                UPDATE lvl0 SET wllq = (SELECT w.wllq FROM wells w WHERE w.waid = lvl0.waid)
                WHERE waid IN (SELECT waid FROM wells WHERE asid = ?)
                """,
                (asid,),
            )
            return asid

    asid = _write(conn, _op, "insert_annotations")
    log.info(
        "Registered study '%s' phase '%s' (asid=%s): %d endpoint(s), %d chemical(s), %d well(s)",
        asnm, asph, asid, len(endpoints), len(chemicals), len(wells),
    )
    return asid


# --- Level 0 and well quality ----------------------------------------------

def write_lvl0(conn: sqlite3.Connection, records: pd.DataFrame) -> int:
    """
    Insert or replace level-0 rows keyed by (acid, waid) in one transaction.
    """
    rows = _records(records, ("acid", "waid", "rval", "wllq"))
    if not rows:
        return 0
    sql = """
        INSERT INTO lvl0 (acid, waid, rval, wllq) VALUES (:acid, :waid, :rval, :wllq)
        ON CONFLICT(acid, waid) DO UPDATE SET
            rval = excluded.rval,
            wllq = excluded.wllq,
            created_at = datetime('now')
    """

    def _op() -> int:
        with conn:
            conn.executemany(sql, rows)
        return len(rows)

    count = _write(conn, _op, "write_lvl0")
    log.info("Wrote %d level-0 record(s).", count)
    return count


def set_well_quality(conn: sqlite3.Connection, waids: Iterable[int], wllq: int) -> int:
    """
    Set the quality flag on wells and on their level-0 copies. Rows are kept.
    """
    ids = [int(w) for w in waids]
    if not ids:
        return 0
    flag = 1 if int(wllq) else 0

    def _op() -> int:
        with conn:
            placeholders = ",".join("?" for _ in ids)
            cur = conn.execute(
                f"UPDATE wells SET wllq = ? WHERE waid IN ({placeholders})",
                [flag, *ids],
            )
            conn.execute(
                f"UPDATE lvl0 SET wllq = ? WHERE waid IN ({placeholders})",
                [flag, *ids],
            )
            return cur.rowcount or 0

    updated = _write(conn, _op, "set_well_quality")
    log.info("Set wllq=%d on %d well(s).", flag, updated)
    return updated


# --- Level reads/writes -----------------------------------------------------

_WELL_COLUMNS = "w.apid, w.rowi, w.coli, w.wllt, w.chid, w.conc"


def fetch_level_input(conn: sqlite3.Connection, aeid: int, level: int) -> pd.DataFrame:
    """
    Load the persisted rows of `level` for one endpoint as transform input.

    Per-well levels are joined with well metadata and restricted to usable
    wells; masked wells never reach a transform.
    """
    aeid = int(aeid)
    if level == 0:
        sql = f"""
            SELECT l.acid, l.waid, l.rval, {_WELL_COLUMNS}
            FROM lvl0 l
            JOIN assay_components c ON c.acid = l.acid
            JOIN wells w ON w.waid = l.waid
            WHERE c.aeid = ? AND l.wllq = 1 AND w.wllq = 1
            ORDER BY l.waid, l.acid
        """
    elif level in (1, 2, 3, 4):
        extra = ", l.bval" if level == 1 else (", l.hitc" if level == 4 else "")
        sql = f"""
            SELECT l.waid, l.resp{extra}, {_WELL_COLUMNS}
            FROM {LEVEL_TABLES[level]} l
            JOIN wells w ON w.waid = l.waid
            WHERE l.aeid = ? AND w.wllq = 1
            ORDER BY l.waid
        """
    elif level in (5, 6):
        cols = ", ".join(f"l.{c}" for c in LEVEL_COLUMNS[level])
        sql = f"""
            SELECT {cols}
            FROM {LEVEL_TABLES[level]} l
            WHERE l.aeid = ?
            ORDER BY l.id
        """
    else:
        raise ValueError(f"Unknown level: {level}")
    return pd.read_sql_query(sql, conn, params=(aeid,))


def fetch_level_rows(conn: sqlite3.Connection, aeid: int, level: int) -> pd.DataFrame:
    """Return the stored columns of a level table for one endpoint, without joins."""
    if level == 0:
        sql = """
            SELECT l.acid, l.waid, l.rval, l.wllq
            FROM lvl0 l JOIN assay_components c ON c.acid = l.acid
            WHERE c.aeid = ?
            ORDER BY l.waid, l.acid
        """
    else:
        cols = ", ".join(("aeid",) + LEVEL_COLUMNS[level])
        order = "waid" if "waid" in LEVEL_COLUMNS[level] else "chid"
        sql = f"SELECT {cols} FROM {LEVEL_TABLES[level]} WHERE aeid = ? ORDER BY {order}"
    return pd.read_sql_query(sql, conn, params=(int(aeid),))


def level_row_count(conn: sqlite3.Connection, aeid: int, level: int) -> int:
    """Number of persisted rows for an endpoint at a level (level 0 via components)."""
    if level == 0:
        row = conn.execute(
            """
            SELECT COUNT(*) FROM lvl0 l
            JOIN assay_components c ON c.acid = l.acid
            WHERE c.aeid = ?
            """,
            (int(aeid),),
        ).fetchone()
    else:
        row = conn.execute(
            f"SELECT COUNT(*) FROM {LEVEL_TABLES[level]} WHERE aeid = ?",
            (int(aeid),),
        ).fetchone()
    return int(row[0]) if row else 0


_UPSERT_NOISE_BAND_DELETE = "DELETE FROM noise_bands WHERE aeid = ? AND scope = ? AND lvl = ?"
_UPSERT_NOISE_BAND_INSERT = """
    INSERT INTO noise_bands (aeid, scope, lvl, cutoff, mad, median, n_ctrl, method)
    VALUES (:aeid, :scope, :lvl, :cutoff, :mad, :median, :n_ctrl, :method)
"""


def _put_noise_band(conn: sqlite3.Connection, band: Mapping[str, Any]) -> None:
    row = {k: _py(band.get(k)) for k in ("aeid", "scope", "lvl", "cutoff", "mad", "median", "n_ctrl", "method")}
    conn.execute(_UPSERT_NOISE_BAND_DELETE, (row["aeid"], row["scope"], row["lvl"]))
    conn.execute(_UPSERT_NOISE_BAND_INSERT, row)


def replace_level_rows(
    conn: sqlite3.Connection,
    aeid: int,
    level: int,
    frame: pd.DataFrame,
    *,
    noise_band: Optional[Mapping[str, Any]] = None,
) -> int:
    """
    Replace one endpoint's rows at one level in a single transaction.

    Other endpoints and other levels are never touched. A noise band
    produced alongside the rows is committed in the same transaction.
    """
    if level not in LEVEL_COLUMNS:
        raise ValueError(f"Level {level} cannot be written by the level writer.")
    table = LEVEL_TABLES[level]
    columns = LEVEL_COLUMNS[level]
    rows = _records(frame, columns)
    for row in rows:
        row["aeid"] = int(aeid)
    col_sql = ", ".join(("aeid",) + columns)
    val_sql = ", ".join(f":{c}" for c in ("aeid",) + columns)
    insert_sql = f"INSERT INTO {table} ({col_sql}) VALUES ({val_sql})"

    def _op() -> int:
        with conn:
            conn.execute(f"DELETE FROM {table} WHERE aeid = ?", (int(aeid),))
            if rows:
                conn.executemany(insert_sql, rows)
            if noise_band is not None:
                _put_noise_band(conn, noise_band)
        return len(rows)

    count = _write(conn, _op, f"replace_level_rows(aeid={aeid}, level={level})")
    log.debug("Replaced level %d rows for aeid=%s (%d row(s)).", level, aeid, count)
    return count


# --- Noise bands ------------------------------------------------------------

def fetch_control_values(
    conn: sqlite3.Connection,
    aeid: int,
    *,
    scope: str = "study",
    level: int = 1,
) -> np.ndarray:
    """
    Values of usable negative-control wells for an endpoint at a per-well level.

    scope='study' restricts to this endpoint; scope='global' pools every
    endpoint (across studies) that shares this endpoint's name.
    """
    if scope == "study":
        target = "= ?"
    elif scope == "global":
        target = """IN (
            SELECT e2.aeid FROM assay_endpoints e1
            JOIN assay_endpoints e2 ON e2.aenm = e1.aenm
            WHERE e1.aeid = ?
        )"""
    else:
        raise ValueError(f"Unknown noise band scope: {scope!r}")

    if level == 0:
        sql = f"""
            SELECT l.rval AS val
            FROM lvl0 l
            JOIN assay_components c ON c.acid = l.acid
            JOIN wells w ON w.waid = l.waid
            WHERE c.aeid {target} AND w.wllt = 'n' AND w.wllq = 1 AND l.wllq = 1
        """
    elif level in (1, 2, 3, 4):
        sql = f"""
            SELECT l.resp AS val
            FROM {LEVEL_TABLES[level]} l
            JOIN wells w ON w.waid = l.waid
            WHERE l.aeid {target} AND w.wllt = 'n' AND w.wllq = 1
        """
    else:
        raise ValueError(f"Control values are only defined for per-well levels, not {level}.")
    rows = conn.execute(sql, (int(aeid),)).fetchall()
    values = [row["val"] for row in rows if row["val"] is not None]
    return np.asarray(values, dtype=float)


def upsert_noise_band(conn: sqlite3.Connection, band: Mapping[str, Any]) -> None:
    """Persist a noise band, replacing the prior value for (aeid, scope, lvl)."""

    def _op() -> None:
        with conn:
            _put_noise_band(conn, band)

    _write(conn, _op, "upsert_noise_band")
    log.debug(
        "Stored noise band for aeid=%s scope=%s level=%s", band.get("aeid"), band.get("scope"), band.get("lvl")
    )


def fetch_noise_band(
    conn: sqlite3.Connection,
    aeid: int,
    scope: Optional[str] = None,
    *,
    level: Optional[int] = None,
) -> Optional[sqlite3.Row]:
    """Most recently computed noise band for an endpoint (optionally by scope and level)."""
    sql = "SELECT * FROM noise_bands WHERE aeid = ?"
    params: List[Any] = [int(aeid)]
    if scope is not None:
        sql += " AND scope = ?"
        params.append(scope)
    if level is not None:
        sql += " AND lvl = ?"
        params.append(int(level))
    return conn.execute(sql + " ORDER BY id DESC LIMIT 1", params).fetchone()


# --- Method catalog and assignments ----------------------------------------

def sync_methods(conn: sqlite3.Connection, entries: Iterable[Mapping[str, Any]]) -> int:
    """
    Mirror the in-process method catalog into the methods table.
    """
    rows = [
        {
            "lvl": int(e["lvl"]),
            "mthd": str(e["mthd"]),
            "descr": e.get("descr"),
            "is_default": 1 if e.get("is_default") else 0,
        }
        for e in entries
    ]
    sql = """
        INSERT INTO methods (lvl, mthd, descr, is_default)
        VALUES (:lvl, :mthd, :descr, :is_default)
        ON CONFLICT(lvl, mthd) DO UPDATE SET
            descr = excluded.descr,
            is_default = excluded.is_default
    """

    def _op() -> int:
        with conn:
            conn.executemany(sql, rows)
        return len(rows)

    return _write(conn, _op, "sync_methods")


def fetch_method_id(conn: sqlite3.Connection, lvl: int, mthd: str) -> Optional[int]:
    row = conn.execute(
        "SELECT mthd_id FROM methods WHERE lvl = ? AND mthd = ?",
        (int(lvl), str(mthd)),
    ).fetchone()
    return int(row[0]) if row else None


def upsert_method_assignment(conn: sqlite3.Connection, aeid: int, lvl: int, mthd_id: int) -> None:
    sql = """
        INSERT INTO method_assignments (aeid, lvl, mthd_id) VALUES (?, ?, ?)
        ON CONFLICT(aeid, lvl) DO UPDATE SET
            mthd_id = excluded.mthd_id,
            created_at = datetime('now')
    """

    def _op() -> None:
        with conn:
            conn.execute(sql, (int(aeid), int(lvl), int(mthd_id)))

    _write(conn, _op, "upsert_method_assignment")


def insert_missing_assignments(conn: sqlite3.Connection, rows: Iterable[Sequence[int]]) -> int:
    """
    Insert (aeid, lvl, mthd_id) bindings where none exists; existing ones are kept.
    """
    rows = [tuple(int(v) for v in r) for r in rows]
    if not rows:
        return 0
    sql = """
        INSERT INTO method_assignments (aeid, lvl, mthd_id) VALUES (?, ?, ?)
        ON CONFLICT(aeid, lvl) DO NOTHING
    """

    def _op() -> int:
        with conn:
            before = conn.total_changes
            conn.executemany(sql, rows)
            return conn.total_changes - before

    return _write(conn, _op, "insert_missing_assignments")


def fetch_method_assignments(
    conn: sqlite3.Connection,
    *,
    aeid: Optional[int] = None,
    asid: Optional[int] = None,
) -> List[sqlite3.Row]:
    """Method bindings joined with method names, filtered by endpoint or study."""
    clauses: List[str] = []
    params: List[Any] = []
    if aeid is not None:
        clauses.append("a.aeid = ?")
        params.append(int(aeid))
    if asid is not None:
        clauses.append("e.asid = ?")
        params.append(int(asid))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"""
        SELECT a.aeid, a.lvl, m.mthd, m.mthd_id, e.aenm, e.asid
        FROM method_assignments a
        JOIN methods m ON m.mthd_id = a.mthd_id
        JOIN assay_endpoints e ON e.aeid = a.aeid
        {where}
        ORDER BY a.aeid, a.lvl
    """
    return conn.execute(sql, params).fetchall()


# --- Run tracking -----------------------------------------------------------

def begin_run(conn: sqlite3.Connection, asid: int, start_lvl: int, end_lvl: int,
              config_hash: Optional[str] = None) -> int:
    """
    Records the start of a pipeline run and returns its id.
    """
    sql = """
        INSERT INTO core_runs (asid, start_lvl, end_lvl, config_hash, started_at)
        VALUES (?, ?, ?, ?, ?)
    """

    def _op() -> int:
        with conn:
            cur = conn.execute(
                sql,
                (int(asid), int(start_lvl), int(end_lvl), config_hash, datetime.now().isoformat()),
            )
            return int(cur.lastrowid)

    run_id = _write(conn, _op, "begin_run")
    log.info("Began run %s for asid=%s levels %s..%s", run_id, asid, start_lvl, end_lvl)
    return run_id


def finish_run(conn: sqlite3.Connection, run_id: int, state: str, *,
               counts: Optional[Mapping[str, int]] = None, message: Optional[str] = None):
    """
    Updates a run's final state (e.g., 'completed', 'aborted') and outcome counts.
    """
    counts = dict(counts or {})

    def _op():
        with conn:
            conn.execute(
                """
                UPDATE core_runs
                SET state = ?, message = ?, ended_at = ?,
                    n_success = ?, n_skipped = ?, n_failed = ?
                WHERE id = ?
                """,
                (
                    state,
                    message,
                    datetime.now().isoformat(),
                    counts.get("success"),
                    counts.get("skipped"),
                    counts.get("failed"),
                    int(run_id),
                ),
            )

    try:
        _run_with_retry(conn, _op, "finish_run")
        log.info("Finished run %s with state '%s'", run_id, state)
    except sqlite3.Error as e:
        log.exception("Failed to finish run %s: %s", run_id, e)


# --- Reporting --------------------------------------------------------------

def fetch_activity_summary(conn: sqlite3.Connection, asid: int) -> pd.DataFrame:
    """
    Level-6 summary statistics for a study, one row per (endpoint, chemical).
    """
    sql = """
        SELECT e.aeid, e.aenm, c.chid, c.stimulus,
               l.model, l.hitc, l.top, l.ac50, l.ac10, l.acc, l.mec,
               l.fit_quality, l.params_json
        FROM lvl6 l
        JOIN assay_endpoints e ON e.aeid = l.aeid
        JOIN chemicals c ON c.chid = l.chid
        WHERE e.asid = ?
        ORDER BY e.aeid, c.stimulus
    """
    frame = pd.read_sql_query(sql, conn, params=(int(asid),))
    frame["params"] = frame.pop("params_json").map(lambda s: json.loads(s) if s else {})
    return frame
