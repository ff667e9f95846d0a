"""
Method registry bindings: which catalog method runs at which level for
which endpoint.
"""

from __future__ import annotations

import sqlite3
from typing import Dict, List, Optional

from hcspipe.db import api as db_api
from hcspipe.errors import UnknownMethod, UnresolvedReference
from hcspipe.pipeline.levels import FIRST_PROCESSED_LEVEL, LAST_LEVEL
from hcspipe.pipeline.methods import catalog_entries, default_method, load_method
from hcspipe.utils.logging import get_logger

log = get_logger(__name__)


def sync_catalog(conn: sqlite3.Connection) -> int:
    """Mirror the in-process method catalog into the methods table."""
    count = db_api.sync_methods(conn, catalog_entries())
    log.debug("Synchronised %d catalog method(s).", count)
    return count


def _method_id(conn: sqlite3.Connection, level: int, name: str) -> int:
    mthd_id = db_api.fetch_method_id(conn, level, name)
    if mthd_id is None:
        sync_catalog(conn)
        mthd_id = db_api.fetch_method_id(conn, level, name)
    if mthd_id is None:
        raise UnknownMethod(f"Method '{name}' for level {level} is not in the methods table.")
    return mthd_id


def assign_method(conn: sqlite3.Connection, aeid: int, level: int, name: str) -> int:
    """
    Bind `name` to (aeid, level), replacing any previous binding.

    Raises UnknownMethod when the catalog has no such method at that level.
    """
    method = load_method(level, name)
    if not db_api.fetch_rows(conn, "assay_endpoints", aeid=int(aeid)):
        raise UnresolvedReference(f"No endpoint with aeid={aeid}.")
    mthd_id = _method_id(conn, method.level, method.name)
    db_api.upsert_method_assignment(conn, aeid, method.level, mthd_id)
    log.info("Assigned method '%s' to aeid=%s level %s", method.name, aeid, method.level)
    return mthd_id


def assign_default_methods(conn: sqlite3.Connection, asid: int) -> int:
    """
    Give every endpoint of the study the catalog default at every level
    that has one. Existing bindings are left untouched.

    Returns the number of bindings created.
    """
    if db_api.get_study(conn, asid) is None:
        raise UnresolvedReference(f"No study with asid={asid}.")
    defaults = []
    for level in range(FIRST_PROCESSED_LEVEL, LAST_LEVEL + 1):
        cls = default_method(level)
        if cls is not None:
            defaults.append((level, _method_id(conn, level, cls.name)))

    rows = [
        (int(ep["aeid"]), level, mthd_id)
        for ep in db_api.fetch_endpoints(conn, asid)
        for level, mthd_id in defaults
    ]
    created = db_api.insert_missing_assignments(conn, rows)
    log.info("Assigned %d default method binding(s) for asid=%s", created, asid)
    return created


def method_bindings(conn: sqlite3.Connection, asid: int) -> Dict[int, Dict[int, str]]:
    """Return {aeid: {level: method name}} for a study."""
    bindings: Dict[int, Dict[int, str]] = {}
    for row in db_api.fetch_method_assignments(conn, asid=asid):
        bindings.setdefault(int(row["aeid"]), {})[int(row["lvl"])] = row["mthd"]
    return bindings


def bound_method(conn: sqlite3.Connection, aeid: int, level: int) -> Optional[str]:
    for row in db_api.fetch_method_assignments(conn, aeid=aeid):
        if int(row["lvl"]) == int(level):
            return row["mthd"]
    return None


def catalog_table() -> List[Dict[str, object]]:
    """Catalog rows for listing (level, name, default, description)."""
    return [
        {"level": e["lvl"], "method": e["mthd"], "default": bool(e["is_default"]), "description": e["descr"]}
        for e in catalog_entries()
    ]
