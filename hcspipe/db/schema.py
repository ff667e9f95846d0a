"""
Schema definitions for initializing the study database.

Tables are grouped by domain:
  • dimension tables   studies, endpoints, components, chemicals, wells
  • lvl0 .. lvl6       per-level measurement and derived tables
  • methods            catalog mirror and per-endpoint assignments
  • noise_bands        per-endpoint baseline cutoffs with provenance
  • core_runs          pipeline run headers

Levels 0-4 are keyed per well, levels 5-6 per chemical. Every level row
references its endpoint (or component at level 0) with ON DELETE CASCADE so
removing a study removes everything derived from it.
"""

# ---------------------------------------------------------------------------
# Dimension tables
# ---------------------------------------------------------------------------

CREATE_STUDIES = """
CREATE TABLE IF NOT EXISTS studies (
    asid INTEGER PRIMARY KEY AUTOINCREMENT,
    asnm TEXT NOT NULL,
    asph TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(asnm, asph)
);
"""

CREATE_ASSAY_ENDPOINTS = """
CREATE TABLE IF NOT EXISTS assay_endpoints (
    aeid INTEGER PRIMARY KEY AUTOINCREMENT,
    asid INTEGER NOT NULL,
    aenm TEXT NOT NULL,
    ecat TEXT NOT NULL,
    FOREIGN KEY(asid) REFERENCES studies(asid) ON DELETE CASCADE,
    UNIQUE(asid, aenm)
);
"""

CREATE_ASSAY_COMPONENTS = """
CREATE TABLE IF NOT EXISTS assay_components (
    acid INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    asid INTEGER NOT NULL,
    machine_name TEXT NOT NULL,
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(asid) REFERENCES studies(asid) ON DELETE CASCADE,
    UNIQUE(asid, machine_name)
);
"""

CREATE_CHEMICALS = """
CREATE TABLE IF NOT EXISTS chemicals (
    chid INTEGER PRIMARY KEY AUTOINCREMENT,
    asid INTEGER NOT NULL,
    stimulus TEXT NOT NULL,
    FOREIGN KEY(asid) REFERENCES studies(asid) ON DELETE CASCADE,
    UNIQUE(asid, stimulus)
);
"""

CREATE_WELLS = """
CREATE TABLE IF NOT EXISTS wells (
    waid INTEGER PRIMARY KEY AUTOINCREMENT,
    asid INTEGER NOT NULL,
    apid TEXT NOT NULL,
    rowi INTEGER NOT NULL,
    coli INTEGER NOT NULL,
    wllt TEXT NOT NULL CHECK (wllt IN ('t', 'p', 'n')),
    wllq INTEGER NOT NULL DEFAULT 1 CHECK (wllq IN (0, 1)),
    chid INTEGER,
    conc REAL,
    expo_time REAL,
    vehicle TEXT,
    ecat TEXT,
    box TEXT,
    tube TEXT,
    FOREIGN KEY(asid) REFERENCES studies(asid) ON DELETE CASCADE,
    FOREIGN KEY(chid) REFERENCES chemicals(chid),
    UNIQUE(asid, apid, rowi, coli)
);
"""

# ---------------------------------------------------------------------------
# Level tables
# ---------------------------------------------------------------------------

CREATE_LVL0 = """
CREATE TABLE IF NOT EXISTS lvl0 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    acid INTEGER NOT NULL,
    waid INTEGER NOT NULL,
    rval REAL,
    wllq INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(acid) REFERENCES assay_components(acid) ON DELETE CASCADE,
    FOREIGN KEY(waid) REFERENCES wells(waid) ON DELETE CASCADE,
    UNIQUE(acid, waid)
);
"""

CREATE_LVL1 = """
CREATE TABLE IF NOT EXISTS lvl1 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    waid INTEGER NOT NULL,
    resp REAL,
    bval REAL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(waid) REFERENCES wells(waid) ON DELETE CASCADE,
    UNIQUE(aeid, waid)
);
"""

CREATE_LVL2 = """
CREATE TABLE IF NOT EXISTS lvl2 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    waid INTEGER NOT NULL,
    resp REAL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(waid) REFERENCES wells(waid) ON DELETE CASCADE,
    UNIQUE(aeid, waid)
);
"""

CREATE_LVL3 = """
CREATE TABLE IF NOT EXISTS lvl3 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    waid INTEGER NOT NULL,
    resp REAL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(waid) REFERENCES wells(waid) ON DELETE CASCADE,
    UNIQUE(aeid, waid)
);
"""

CREATE_LVL4 = """
CREATE TABLE IF NOT EXISTS lvl4 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    waid INTEGER NOT NULL,
    resp REAL,
    hitc INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(waid) REFERENCES wells(waid) ON DELETE CASCADE,
    UNIQUE(aeid, waid)
);
"""

CREATE_LVL5 = """
CREATE TABLE IF NOT EXISTS lvl5 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    chid INTEGER NOT NULL,
    conc REAL NOT NULL,
    resp REAL,
    nwll INTEGER NOT NULL,
    nhit INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(chid) REFERENCES chemicals(chid) ON DELETE CASCADE,
    UNIQUE(aeid, chid, conc)
);
"""

CREATE_LVL6 = """
CREATE TABLE IF NOT EXISTS lvl6 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    chid INTEGER NOT NULL,
    model TEXT NOT NULL,
    hitc INTEGER NOT NULL DEFAULT 0,
    top REAL,
    ac50 REAL,
    ac10 REAL,
    acc REAL,
    mec REAL,
    fit_quality REAL,
    params_json TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(chid) REFERENCES chemicals(chid) ON DELETE CASCADE,
    UNIQUE(aeid, chid)
);
"""

# ---------------------------------------------------------------------------
# Methods and cutoffs
# ---------------------------------------------------------------------------

CREATE_METHODS = """
CREATE TABLE IF NOT EXISTS methods (
    mthd_id INTEGER PRIMARY KEY AUTOINCREMENT,
    lvl INTEGER NOT NULL,
    mthd TEXT NOT NULL,
    descr TEXT,
    is_default INTEGER NOT NULL DEFAULT 0,
    UNIQUE(lvl, mthd)
);
"""

CREATE_METHOD_ASSIGNMENTS = """
CREATE TABLE IF NOT EXISTS method_assignments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    lvl INTEGER NOT NULL,
    mthd_id INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    FOREIGN KEY(mthd_id) REFERENCES methods(mthd_id),
    UNIQUE(aeid, lvl)
);
"""

CREATE_NOISE_BANDS = """
CREATE TABLE IF NOT EXISTS noise_bands (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    aeid INTEGER NOT NULL,
    scope TEXT NOT NULL CHECK (scope IN ('study', 'global')),
    lvl INTEGER NOT NULL,
    cutoff REAL NOT NULL,
    mad REAL NOT NULL,
    median REAL NOT NULL,
    n_ctrl INTEGER NOT NULL,
    method TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY(aeid) REFERENCES assay_endpoints(aeid) ON DELETE CASCADE,
    UNIQUE(aeid, scope, lvl)
);
"""

# ---------------------------------------------------------------------------
# Run tracking
# ---------------------------------------------------------------------------

CREATE_CORE_RUNS = """
CREATE TABLE IF NOT EXISTS core_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asid INTEGER NOT NULL,
    start_lvl INTEGER NOT NULL,
    end_lvl INTEGER NOT NULL,
    config_hash TEXT,
    started_at TEXT NOT NULL DEFAULT (datetime('now')),
    ended_at TEXT,
    state TEXT NOT NULL DEFAULT 'running',
    n_success INTEGER,
    n_skipped INTEGER,
    n_failed INTEGER,
    message TEXT,
    FOREIGN KEY(asid) REFERENCES studies(asid) ON DELETE CASCADE
);
"""

# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------

CREATE_INDEX_WELLS_PLATE = """
CREATE INDEX IF NOT EXISTS idx_wells_plate ON wells (asid, apid);
"""

CREATE_INDEX_WELLS_TYPE = """
CREATE INDEX IF NOT EXISTS idx_wells_type ON wells (asid, wllt, wllq);
"""

CREATE_INDEX_ENDPOINTS_NAME = """
CREATE INDEX IF NOT EXISTS idx_assay_endpoints_name ON assay_endpoints (aenm);
"""

CREATE_INDEX_LVL0_WELL = """
CREATE INDEX IF NOT EXISTS idx_lvl0_waid ON lvl0 (waid);
"""

CREATE_INDEX_CORE_RUNS_STUDY = """
CREATE INDEX IF NOT EXISTS idx_core_runs_asid ON core_runs (asid);
"""

# ---------------------------------------------------------------------------
# Aggregate table/index lists
# ---------------------------------------------------------------------------

ALL_TABLES = [
    CREATE_STUDIES,
    CREATE_ASSAY_ENDPOINTS,
    CREATE_ASSAY_COMPONENTS,
    CREATE_CHEMICALS,
    CREATE_WELLS,
    CREATE_LVL0,
    CREATE_LVL1,
    CREATE_LVL2,
    CREATE_LVL3,
    CREATE_LVL4,
    CREATE_LVL5,
    CREATE_LVL6,
    CREATE_METHODS,
    CREATE_METHOD_ASSIGNMENTS,
    CREATE_NOISE_BANDS,
    CREATE_CORE_RUNS,
]

ALL_INDEXES = [
    CREATE_INDEX_WELLS_PLATE,
    CREATE_INDEX_WELLS_TYPE,
    CREATE_INDEX_ENDPOINTS_NAME,
    CREATE_INDEX_LVL0_WELL,
    CREATE_INDEX_CORE_RUNS_STUDY,
]

# Columns that generic field/value filters may target, per table.
QUERYABLE_COLUMNS = {
    "studies": ("asid", "asnm", "asph"),
    "assay_endpoints": ("aeid", "asid", "aenm", "ecat"),
    "assay_components": ("acid", "aeid", "asid", "machine_name"),
    "chemicals": ("chid", "asid", "stimulus"),
    "wells": (
        "waid", "asid", "apid", "rowi", "coli", "wllt", "wllq",
        "chid", "conc", "expo_time", "vehicle", "ecat", "box", "tube",
    ),
    "methods": ("mthd_id", "lvl", "mthd", "is_default"),
    "method_assignments": ("aeid", "lvl", "mthd_id"),
    "noise_bands": ("aeid", "scope", "lvl", "method"),
    "core_runs": ("id", "asid", "state"),
}

# Columns written by the level writer, per level. Level 0 is keyed by
# component, levels 1-4 by (aeid, waid), levels 5-6 by (aeid, chid).
LEVEL_TABLES = {
    0: "lvl0",
    1: "lvl1",
    2: "lvl2",
    3: "lvl3",
    4: "lvl4",
    5: "lvl5",
    6: "lvl6",
}

LEVEL_COLUMNS = {
    1: ("waid", "resp", "bval"),
    2: ("waid", "resp"),
    3: ("waid", "resp"),
    4: ("waid", "resp", "hitc"),
    5: ("chid", "conc", "resp", "nwll", "nhit"),
    6: ("chid", "model", "hitc", "top", "ac50", "ac10", "acc", "mec", "fit_quality", "params_json"),
}
