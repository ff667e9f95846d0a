"""
The level graph: which table each level lives in, which level feeds it,
and whether its rows are keyed per well or per chemical.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from hcspipe.db import api as db_api
from hcspipe.db.schema import LEVEL_TABLES


@dataclass(frozen=True)
class LevelSpec:
    level: int
    table: str
    input_level: Optional[int]
    unit: str  # 'well' or 'chemical'
    label: str


LEVELS: Dict[int, LevelSpec] = {
    0: LevelSpec(0, LEVEL_TABLES[0], None, "well", "raw values"),
    1: LevelSpec(1, LEVEL_TABLES[1], 0, "well", "normalized response"),
    2: LevelSpec(2, LEVEL_TABLES[2], 1, "well", "noise band"),
    3: LevelSpec(3, LEVEL_TABLES[3], 2, "well", "response direction"),
    4: LevelSpec(4, LEVEL_TABLES[4], 3, "well", "hit call"),
    5: LevelSpec(5, LEVEL_TABLES[5], 4, "chemical", "concentration series"),
    6: LevelSpec(6, LEVEL_TABLES[6], 5, "chemical", "activity summary"),
}

FIRST_PROCESSED_LEVEL = 1
LAST_LEVEL = max(LEVELS)

# Responses compared against a cutoff from level 3 on are on the level-1 scale.
RESPONSE_LEVEL = LEVELS[2].input_level


def level_spec(level: int) -> LevelSpec:
    try:
        return LEVELS[int(level)]
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Unknown level: {level!r}") from exc


def processed_levels(start_level: int, end_level: int) -> Tuple[int, ...]:
    """Validate a run range and return its levels in execution order."""
    start, end = int(start_level), int(end_level)
    if not FIRST_PROCESSED_LEVEL <= start <= end <= LAST_LEVEL:
        raise ValueError(
            f"Level range must satisfy {FIRST_PROCESSED_LEVEL} <= start <= end <= {LAST_LEVEL}, "
            f"got {start}..{end}."
        )
    return tuple(range(start, end + 1))


def has_output(conn: sqlite3.Connection, aeid: int, level: int) -> bool:
    """True when the endpoint has persisted rows at `level`."""
    level_spec(level)
    return db_api.level_row_count(conn, aeid, level) > 0
