"""
Helpers for plate well positions and well type codes.
"""

from __future__ import annotations

import re
from typing import Any, Optional, Tuple

_POSITION_RE = re.compile(r"^\s*([A-Za-z]{1,2})\s*0*(\d{1,3})\s*$")

WELL_TYPES = {
    "t": "t",
    "treatment": "t",
    "test": "t",
    "sample": "t",
    "p": "p",
    "pos": "p",
    "positive": "p",
    "positive-control": "p",
    "positive_control": "p",
    "n": "n",
    "neg": "n",
    "negative": "n",
    "negative-control": "n",
    "negative_control": "n",
    "vehicle": "n",
}


def parse_position(value: str) -> Tuple[int, int]:
    """
    Convert a well label such as 'B03' or 'AA12' into 1-based (row, col).
    """
    match = _POSITION_RE.match(str(value or ""))
    if not match:
        raise ValueError(f"Invalid well position: {value!r}")
    letters, digits = match.groups()
    row = 0
    for char in letters.upper():
        row = row * 26 + (ord(char) - ord("A") + 1)
    col = int(digits)
    if col < 1:
        raise ValueError(f"Invalid well column in position: {value!r}")
    return row, col


def format_position(rowi: int, coli: int) -> str:
    letters = ""
    r = int(rowi)
    while r > 0:
        r, rem = divmod(r - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return f"{letters}{int(coli):02d}"


def normalize_well_type(value: Any) -> Optional[str]:
    """Map a free-text well type onto 't', 'p' or 'n'; None when unknown."""
    if value is None:
        return None
    key = str(value).strip().lower().replace(" ", "-")
    return WELL_TYPES.get(key)
