"""
Noise-band estimation from negative-control wells.

The cutoff is `multiplier * MAD` with an unscaled median absolute
deviation. Bands are stored per (aeid, scope, level) with replace semantics;
scope 'study' uses this endpoint's controls, 'global' pools the controls
of every endpoint sharing its name.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, Optional, Union

import numpy as np

from hcspipe.db import api as db_api
from hcspipe.errors import HcsError, InsufficientControls, StoreIntegrityViolation
from hcspipe.pipeline.levels import RESPONSE_LEVEL
from hcspipe.utils.config import DEFAULT_MIN_CONTROLS, DEFAULT_NBAND_MULTIPLIER
from hcspipe.utils.logging import get_logger

log = get_logger(__name__)

SCOPES = ("study", "global")


@dataclass(frozen=True)
class NoiseBand:
    aeid: int
    scope: str
    lvl: int
    cutoff: float
    mad: float
    median: float
    n_ctrl: int
    method: Optional[str] = None

    def as_row(self) -> Dict[str, object]:
        return asdict(self)


def mad(values: np.ndarray) -> float:
    """Unscaled median absolute deviation."""
    values = np.asarray(values, dtype=float)
    return float(np.median(np.abs(values - np.median(values))))


def compute_noise_band(
    values: Iterable[float],
    *,
    aeid: int,
    scope: str = "study",
    lvl: int = 1,
    min_controls: int = DEFAULT_MIN_CONTROLS,
    multiplier: float = DEFAULT_NBAND_MULTIPLIER,
    method: Optional[str] = None,
) -> NoiseBand:
    """
    Compute a noise band from control values without touching the store.

    Raises InsufficientControls when fewer than `min_controls` finite
    values are available.
    """
    arr = np.asarray(list(values), dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size < int(min_controls):
        raise InsufficientControls(
            f"aeid={aeid} has {arr.size} usable negative control value(s) at level {lvl} "
            f"(scope={scope}); at least {min_controls} required."
        )
    spread = mad(arr)
    return NoiseBand(
        aeid=int(aeid),
        scope=scope,
        lvl=int(lvl),
        cutoff=float(multiplier) * spread,
        mad=spread,
        median=float(np.median(arr)),
        n_ctrl=int(arr.size),
        method=method,
    )


def estimate_noise_band(
    conn: sqlite3.Connection,
    aeid: int,
    scope: str = "study",
    *,
    level: int = 1,
    min_controls: int = DEFAULT_MIN_CONTROLS,
    multiplier: float = DEFAULT_NBAND_MULTIPLIER,
    method: Optional[str] = None,
) -> NoiseBand:
    """
    Estimate and persist the noise band for one endpoint.

    Level 0 reads raw control values through the endpoint's components;
    higher per-well levels read their stored responses.
    """
    if scope not in SCOPES:
        raise ValueError(f"Unknown noise band scope: {scope!r}")
    values = db_api.fetch_control_values(conn, aeid, scope=scope, level=level)
    band = compute_noise_band(
        values,
        aeid=aeid,
        scope=scope,
        lvl=level,
        min_controls=min_controls,
        multiplier=multiplier,
        method=method or f"mad{multiplier:g}_{scope}",
    )
    db_api.upsert_noise_band(conn, band.as_row())
    log.info(
        "Noise band aeid=%s scope=%s level=%s: cutoff=%.4g (MAD=%.4g, n=%d)",
        aeid, scope, level, band.cutoff, band.mad, band.n_ctrl,
    )
    return band


def estimate_noise_bands(
    conn: sqlite3.Connection,
    aeids: Iterable[int],
    scope: str = "study",
    **kwargs,
) -> Dict[int, Union[NoiseBand, HcsError]]:
    """
    Batch form of `estimate_noise_band`.

    Each endpoint is isolated: a processing failure is returned in place of
    its band and the remaining endpoints are still estimated.
    """
    results: Dict[int, Union[NoiseBand, HcsError]] = {}
    for aeid in aeids:
        try:
            results[int(aeid)] = estimate_noise_band(conn, aeid, scope, **kwargs)
        except StoreIntegrityViolation:
            raise
        except HcsError as exc:
            log.warning("Noise band for aeid=%s failed: %s", aeid, exc)
            results[int(aeid)] = exc
    return results


def current_cutoff(conn: sqlite3.Connection, aeid: int, level: int = RESPONSE_LEVEL) -> Optional[float]:
    """
    Cutoff of the most recently computed band for the endpoint at `level`, any scope.

    Bands estimated at other levels are on another scale and are ignored;
    None means no band exists at `level`.
    """
    row = db_api.fetch_noise_band(conn, aeid, level=level)
    return float(row["cutoff"]) if row is not None else None
