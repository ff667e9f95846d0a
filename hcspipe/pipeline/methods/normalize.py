"""
Level 1: plate-wise control normalization of raw values.
"""

from __future__ import annotations

import abc

import numpy as np
import pandas as pd

from hcspipe.errors import InsufficientControls, TransformFailure
from hcspipe.utils.logging import get_logger

from .base import Method, MethodInput, MethodResult, register_method

log = get_logger(__name__)

OUTPUT_COLUMNS = ["waid", "resp", "bval"]


def _single_value_per_well(data: MethodInput) -> pd.DataFrame:
    frame = data.frame
    dup = frame["waid"].duplicated(keep=False)
    if dup.any():
        waids = sorted(frame.loc[dup, "waid"].astype(int).unique().tolist())
        raise TransformFailure(
            f"aeid={data.aeid} has several channel values for well(s) {waids[:10]}; "
            "one level-0 value per well is required."
        )
    return frame.dropna(subset=["rval"])


def _plate_median(plate: pd.DataFrame, wllt: str, apid: str, aeid: int) -> float:
    values = plate.loc[plate["wllt"] == wllt, "rval"].to_numpy(dtype=float)
    if values.size == 0:
        kind = "negative" if wllt == "n" else "positive"
        raise InsufficientControls(f"aeid={aeid}: plate '{apid}' has no usable {kind} control wells.")
    return float(np.median(values))


class _PlateNormalizer(Method):
    level = 1

    def apply(self, data: MethodInput) -> MethodResult:
        frame = _single_value_per_well(data)
        pieces = []
        for apid, plate in frame.groupby("apid", sort=True):
            pieces.append(self.normalize_plate(plate, str(apid), data.aeid))
        if not pieces:
            return MethodResult(frame=pd.DataFrame(columns=OUTPUT_COLUMNS))
        out = pd.concat(pieces, ignore_index=True)
        return MethodResult(frame=out.loc[:, OUTPUT_COLUMNS])

    @abc.abstractmethod
    def normalize_plate(self, plate: pd.DataFrame, apid: str, aeid: int) -> pd.DataFrame:
        """Normalize the rows of one plate."""
        raise NotImplementedError


@register_method
class Log2PlateNctrl(_PlateNormalizer):
    name = "log2_plate_nctrl"
    default = True
    description = "log2 ratio to the median of usable negative controls on the plate"

    def normalize_plate(self, plate: pd.DataFrame, apid: str, aeid: int) -> pd.DataFrame:
        bmed = _plate_median(plate, "n", apid, aeid)
        if bmed <= 0:
            raise TransformFailure(f"aeid={aeid}: negative control median on plate '{apid}' is {bmed:g}; log2 undefined.")
        positive = plate["rval"] > 0
        if not positive.all():
            log.warning(
                "aeid=%s plate '%s': excluding %d well(s) with non-positive raw values",
                aeid, apid, int((~positive).sum()),
            )
        plate = plate.loc[positive]
        return pd.DataFrame(
            {"waid": plate["waid"].to_numpy(), "resp": np.log2(plate["rval"].to_numpy(dtype=float) / bmed), "bval": bmed}
        )


@register_method
class PctPlateNctrl(_PlateNormalizer):
    name = "pct_plate_nctrl"
    description = "percent change from the median of usable negative controls on the plate"

    def normalize_plate(self, plate: pd.DataFrame, apid: str, aeid: int) -> pd.DataFrame:
        bmed = _plate_median(plate, "n", apid, aeid)
        if bmed == 0:
            raise TransformFailure(f"aeid={aeid}: negative control median on plate '{apid}' is zero.")
        rval = plate["rval"].to_numpy(dtype=float)
        return pd.DataFrame({"waid": plate["waid"].to_numpy(), "resp": 100.0 * (rval - bmed) / bmed, "bval": bmed})


@register_method
class PctPlatePctrl(_PlateNormalizer):
    name = "pct_plate_pctrl"
    description = "percent of the positive-control window (negative median = 0, positive median = 100)"

    def normalize_plate(self, plate: pd.DataFrame, apid: str, aeid: int) -> pd.DataFrame:
        nmed = _plate_median(plate, "n", apid, aeid)
        pmed = _plate_median(plate, "p", apid, aeid)
        if pmed == nmed:
            raise TransformFailure(f"aeid={aeid}: positive and negative control medians coincide on plate '{apid}'.")
        rval = plate["rval"].to_numpy(dtype=float)
        return pd.DataFrame(
            {"waid": plate["waid"].to_numpy(), "resp": 100.0 * (rval - nmed) / (pmed - nmed), "bval": nmed}
        )
