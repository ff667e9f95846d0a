"""
Level 5: collapse treatment wells into one value per chemical and concentration.
"""

from __future__ import annotations

import pandas as pd

from hcspipe.utils.logging import get_logger

from .base import Method, MethodInput, MethodResult, register_method

log = get_logger(__name__)

OUTPUT_COLUMNS = ["chid", "conc", "resp", "nwll", "nhit"]


@register_method
class ConcMedian(Method):
    name = "conc_median"
    level = 5
    default = True
    description = "median response of treatment wells per chemical and concentration"

    def apply(self, data: MethodInput) -> MethodResult:
        frame = data.frame
        treated = frame.loc[(frame["wllt"] == "t") & frame["chid"].notna() & frame["conc"].notna()]
        treated = treated.dropna(subset=["resp"])
        if treated.empty:
            log.warning("aeid=%s has no treatment wells with a chemical and concentration at level 4", data.aeid)
            return MethodResult(frame=pd.DataFrame(columns=OUTPUT_COLUMNS))

        grouped = treated.groupby(["chid", "conc"], sort=True)
        out = grouped.agg(resp=("resp", "median"), nwll=("waid", "size"), nhit=("hitc", "sum")).reset_index()
        out["chid"] = out["chid"].astype(int)
        out["nwll"] = out["nwll"].astype(int)
        out["nhit"] = out["nhit"].astype(int)
        return MethodResult(frame=out.loc[:, OUTPUT_COLUMNS])
