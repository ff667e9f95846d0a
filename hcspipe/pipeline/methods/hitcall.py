"""
Level 4: per-well hit call against the noise band cutoff.
"""

from __future__ import annotations

import pandas as pd

from .base import Method, MethodInput, MethodResult, register_method


@register_method
class CutoffFlag(Method):
    name = "cutoff_flag"
    level = 4
    default = True
    description = "hitc = 1 where the oriented response exceeds the noise band cutoff"
    needs = ("cutoff",)

    def apply(self, data: MethodInput) -> MethodResult:
        cutoff = self.require_cutoff(data)
        resp = data.frame["resp"]
        frame = pd.DataFrame(
            {
                "waid": data.frame["waid"].to_numpy(),
                "resp": resp.to_numpy(dtype=float),
                "hitc": (resp > cutoff).astype(int).to_numpy(),
            }
        )
        return MethodResult(frame=frame, diagnostics={"cutoff": cutoff, "nhit": int(frame["hitc"].sum())})
