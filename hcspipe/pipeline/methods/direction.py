"""
Level 3: orient responses so that activity is always positive.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from .base import Method, MethodInput, MethodResult, register_method


class _DirectionMethod(Method):
    level = 3

    def apply(self, data: MethodInput) -> MethodResult:
        resp = data.frame["resp"].to_numpy(dtype=float)
        frame = pd.DataFrame({"waid": data.frame["waid"].to_numpy(), "resp": self.orient(resp)})
        return MethodResult(frame=frame)

    def orient(self, resp: np.ndarray) -> np.ndarray:
        return resp


@register_method
class RespUp(_DirectionMethod):
    name = "resp_up"
    default = True
    description = "increasing response is activity"


@register_method
class RespDown(_DirectionMethod):
    name = "resp_down"
    description = "decreasing response is activity (responses negated)"

    def orient(self, resp: np.ndarray) -> np.ndarray:
        return -resp


@register_method
class RespAbs(_DirectionMethod):
    name = "resp_abs"
    description = "change in either direction is activity (absolute response)"

    def orient(self, resp: np.ndarray) -> np.ndarray:
        return np.abs(resp)
