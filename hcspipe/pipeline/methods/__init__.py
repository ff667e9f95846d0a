"""
Level method catalog.

Importing this package registers every bundled method.
"""

from .base import (
    Method,
    MethodInput,
    MethodResult,
    available_methods,
    catalog_entries,
    default_method,
    load_method,
    register_method,
)
from .normalize import Log2PlateNctrl, PctPlateNctrl, PctPlatePctrl
from .nband import NbandMad3Global, NbandMad3Study
from .direction import RespAbs, RespDown, RespUp
from .hitcall import CutoffFlag
from .aggregate import ConcMedian
from .summary import ActivitySummary

__all__ = [
    "Method",
    "MethodInput",
    "MethodResult",
    "available_methods",
    "catalog_entries",
    "default_method",
    "load_method",
    "register_method",
    "Log2PlateNctrl",
    "PctPlateNctrl",
    "PctPlatePctrl",
    "NbandMad3Global",
    "NbandMad3Study",
    "RespAbs",
    "RespDown",
    "RespUp",
    "CutoffFlag",
    "ConcMedian",
    "ActivitySummary",
]
