"""
Base interfaces and registry helpers for level transform methods.

Every method is a class bound to one level and registered under
(level, name). The catalog is closed: the runner only ever resolves names
through `load_method`, which fails on anything unregistered.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Tuple

import numpy as np
import pandas as pd

from hcspipe.errors import MissingCutoff, UnknownMethod
from hcspipe.pipeline.levels import RESPONSE_LEVEL, level_spec
from hcspipe.utils.config import Settings


@dataclass(slots=True)
class MethodInput:
    """
    Everything a transform may look at for one endpoint at one level.

    `frame` holds the endpoint's level n-1 rows for usable wells. Values a
    method declares in `needs` (cutoff, controls) are read up front so that
    `apply` never touches the store.
    """

    aeid: int
    level: int
    frame: pd.DataFrame
    settings: Settings = field(default_factory=Settings)
    options: MutableMapping[str, Any] = field(default_factory=dict)
    cutoff: Optional[float] = None
    controls: Optional[np.ndarray] = None


@dataclass(slots=True)
class MethodResult:
    """
    Rows to persist for the level, plus an optional noise band committed
    in the same transaction.
    """

    frame: pd.DataFrame
    noise_band: Optional[Mapping[str, Any]] = None
    diagnostics: MutableMapping[str, Any] = field(default_factory=dict)


class Method(abc.ABC):
    """Abstract base class for level transforms."""

    name: str = "abstract"
    level: int = 0
    default: bool = False
    description: str = ""
    needs: Tuple[str, ...] = ()
    control_scope: str = "study"

    @property
    def input_level(self) -> int:
        return level_spec(self.level).input_level

    @abc.abstractmethod
    def apply(self, data: MethodInput) -> MethodResult:
        """Transform level n-1 rows into level n rows."""
        raise NotImplementedError

    def require_cutoff(self, data: MethodInput) -> float:
        if data.cutoff is None:
            raise MissingCutoff(
                f"No level-{RESPONSE_LEVEL} noise band cutoff for aeid={data.aeid}; estimate one before level {self.level}."
            )
        return float(data.cutoff)


_REGISTRY: Dict[Tuple[int, str], type[Method]] = {}


def register_method(cls: type[Method]) -> type[Method]:
    """Decorator to register a method class under (level, name)."""
    norm = (getattr(cls, "name", "") or "").strip().lower()
    if not norm or norm == "abstract":
        raise ValueError(f"Cannot register method with empty name: {cls}")
    level = level_spec(cls.level).level
    key = (level, norm)
    if key in _REGISTRY and _REGISTRY[key] is not cls:
        raise ValueError(f"Method '{norm}' already registered at level {level}")
    if cls.default:
        current = default_method(level)
        if current is not None and current is not cls:
            raise ValueError(f"Level {level} already has default method '{current.name}'")
    _REGISTRY[key] = cls
    return cls


def load_method(level: int, name: str) -> Method:
    """Instantiate a registered method; unknown (level, name) pairs raise UnknownMethod."""
    norm = (name or "").strip().lower()
    if not norm:
        raise UnknownMethod("Method name is required.")
    try:
        cls = _REGISTRY[(int(level), norm)]
    except (KeyError, TypeError, ValueError) as exc:
        known = ", ".join(sorted(n for (lvl, n) in _REGISTRY if lvl == level)) or "none"
        raise UnknownMethod(f"Unknown method '{name}' for level {level} (available: {known})") from exc
    return cls()


def available_methods(level: Optional[int] = None) -> Mapping[Tuple[int, str], type[Method]]:
    """Return registered methods, optionally restricted to one level."""
    return {key: cls for key, cls in _REGISTRY.items() if level is None or key[0] == level}


def default_method(level: int) -> Optional[type[Method]]:
    for (lvl, _), cls in _REGISTRY.items():
        if lvl == level and cls.default:
            return cls
    return None


def catalog_entries() -> List[Dict[str, Any]]:
    """Rows for mirroring the catalog into the methods table."""
    return [
        {"lvl": lvl, "mthd": name, "descr": cls.description, "is_default": cls.default}
        for (lvl, name), cls in sorted(_REGISTRY.items())
    ]
