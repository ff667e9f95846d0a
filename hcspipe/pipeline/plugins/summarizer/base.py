"""
Base interfaces and registry helpers for activity summarizer engines.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, MutableMapping, Optional, Sequence


@dataclass(slots=True)
class SummaryRequest:
    """
    One chemical's concentration series for one endpoint.
    """

    aeid: int
    chid: int
    conc: Sequence[float]
    resp: Sequence[float]
    cutoff: float
    options: MutableMapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SummaryResult:
    """
    Summary statistics for one (endpoint, chemical) pair.

    Concentrations are reported in the units of the request; fields an
    engine cannot determine stay None.
    """

    model: str
    hitc: int
    top: Optional[float] = None
    ac50: Optional[float] = None
    ac10: Optional[float] = None
    acc: Optional[float] = None
    mec: Optional[float] = None
    fit_quality: Optional[float] = None
    params: MutableMapping[str, Any] = field(default_factory=dict)
    diagnostics: MutableMapping[str, Any] = field(default_factory=dict)


class SummarizerEngine(abc.ABC):
    """Abstract base class for activity summarizer engines."""

    name: str = "abstract"
    version: str = "0.0.0"

    def __init__(self, **kwargs: Any) -> None:
        self._options = dict(kwargs)

    @abc.abstractmethod
    def summarize(self, request: SummaryRequest) -> SummaryResult:
        """Fit and summarize one concentration series."""
        raise NotImplementedError

    def options(self) -> Dict[str, Any]:
        """Return engine configuration for diagnostics."""
        return dict(self._options)


_REGISTRY: Dict[str, type[SummarizerEngine]] = {}


def register_summarizer(cls: type[SummarizerEngine]) -> type[SummarizerEngine]:
    """Decorator to register a summarizer engine class by name."""
    key = getattr(cls, "name", "") or cls.__name__
    norm = key.strip().lower()
    if not norm:
        raise ValueError(f"Cannot register summarizer with empty name: {cls}")
    if norm in _REGISTRY and _REGISTRY[norm] is not cls:
        raise ValueError(f"Summarizer '{norm}' already registered")
    _REGISTRY[norm] = cls
    return cls


def load_summarizer(name: str, **kwargs: Any) -> SummarizerEngine:
    """Instantiate a registered summarizer engine."""
    norm = (name or "").strip().lower()
    if not norm:
        raise ValueError("Summarizer name is required.")
    try:
        cls = _REGISTRY[norm]
    except KeyError as exc:
        raise ValueError(f"Unknown summarizer engine: {name}") from exc
    return cls(**kwargs)


def available_summarizers() -> Mapping[str, type[SummarizerEngine]]:
    """Return the registered summarizer engines."""
    return dict(_REGISTRY)
