# hcspipe/utils/config.py
"""
Configuration loading utility.

YAML files are read into plain dictionaries and then frozen into a
`Settings` object that is passed explicitly to every entry point.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

DEFAULT_DB_NAME = "hcspipe.sqlite"
DEFAULT_NBAND_MULTIPLIER = 3.0
DEFAULT_MIN_CONTROLS = 3
DEFAULT_SUMMARIZER = "hill_lmfit"


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Loads a YAML configuration file.

    Args:
        path: The path to the YAML file.

    Returns:
        A dictionary containing the configuration (empty for an empty file).
    """
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class Settings:
    """
    Resolved pipeline settings.

    Built once from a configuration mapping; methods and the runner read
    their options from here rather than from module state.
    """

    db_path: Optional[Path] = None
    output_dir: Path = Path(".")
    workers: int = 1
    nband_multiplier: float = DEFAULT_NBAND_MULTIPLIER
    min_controls: int = DEFAULT_MIN_CONTROLS
    summarizer: str = DEFAULT_SUMMARIZER
    summarizer_options: Mapping[str, Any] = field(default_factory=dict)
    method_options: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, cfg: Optional[Mapping[str, Any]]) -> "Settings":
        cfg = dict(cfg or {})
        run_cfg = cfg.get("run") or {}
        nband_cfg = cfg.get("noise_band") or {}
        summ_cfg = cfg.get("summarizer") or {}

        output_dir = Path(run_cfg.get("output_dir") or ".").resolve()
        db_val = run_cfg.get("db")
        db_path = Path(db_val) if db_val not in (None, "") else output_dir / DEFAULT_DB_NAME

        workers_val = run_cfg.get("workers")
        try:
            workers = int(workers_val) if workers_val not in (None, "") else 1
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid run.workers value: {workers_val!r}") from exc
        if workers < 1:
            raise ValueError("run.workers must be at least 1.")

        min_controls = int(nband_cfg.get("min_controls", DEFAULT_MIN_CONTROLS))
        if min_controls < 1:
            raise ValueError("noise_band.min_controls must be at least 1.")

        method_options: Dict[str, Dict[str, Any]] = {}
        for name, opts in (cfg.get("methods") or {}).items():
            method_options[str(name).strip().lower()] = dict(opts or {})

        return cls(
            db_path=db_path,
            output_dir=output_dir,
            workers=workers,
            nband_multiplier=float(nband_cfg.get("multiplier", DEFAULT_NBAND_MULTIPLIER)),
            min_controls=min_controls,
            summarizer=str(summ_cfg.get("engine") or DEFAULT_SUMMARIZER),
            summarizer_options=dict(summ_cfg.get("options") or {}),
            method_options=method_options,
            raw=cfg,
        )

    def options_for(self, method_name: str) -> Dict[str, Any]:
        """Return the configured option block for a catalog method."""
        return dict(self.method_options.get(method_name.strip().lower(), {}))
