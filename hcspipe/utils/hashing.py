# hcspipe/utils/hashing.py
"""
Config fingerprints. A run records the hash of the configuration it ran
with (`core_runs.config_hash`) and run logs are named after it, so the
same settings always map to the same short tag.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Mapping, Optional

RUN_LOG_TIME_FORMAT = "%Y-%m-%dT%H-%M-%S"


def config_hash(cfg: Optional[Mapping[str, Any]], length: int = 7) -> str:
    """
    Short hex digest of a configuration mapping.

    Key order does not matter; values that are not JSON types (paths,
    numpy scalars) are hashed by their string form. An empty or missing
    configuration hashes like `{}`.
    """
    payload = json.dumps(dict(cfg or {}), sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:length]


def run_log_name(cfg: Optional[Mapping[str, Any]], started: Optional[datetime] = None) -> str:
    """File name of a run log: `<date_time>__cfg-<hash>.log`."""
    stamp = (started or datetime.now()).strftime(RUN_LOG_TIME_FORMAT)
    return f"{stamp}__cfg-{config_hash(cfg)}.log"
