"""
Execution context passed to every pipeline entry point.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from hcspipe.db import api as db_api
from hcspipe.pipeline.assignment import sync_catalog
from hcspipe.utils.config import Settings
from hcspipe.utils.hashing import config_hash


@dataclass
class PipelineContext:
    """
    Holds the store connection and resolved settings for one session.

    Build it with `open`, which prepares the schema and the method catalog,
    and release it with `close` (or use it as a context manager).
    """

    db: sqlite3.Connection
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def open(
        cls,
        db_path: Optional[Union[str, Path]] = None,
        settings: Optional[Settings] = None,
    ) -> "PipelineContext":
        settings = settings or Settings()
        path = Path(db_path) if db_path is not None else settings.db_path
        if path is None:
            raise ValueError("A database path is required.")
        conn = db_api.connect(path)
        db_api.init_schema(conn)
        sync_catalog(conn)
        return cls(db=conn, settings=settings)

    @classmethod
    def from_config(cls, cfg: Optional[Mapping[str, Any]], db_path: Optional[Union[str, Path]] = None) -> "PipelineContext":
        return cls.open(db_path, Settings.from_config(cfg))

    @property
    def config_hash(self) -> str:
        return config_hash(dict(self.settings.raw), length=7)

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> "PipelineContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
