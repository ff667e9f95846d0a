"""
Level runner: executes levels in order for every endpoint of a study and
collects one status per (endpoint, level).

Each (endpoint, level) unit is isolated. Reads and writes happen on the
calling thread; with `workers > 1` only the transforms themselves run in
a thread pool. A StoreIntegrityViolation aborts the run; every other error
is recorded in the unit's status.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

import pandas as pd

from hcspipe.db import api as db_api
from hcspipe.errors import MissingInput, StoreIntegrityViolation, UnresolvedReference, error_kind
from hcspipe.pipeline.assignment import method_bindings
from hcspipe.pipeline.context import PipelineContext
from hcspipe.pipeline.levels import has_output, processed_levels
from hcspipe.pipeline.methods import Method, MethodInput, MethodResult, load_method
from hcspipe.pipeline.noise_band import current_cutoff
from hcspipe.utils.logging import get_logger

log = get_logger(__name__)

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class UnitStatus:
    """Outcome of one (endpoint, level) unit."""

    aeid: int
    level: int
    outcome: str
    method: Optional[str] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    n_rows: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS


@dataclass
class RunReport:
    """
    Every unit status of a run. There is no overall pass/fail; callers
    inspect `failures()` or individual units.
    """

    asid: int
    start_level: int
    end_level: int
    run_id: Optional[int] = None
    statuses: List[UnitStatus] = field(default_factory=list)

    def __iter__(self) -> Iterator[UnitStatus]:
        return iter(self.statuses)

    def __len__(self) -> int:
        return len(self.statuses)

    def get(self, aeid: int, level: int) -> Optional[UnitStatus]:
        for status in self.statuses:
            if status.aeid == int(aeid) and status.level == int(level):
                return status
        return None

    def for_level(self, level: int) -> List[UnitStatus]:
        return [s for s in self.statuses if s.level == int(level)]

    def failures(self) -> List[UnitStatus]:
        return [s for s in self.statuses if s.outcome == FAILED]

    def counts(self) -> Dict[str, int]:
        counts = {SUCCESS: 0, SKIPPED: 0, FAILED: 0}
        for status in self.statuses:
            counts[status.outcome] += 1
        return counts

    def to_frame(self) -> pd.DataFrame:
        columns = ["aeid", "level", "outcome", "method", "reason", "error_kind", "n_rows"]
        return pd.DataFrame([asdict(s) for s in self.statuses], columns=columns)


@dataclass
class _Job:
    aeid: int
    level: int
    method: Method
    data: MethodInput


_Computed = Union[MethodResult, Exception]


def _failed(aeid: int, level: int, method: Optional[str], exc: BaseException) -> UnitStatus:
    return UnitStatus(
        aeid=aeid,
        level=level,
        outcome=FAILED,
        method=method,
        reason=str(exc) or exc.__class__.__name__,
        error_kind=error_kind(exc),
    )


def _prepare(ctx: PipelineContext, aeid: int, level: int, name: Optional[str]) -> Union[_Job, UnitStatus]:
    """Resolve the bound method and read its input; returns a job or a final status."""
    if name is None:
        return UnitStatus(aeid=aeid, level=level, outcome=SKIPPED, reason="no method assigned")
    try:
        method = load_method(level, name)
        input_level = method.input_level
        if not has_output(ctx.db, aeid, input_level):
            raise MissingInput(f"No level-{input_level} rows for aeid={aeid}.")
        frame = db_api.fetch_level_input(ctx.db, aeid, input_level)
        if frame.empty:
            raise MissingInput(f"Level-{input_level} rows for aeid={aeid} cover no usable wells.")
        data = MethodInput(
            aeid=aeid,
            level=level,
            frame=frame,
            settings=ctx.settings,
            options=ctx.settings.options_for(method.name),
        )
        if "cutoff" in method.needs:
            data.cutoff = current_cutoff(ctx.db, aeid)
        if "controls" in method.needs:
            data.controls = db_api.fetch_control_values(
                ctx.db, aeid, scope=method.control_scope, level=input_level
            )
        return _Job(aeid=aeid, level=level, method=method, data=data)
    except StoreIntegrityViolation:
        raise
    except Exception as exc:
        return _failed(aeid, level, name, exc)


def _compute(job: _Job) -> _Computed:
    try:
        return job.method.apply(job.data)
    except Exception as exc:
        return exc


def _compute_all(jobs: List[_Job], workers: int) -> List[_Computed]:
    if workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=min(workers, len(jobs))) as pool:
            return list(pool.map(_compute, jobs))
    return [_compute(job) for job in jobs]


def _write(ctx: PipelineContext, job: _Job, outcome: _Computed) -> UnitStatus:
    if isinstance(outcome, Exception):
        return _failed(job.aeid, job.level, job.method.name, outcome)
    try:
        n_rows = db_api.replace_level_rows(
            ctx.db, job.aeid, job.level, outcome.frame, noise_band=outcome.noise_band
        )
    except StoreIntegrityViolation:
        raise
    except Exception as exc:
        return _failed(job.aeid, job.level, job.method.name, exc)
    return UnitStatus(aeid=job.aeid, level=job.level, outcome=SUCCESS, method=job.method.name, n_rows=n_rows)


def _log_status(status: UnitStatus) -> None:
    if status.outcome == FAILED:
        log.warning(
            "Level %d aeid=%s [%s] failed (%s): %s",
            status.level, status.aeid, status.method, status.error_kind, status.reason,
        )
    elif status.outcome == SKIPPED:
        log.debug("Level %d aeid=%s skipped: %s", status.level, status.aeid, status.reason)
    else:
        log.info("Level %d aeid=%s [%s]: %d row(s)", status.level, status.aeid, status.method, status.n_rows)


def run_level(ctx: PipelineContext, level: int, aeids: Iterable[int], bindings: Dict[int, Dict[int, str]]) -> List[UnitStatus]:
    """Run one level for the given endpoints; one status per endpoint, in input order."""
    slots: List[Tuple[int, Union[_Job, UnitStatus]]] = []
    for aeid in aeids:
        slots.append((aeid, _prepare(ctx, aeid, level, bindings.get(aeid, {}).get(level))))

    jobs = [item for _, item in slots if isinstance(item, _Job)]
    computed = dict(zip((job.aeid for job in jobs), _compute_all(jobs, ctx.settings.workers)))

    statuses: List[UnitStatus] = []
    for aeid, item in slots:
        status = _write(ctx, item, computed[aeid]) if isinstance(item, _Job) else item
        _log_status(status)
        statuses.append(status)
    return statuses


def run(
    ctx: PipelineContext,
    asid: int,
    start_level: int = 1,
    end_level: int = 6,
    *,
    aeids: Optional[Iterable[int]] = None,
) -> RunReport:
    """
    Run levels `start_level..end_level` for every endpoint of study `asid`.

    Levels run in increasing order; a failed unit does not stop its
    siblings, and the same endpoint is still attempted at the next level
    with whatever input rows exist. Returns the full status collection.
    """
    levels = processed_levels(start_level, end_level)
    if db_api.get_study(ctx.db, asid) is None:
        raise UnresolvedReference(f"No study with asid={asid}.")

    endpoints = [int(ep["aeid"]) for ep in db_api.fetch_endpoints(ctx.db, asid)]
    if aeids is not None:
        wanted = {int(a) for a in aeids}
        unknown = wanted - set(endpoints)
        if unknown:
            raise UnresolvedReference(f"Endpoint(s) {sorted(unknown)} do not belong to asid={asid}.")
        endpoints = [a for a in endpoints if a in wanted]

    run_id = db_api.begin_run(ctx.db, asid, levels[0], levels[-1], ctx.config_hash)
    report = RunReport(asid=int(asid), start_level=levels[0], end_level=levels[-1], run_id=run_id)
    try:
        for level in levels:
            bindings = method_bindings(ctx.db, asid)
            report.statuses.extend(run_level(ctx, level, endpoints, bindings))
    except StoreIntegrityViolation as exc:
        db_api.finish_run(ctx.db, run_id, "aborted", counts=report.counts(), message=str(exc))
        raise

    counts = report.counts()
    db_api.finish_run(ctx.db, run_id, "completed", counts=counts)
    log.info(
        "Run %s for asid=%s levels %d..%d: %d success, %d skipped, %d failed",
        run_id, asid, levels[0], levels[-1], counts[SUCCESS], counts[SKIPPED], counts[FAILED],
    )
    return report
