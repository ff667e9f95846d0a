# hcspipe/cli.py
"""
Command-line interface for the hcspipe application, powered by Typer.
"""

import enum
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from hcspipe.db import api as db_api
from hcspipe.errors import HcsError
from hcspipe.importers.annotations import load_annotations as _load_annotations
from hcspipe.importers.raw_data import load_raw_data, mask_wells
from hcspipe.pipeline import assignment
from hcspipe.pipeline.context import PipelineContext
from hcspipe.pipeline.levels import LAST_LEVEL
from hcspipe.pipeline.noise_band import estimate_noise_bands
from hcspipe.pipeline.runner import FAILED, run as run_pipeline
from hcspipe.utils.config import DEFAULT_DB_NAME, Settings, load_config
from hcspipe.utils.logging import get_logger, run_log_path, setup_logger

# Create the main Typer application
app = typer.Typer(
    no_args_is_help=True,
    help="hcspipe: leveled processing of high-content screening toxicology data.",
    context_settings={"help_option_names": ["-h", "--help"]},
)

console = Console()

# A shared dictionary to store global state from the callback
state = {}


class Scope(str, enum.Enum):
    """Noise band control scopes."""

    study = "study"
    global_ = "global"


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."
    ),
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to the SQLite database file. Defaults to run.db or run.output_dir from config.",
        writable=True,
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        help="Path to a YAML configuration file.",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Path to a file for logging. Defaults to run.output_dir/run_logs/<date_time>__cfg-<hash>.log when a config is given.",
    ),
):
    """
    Main callback to set up logging and global state.
    """
    state["verbose"] = verbose
    state["db"] = db
    state["config"] = config
    state["log_file"] = log_file

    setup_logger(logfile=log_file, verbose=verbose)
    log = get_logger(__name__)
    log.debug("CLI context initialized. verbose=%s, db=%s, config=%s", verbose, db, config)


def _settings() -> Settings:
    """Resolve settings from --config and attach the default run log when one applies."""
    cfg = load_config(state["config"]) if state.get("config") else {}
    settings = Settings.from_config(cfg)

    if state.get("config") and state.get("log_file") is None:
        default_log = run_log_path(settings.output_dir, cfg)
        state["log_file"] = default_log
        setup_logger(logfile=default_log, verbose=state.get("verbose", False))
    return settings


@contextmanager
def _session(action: str) -> Iterator[PipelineContext]:
    """Open a pipeline context; any error is logged and turned into exit code 1."""
    log = get_logger(__name__)
    pctx = None
    try:
        settings = _settings()
        db_path = state.get("db") or settings.db_path or Path(DEFAULT_DB_NAME)
        pctx = PipelineContext.open(db_path, settings)
        yield pctx
    except typer.Exit:
        raise
    except (HcsError, ValueError, FileNotFoundError) as e:
        log.error("%s failed: %s", action, e)
        raise typer.Exit(code=1)
    except Exception as e:
        log.exception("%s failed: %s", action, e)
        raise typer.Exit(code=1)
    finally:
        if pctx is not None:
            pctx.close()
            log.debug("Database connection closed.")


@app.command("load-annotations")
def load_annotations_cmd(
    plate_metadata: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plate metadata CSV/TSV."),
    assay_metadata: Path = typer.Argument(..., exists=True, dir_okay=False, help="Assay/channel metadata CSV/TSV."),
    prior_asid: Optional[int] = typer.Option(
        None, "--prior-asid", help="Update the study registered under this asid instead of creating one."
    ),
):
    """
    Register a study, its endpoints, channels, chemicals and wells.
    """
    with _session("load-annotations") as pctx:
        asid = _load_annotations(pctx.db, plate_metadata, assay_metadata, prior_asid=prior_asid)
        console.print(f"asid={asid}")


@app.command("load-data")
def load_data(
    asid: int = typer.Argument(..., help="Study id."),
    raw_data: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw measurements CSV/TSV."),
):
    """
    Resolve raw measurements against a study and store them as level 0.
    """
    with _session("load-data") as pctx:
        count = load_raw_data(pctx.db, asid, raw_data)
        console.print(f"Loaded {count} level-0 record(s) into asid={asid}")


@app.command()
def mask(
    asid: int = typer.Argument(..., help="Study id."),
    plate: Optional[str] = typer.Option(None, "--plate", "-p", help="Plate id."),
    well: List[str] = typer.Option([], "--well", "-w", help="Well position on --plate (repeatable), e.g. B03."),
    waid: List[int] = typer.Option([], "--waid", help="Well id (repeatable)."),
    unmask: bool = typer.Option(False, "--unmask", help="Mark the wells usable again."),
):
    """
    Flag wells as unusable (or usable with --unmask). Raw rows are kept.
    """
    with _session("mask") as pctx:
        if plate is None and not waid:
            raise ValueError("Select wells with --plate and/or --waid.")
        updated = mask_wells(
            pctx.db,
            asid,
            waids=waid or None,
            apid=plate,
            positions=well or None,
            wllq=1 if unmask else 0,
        )
        console.print(f"Updated {updated} well(s)")


@app.command()
def assign(
    aeid: int = typer.Argument(..., help="Endpoint id."),
    level: int = typer.Argument(..., min=1, max=LAST_LEVEL, help="Level to bind."),
    method: str = typer.Argument(..., help="Catalog method name."),
):
    """
    Bind a catalog method to one endpoint at one level.
    """
    with _session("assign") as pctx:
        assignment.assign_method(pctx.db, aeid, level, method)
        console.print(f"aeid={aeid} level {level} -> {method}")


@app.command("assign-defaults")
def assign_defaults(asid: int = typer.Argument(..., help="Study id.")):
    """
    Fill unbound levels of every endpoint with the catalog defaults.
    """
    with _session("assign-defaults") as pctx:
        created = assignment.assign_default_methods(pctx.db, asid)
        console.print(f"Created {created} binding(s) for asid={asid}")


@app.command()
def methods(
    level: Optional[int] = typer.Option(None, "--level", "-l", help="Only this level."),
    asid: Optional[int] = typer.Option(None, "--asid", help="Show the bindings of a study instead of the catalog."),
):
    """
    List the method catalog or a study's method bindings.
    """
    with _session("methods") as pctx:
        if asid is None:
            table = Table("Level", "Method", "Default", "Description")
            for entry in assignment.catalog_table():
                if level is not None and entry["level"] != level:
                    continue
                table.add_row(str(entry["level"]), entry["method"], "*" if entry["default"] else "", entry["description"] or "")
        else:
            table = Table("aeid", "Endpoint", "Level", "Method")
            for row in db_api.fetch_method_assignments(pctx.db, asid=asid):
                if level is not None and int(row["lvl"]) != level:
                    continue
                table.add_row(str(row["aeid"]), row["aenm"], str(row["lvl"]), row["mthd"])
        console.print(table)


@app.command("noise-band")
def noise_band(
    asid: int = typer.Argument(..., help="Study id."),
    scope: Scope = typer.Option(Scope.study, "--scope", "-s", help="Control scope."),
    level: int = typer.Option(1, "--level", "-l", min=0, max=4, help="Per-well level to read control values from."),
    aeid: List[int] = typer.Option([], "--aeid", help="Endpoint id (repeatable). Defaults to every endpoint."),
):
    """
    Estimate noise bands from negative controls, one endpoint at a time.
    """
    with _session("noise-band") as pctx:
        endpoints = aeid or [int(ep["aeid"]) for ep in db_api.fetch_endpoints(pctx.db, asid)]
        results = estimate_noise_bands(
            pctx.db,
            endpoints,
            scope.value,
            level=level,
            min_controls=pctx.settings.min_controls,
            multiplier=pctx.settings.nband_multiplier,
        )
        table = Table("aeid", "Cutoff", "MAD", "Median", "n ctrl", "Status")
        for key, band in results.items():
            if isinstance(band, HcsError):
                table.add_row(str(key), "", "", "", "", f"[red]{band.kind}[/red]")
            else:
                table.add_row(str(key), f"{band.cutoff:.4g}", f"{band.mad:.4g}", f"{band.median:.4g}", str(band.n_ctrl), "ok")
        console.print(table)


@app.command()
def run(
    asid: int = typer.Argument(..., help="Study id."),
    start: int = typer.Option(1, "--start", help="First level to run."),
    end: int = typer.Option(LAST_LEVEL, "--end", help="Last level to run."),
    aeid: List[int] = typer.Option([], "--aeid", help="Restrict to endpoint id (repeatable)."),
    strict: bool = typer.Option(False, "--strict", help="Exit with status 1 when any unit failed."),
):
    """
    Run levels start..end for every endpoint of a study and report unit statuses.
    """
    log = get_logger(__name__)
    with _session("run") as pctx:
        report = run_pipeline(pctx, asid, start, end, aeids=aeid or None)
        table = Table("aeid", "Level", "Method", "Outcome", "Rows", "Reason")
        for status in report:
            outcome = status.outcome
            if outcome == FAILED:
                outcome = f"[red]{outcome}[/red] ({status.error_kind})"
            table.add_row(
                str(status.aeid), str(status.level), status.method or "", outcome, str(status.n_rows), status.reason or ""
            )
        console.print(table)
        counts = report.counts()
        console.print(f"success={counts['success']} skipped={counts['skipped']} failed={counts['failed']}")
    if strict and report.failures():
        log.error("%d unit(s) failed.", len(report.failures()))
        raise typer.Exit(code=1)


@app.command()
def ls(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Filter by study name."),
    phase: Optional[str] = typer.Option(None, "--phase", help="Filter by study phase."),
):
    """
    List registered studies.
    """
    with _session("ls") as pctx:
        filters = {}
        if name is not None:
            filters["asnm"] = name
        if phase is not None:
            filters["asph"] = phase
        table = Table("asid", "Name", "Phase")
        for study in db_api.list_studies(pctx.db, **filters):
            table.add_row(str(study["asid"]), study["asnm"], study["asph"])
        console.print(table)


@app.command()
def summary(
    asid: int = typer.Argument(..., help="Study id."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write the summary to this CSV file."),
):
    """
    Show level-6 activity summaries per endpoint and chemical.
    """
    with _session("summary") as pctx:
        frame = db_api.fetch_activity_summary(pctx.db, asid)
        if out is not None:
            out.parent.mkdir(parents=True, exist_ok=True)
            frame.drop(columns=["params"]).to_csv(out, index=False)
            console.print(f"Wrote {len(frame)} row(s) to {out}")
            return
        table = Table("Endpoint", "Chemical", "Model", "Hit", "AC50", "ACC", "MEC", "R2")
        for row in frame.itertuples(index=False):
            table.add_row(
                row.aenm, row.stimulus, row.model, str(row.hitc),
                _fmt(row.ac50), _fmt(row.acc), _fmt(row.mec), _fmt(row.fit_quality),
            )
        console.print(table)


def _fmt(value) -> str:
    if value is None or value != value:
        return ""
    return f"{value:.4g}"


if __name__ == "__main__":
    app()
