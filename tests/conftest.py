import math

import pytest
from typer.testing import CliRunner

from hcspipe.importers.annotations import load_annotations
from hcspipe.importers.raw_data import load_raw_data
from hcspipe.pipeline.context import PipelineContext
from hcspipe.utils.config import Settings

# ChemA responses follow top / (1 + 10 ** ((logac50 - x) * hill)) on log2(rval / 10)
HILL_TOP = 2.0
HILL_LOGAC50 = 0.0
HILL_SLOPE = 1.5
CHEM_A_CONCS = (0.01, 0.1, 1.0, 10.0, 100.0, 1000.0)


def hill_resp(conc: float) -> float:
    return HILL_TOP / (1.0 + 10.0 ** ((HILL_LOGAC50 - math.log10(conc)) * HILL_SLOPE))


@pytest.fixture
def cli_runner():
    """Reusable Typer CLI runner with stderr merged into stdout for assertions."""
    return CliRunner()


@pytest.fixture
def pctx(tmp_path):
    ctx = PipelineContext.open(tmp_path / "hcs.sqlite", Settings())
    yield ctx
    ctx.close()


@pytest.fixture
def assay_rows():
    return [
        {"ecat": "cyto", "aenm": "NucCount", "channel": "nuc_count"},
        {"ecat": "cyto", "aenm": "MitoInt", "channel": "mito_int"},
    ]


@pytest.fixture
def plate_rows():
    rows = [
        {"asnm": "ToxStudy", "asph": "P1", "apid": "PL01", "well": f"A0{i}", "wllt": "n",
         "vehicle": "DMSO", "ecat": "cyto", "expo_time": 24}
        for i in (1, 2, 3)
    ]
    rows.append(
        {"asnm": "ToxStudy", "asph": "P1", "apid": "PL01", "well": "A04", "wllt": "p",
         "stimulus": "Staurosporine", "conc": 1.0, "ecat": "cyto", "expo_time": 24}
    )
    for i, conc in enumerate(CHEM_A_CONCS, start=1):
        rows.append(
            {"asnm": "ToxStudy", "asph": "P1", "apid": "PL01", "well": f"B0{i}", "wllt": "t",
             "stimulus": "ChemA", "conc": conc, "vehicle": "DMSO", "ecat": "cyto", "expo_time": 24}
        )
    return rows


@pytest.fixture
def raw_rows():
    """
    nuc_count: controls 10, 11, 9 and an exact Hill series for ChemA.
    mito_int: a single negative control, so its noise band cannot be estimated.
    """
    rows = [
        {"apid": "PL01", "well": "A01", "channel": "nuc_count", "rval": 10.0},
        {"apid": "PL01", "well": "A02", "channel": "nuc_count", "rval": 11.0},
        {"apid": "PL01", "well": "A03", "channel": "nuc_count", "rval": 9.0},
        {"apid": "PL01", "well": "A04", "channel": "nuc_count", "rval": 2.0},
        {"apid": "PL01", "well": "A01", "channel": "mito_int", "rval": 100.0},
    ]
    for i, conc in enumerate(CHEM_A_CONCS, start=1):
        rows.append({"apid": "PL01", "well": f"B0{i}", "channel": "nuc_count", "rval": 10.0 * 2.0 ** hill_resp(conc)})
        rows.append({"apid": "PL01", "well": f"B0{i}", "channel": "mito_int", "rval": 100.0 + i})
    return rows


@pytest.fixture
def study(pctx, plate_rows, assay_rows, raw_rows):
    """A registered study with level-0 data loaded; returns its asid."""
    asid = load_annotations(pctx.db, plate_rows, assay_rows)
    load_raw_data(pctx.db, asid, raw_rows)
    return asid


@pytest.fixture
def aeids(pctx, study):
    """Endpoint ids of the study fixture, keyed by endpoint name."""
    rows = pctx.db.execute("SELECT aeid, aenm FROM assay_endpoints WHERE asid = ?", (study,)).fetchall()
    return {row["aenm"]: int(row["aeid"]) for row in rows}
