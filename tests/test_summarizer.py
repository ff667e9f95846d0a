import math

import numpy as np
import pytest

from hcspipe.errors import TransformFailure
from hcspipe.pipeline.plugins.summarizer import (
    HillLmfitSummarizer,
    SummaryRequest,
    available_summarizers,
    load_summarizer,
)


def _hill(conc, top=2.0, logac50=0.0, hill=1.5):
    x = np.log10(np.asarray(conc, dtype=float))
    return top / (1.0 + 10.0 ** ((logac50 - x) * hill))


CONCS = [0.01, 0.1, 1.0, 10.0, 100.0, 1000.0]


def test_registry_lists_and_loads_engines():
    assert "hill_lmfit" in available_summarizers()
    engine = load_summarizer("HILL_LMFIT", hill_max=6.0)
    assert isinstance(engine, HillLmfitSummarizer)
    assert engine.options() == {"hill_max": 6.0}
    with pytest.raises(ValueError):
        load_summarizer("nope")


def test_hill_fit_recovers_parameters():
    request = SummaryRequest(aeid=1, chid=1, conc=CONCS, resp=_hill(CONCS), cutoff=0.5)
    result = load_summarizer("hill_lmfit").summarize(request)

    assert result.model == "hill"
    assert result.hitc == 1
    assert result.top == pytest.approx(2.0, rel=1e-3)
    assert result.ac50 == pytest.approx(1.0, rel=1e-2)
    assert result.ac10 == pytest.approx(10 ** (-math.log10(9) / 1.5), rel=1e-2)
    # curve crosses 0.5 where 10 ** (-1.5 x) = 3
    assert result.acc == pytest.approx(10 ** (-math.log10(3) / 1.5), rel=1e-2)
    assert result.mec == pytest.approx(1.0)
    assert result.fit_quality == pytest.approx(1.0, abs=1e-4)
    assert result.params["hill"] == pytest.approx(1.5, rel=1e-2)
    assert result.diagnostics["n_conc"] == 6


def test_series_below_cutoff_is_inactive_without_fit():
    resp = [0.1, -0.2, 0.05, 0.3]
    result = load_summarizer("hill_lmfit").summarize(
        SummaryRequest(aeid=1, chid=2, conc=[1, 10, 100, 1000], resp=resp, cutoff=0.5)
    )
    assert result.model == "constant"
    assert result.hitc == 0
    assert result.ac50 is None
    assert result.mec is None
    assert result.top == pytest.approx(0.3)


def test_active_series_needs_three_concentrations():
    with pytest.raises(TransformFailure, match="2 concentration"):
        load_summarizer("hill_lmfit").summarize(
            SummaryRequest(aeid=1, chid=3, conc=[1.0, 10.0], resp=[0.1, 2.0], cutoff=0.5)
        )


def test_non_positive_concentrations_are_ignored():
    conc = [0.0] + CONCS
    resp = np.concatenate([[5.0], _hill(CONCS)])
    result = load_summarizer("hill_lmfit").summarize(SummaryRequest(aeid=1, chid=1, conc=conc, resp=resp, cutoff=0.5))
    assert result.mec == pytest.approx(1.0)
    assert result.diagnostics["n_conc"] == 6


def test_mismatched_series_is_a_transform_failure():
    with pytest.raises(TransformFailure):
        load_summarizer("hill_lmfit").summarize(SummaryRequest(aeid=1, chid=1, conc=[1.0, 2.0], resp=[1.0], cutoff=0.5))
