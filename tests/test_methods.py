import json
import math

import numpy as np
import pandas as pd
import pytest

from hcspipe.errors import InsufficientControls, MissingCutoff, TransformFailure, UnknownMethod
from hcspipe.pipeline.methods import (
    MethodInput,
    available_methods,
    catalog_entries,
    default_method,
    load_method,
)
from hcspipe.pipeline.methods.normalize import _PlateNormalizer
from hcspipe.pipeline.plugins.summarizer import SummarizerEngine, SummaryResult


def lvl0_frame(rows):
    """rows: (waid, apid, wllt, rval)"""
    frame = pd.DataFrame(rows, columns=["waid", "apid", "wllt", "rval"])
    frame["acid"] = 1
    frame["rowi"] = 1
    frame["coli"] = frame["waid"]
    frame["chid"] = None
    frame["conc"] = None
    return frame


def test_catalog_has_one_default_per_level():
    for level in range(1, 7):
        assert default_method(level) is not None
    defaults = {e["lvl"]: e["mthd"] for e in catalog_entries() if e["is_default"]}
    assert defaults == {
        1: "log2_plate_nctrl",
        2: "nband_mad3_study",
        3: "resp_up",
        4: "cutoff_flag",
        5: "conc_median",
        6: "activity_summary",
    }
    assert set(name for _, name in available_methods(3)) == {"resp_up", "resp_down", "resp_abs"}


def test_load_method_is_level_bound():
    assert load_method(1, " LOG2_plate_nctrl ").input_level == 0
    with pytest.raises(UnknownMethod):
        load_method(1, "resp_up")
    with pytest.raises(UnknownMethod):
        load_method(2, "does_not_exist")


def test_log2_normalization_against_plate_controls():
    frame = lvl0_frame([(1, "PL01", "n", 10.0), (2, "PL01", "n", 11.0), (3, "PL01", "n", 9.0), (4, "PL01", "t", 40.0)])
    result = load_method(1, "log2_plate_nctrl").apply(MethodInput(aeid=1, level=1, frame=frame))

    out = result.frame.set_index("waid")
    assert out.loc[4, "resp"] == pytest.approx(2.0)
    assert out.loc[1, "resp"] == pytest.approx(0.0)
    assert (out["bval"] == 10.0).all()


def test_log2_normalization_is_per_plate():
    frame = lvl0_frame(
        [(1, "PL01", "n", 10.0), (2, "PL01", "t", 20.0), (3, "PL02", "n", 100.0), (4, "PL02", "t", 25.0)]
    )
    out = load_method(1, "log2_plate_nctrl").apply(MethodInput(aeid=1, level=1, frame=frame)).frame.set_index("waid")
    assert out.loc[2, "resp"] == pytest.approx(1.0)
    assert out.loc[4, "resp"] == pytest.approx(-2.0)


def test_log2_normalization_failures():
    method = load_method(1, "log2_plate_nctrl")
    with pytest.raises(InsufficientControls, match="PL02"):
        method.apply(MethodInput(aeid=1, level=1, frame=lvl0_frame([(1, "PL01", "n", 1.0), (2, "PL02", "t", 1.0)])))
    with pytest.raises(TransformFailure):
        method.apply(MethodInput(aeid=1, level=1, frame=lvl0_frame([(1, "PL01", "n", 0.0), (2, "PL01", "t", 1.0)])))
    with pytest.raises(TransformFailure, match="several channel values"):
        method.apply(MethodInput(aeid=1, level=1, frame=lvl0_frame([(1, "PL01", "n", 1.0), (1, "PL01", "n", 2.0)])))


def test_log2_normalization_drops_non_positive_values():
    frame = lvl0_frame([(1, "PL01", "n", 10.0), (2, "PL01", "t", 0.0), (3, "PL01", "t", -5.0), (4, "PL01", "t", 5.0)])
    out = load_method(1, "log2_plate_nctrl").apply(MethodInput(aeid=1, level=1, frame=frame)).frame
    assert sorted(out["waid"]) == [1, 4]


def test_percent_normalizations():
    frame = lvl0_frame(
        [(1, "PL01", "n", 10.0), (2, "PL01", "n", 10.0), (3, "PL01", "p", 30.0), (4, "PL01", "t", 20.0)]
    )
    nctrl = load_method(1, "pct_plate_nctrl").apply(MethodInput(aeid=1, level=1, frame=frame)).frame.set_index("waid")
    assert nctrl.loc[4, "resp"] == pytest.approx(100.0)

    pctrl = load_method(1, "pct_plate_pctrl").apply(MethodInput(aeid=1, level=1, frame=frame)).frame.set_index("waid")
    assert pctrl.loc[4, "resp"] == pytest.approx(50.0)
    assert pctrl.loc[3, "resp"] == pytest.approx(100.0)

    no_pos = frame[frame["wllt"] != "p"]
    with pytest.raises(InsufficientControls, match="positive"):
        load_method(1, "pct_plate_pctrl").apply(MethodInput(aeid=1, level=1, frame=no_pos))


def test_plate_normalizer_requires_a_plate_rule():
    with pytest.raises(TypeError):
        _PlateNormalizer()


def test_noise_band_method_passes_values_through():
    frame = pd.DataFrame({"waid": [1, 2, 3], "resp": [0.5, -0.1, 2.0], "wllt": ["n", "n", "t"]})
    data = MethodInput(aeid=7, level=2, frame=frame, controls=np.array([10.0, 11.0, 9.0]))
    result = load_method(2, "nband_mad3_study").apply(data)

    assert result.frame["resp"].tolist() == [0.5, -0.1, 2.0]
    assert list(result.frame.columns) == ["waid", "resp"]
    assert result.noise_band["cutoff"] == pytest.approx(3.0)
    assert result.noise_band["scope"] == "study"
    assert result.noise_band["lvl"] == 1
    assert result.noise_band["method"] == "nband_mad3_study"

    with pytest.raises(InsufficientControls):
        load_method(2, "nband_mad3_global").apply(MethodInput(aeid=7, level=2, frame=frame, controls=np.array([1.0])))


def test_noise_band_method_reads_options():
    frame = pd.DataFrame({"waid": [1], "resp": [0.0]})
    data = MethodInput(
        aeid=1, level=2, frame=frame, controls=np.array([1.0, 2.0]), options={"multiplier": 2.0, "min_controls": 2}
    )
    band = load_method(2, "nband_mad3_study").apply(data).noise_band
    assert band["cutoff"] == pytest.approx(1.0)


@pytest.mark.parametrize(
    "name, expected",
    [("resp_up", [1.0, -2.0]), ("resp_down", [-1.0, 2.0]), ("resp_abs", [1.0, 2.0])],
)
def test_direction_methods(name, expected):
    frame = pd.DataFrame({"waid": [1, 2], "resp": [1.0, -2.0]})
    out = load_method(3, name).apply(MethodInput(aeid=1, level=3, frame=frame)).frame
    assert out["resp"].tolist() == expected


def test_cutoff_flag():
    frame = pd.DataFrame({"waid": [1, 2, 3], "resp": [0.1, 0.5, 3.0]})
    method = load_method(4, "cutoff_flag")
    with pytest.raises(MissingCutoff):
        method.apply(MethodInput(aeid=1, level=4, frame=frame))

    out = method.apply(MethodInput(aeid=1, level=4, frame=frame, cutoff=0.5)).frame
    assert out["hitc"].tolist() == [0, 0, 1]


def test_conc_median_groups_treatment_wells():
    frame = pd.DataFrame(
        {
            "waid": [1, 2, 3, 4, 5, 6],
            "resp": [1.0, 3.0, 2.0, 10.0, 0.0, 9.0],
            "hitc": [0, 1, 1, 1, 0, 1],
            "wllt": ["t", "t", "t", "t", "n", "p"],
            "chid": [1, 1, 1, 2, None, 3],
            "conc": [1.0, 1.0, 10.0, 1.0, None, 1.0],
        }
    )
    out = load_method(5, "conc_median").apply(MethodInput(aeid=1, level=5, frame=frame)).frame
    rows = {(r.chid, r.conc): (r.resp, r.nwll, r.nhit) for r in out.itertuples()}
    assert rows == {(1, 1.0): (2.0, 2, 1), (1, 10.0): (2.0, 1, 1), (2, 1.0): (10.0, 1, 1)}


class _RecordingEngine(SummarizerEngine):
    name = "recording"
    version = "9.9"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.requests = []

    def summarize(self, request):
        self.requests.append(request)
        if request.chid == 99:
            raise RuntimeError("boom")
        return SummaryResult(model="fake", hitc=1, ac50=float(max(request.conc)), mec=1.0, params={"k": 1})


def test_activity_summary_calls_engine_per_chemical(monkeypatch):
    engine = _RecordingEngine()
    monkeypatch.setattr("hcspipe.pipeline.methods.summary.load_summarizer", lambda name, **kw: engine)
    frame = pd.DataFrame({"chid": [1, 1, 2], "conc": [1.0, 10.0, 5.0], "resp": [0.1, 2.0, 0.0]})

    method = load_method(6, "activity_summary")
    with pytest.raises(MissingCutoff):
        method.apply(MethodInput(aeid=3, level=6, frame=frame))

    out = method.apply(MethodInput(aeid=3, level=6, frame=frame, cutoff=0.5)).frame
    assert out["chid"].tolist() == [1, 2]
    assert out["ac50"].tolist() == [10.0, 5.0]
    assert [r.cutoff for r in engine.requests] == [0.5, 0.5]
    params = json.loads(out.iloc[0]["params_json"])
    assert params["engine"] == "recording"
    assert params["params"] == {"k": 1}


def test_activity_summary_wraps_engine_errors(monkeypatch):
    monkeypatch.setattr("hcspipe.pipeline.methods.summary.load_summarizer", lambda name, **kw: _RecordingEngine())
    frame = pd.DataFrame({"chid": [99], "conc": [1.0], "resp": [1.0]})
    with pytest.raises(TransformFailure, match="chid=99"):
        load_method(6, "activity_summary").apply(MethodInput(aeid=3, level=6, frame=frame, cutoff=0.5))


def test_log2_values_for_eightfold_treatment():
    frame = lvl0_frame([(i, "PL01", "n" if i < 4 else "t", v) for i, v in enumerate([10.0, 11.0, 9.0, 80.0], start=1)])
    out = load_method(1, "log2_plate_nctrl").apply(MethodInput(aeid=1, level=1, frame=frame)).frame
    assert all(math.isfinite(v) for v in out["resp"])
    assert out.set_index("waid").loc[4, "resp"] == pytest.approx(3.0)
