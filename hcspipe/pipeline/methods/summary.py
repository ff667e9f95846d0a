"""
Level 6: per-chemical activity summary through the configured summarizer engine.
"""

from __future__ import annotations

import json

import pandas as pd

from hcspipe.errors import HcsError, TransformFailure
from hcspipe.pipeline.plugins.summarizer import SummaryRequest, load_summarizer
from hcspipe.utils.logging import get_logger

from .base import Method, MethodInput, MethodResult, register_method

log = get_logger(__name__)

OUTPUT_COLUMNS = ["chid", "model", "hitc", "top", "ac50", "ac10", "acc", "mec", "fit_quality", "params_json"]


@register_method
class ActivitySummary(Method):
    name = "activity_summary"
    level = 6
    default = True
    description = "fit each chemical's concentration series and report AC50, AC10, ACC and MEC"
    needs = ("cutoff",)

    def apply(self, data: MethodInput) -> MethodResult:
        cutoff = self.require_cutoff(data)
        engine_name = str(data.options.get("engine") or data.settings.summarizer)
        engine_opts = dict(data.settings.summarizer_options)
        engine_opts.update(data.options.get("engine_options") or {})
        engine = load_summarizer(engine_name, **engine_opts)

        rows = []
        for chid, series in data.frame.groupby("chid", sort=True):
            request = SummaryRequest(
                aeid=data.aeid,
                chid=int(chid),
                conc=series["conc"].to_numpy(dtype=float),
                resp=series["resp"].to_numpy(dtype=float),
                cutoff=cutoff,
            )
            try:
                result = engine.summarize(request)
            except HcsError:
                raise
            except Exception as exc:
                raise TransformFailure(f"{engine.name} failed for chid={int(chid)}: {exc}") from exc
            rows.append(
                {
                    "chid": int(chid),
                    "model": result.model,
                    "hitc": int(result.hitc),
                    "top": result.top,
                    "ac50": result.ac50,
                    "ac10": result.ac10,
                    "acc": result.acc,
                    "mec": result.mec,
                    "fit_quality": result.fit_quality,
                    "params_json": json.dumps(
                        {"engine": engine.name, "engine_version": engine.version, "cutoff": cutoff,
                         "params": dict(result.params), "diagnostics": dict(result.diagnostics)},
                        sort_keys=True,
                        default=str,
                    ),
                }
            )
            log.debug("aeid=%s chid=%s: model=%s hitc=%s", data.aeid, chid, result.model, result.hitc)

        frame = pd.DataFrame(rows, columns=OUTPUT_COLUMNS)
        return MethodResult(frame=frame, diagnostics={"engine": engine.name, "n_chem": len(rows)})
