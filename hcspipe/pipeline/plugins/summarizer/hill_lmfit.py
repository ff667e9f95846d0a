"""
Three-parameter Hill summarizer using lmfit.

The model works on log10 concentration:

    resp = top / (1 + 10 ** ((logac50 - x) * hill))
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

import numpy as np
from lmfit import Model

from hcspipe.errors import TransformFailure

from .base import SummarizerEngine, SummaryRequest, SummaryResult, register_summarizer

_LOG10_9 = math.log10(9.0)


def _hill_model(x: np.ndarray, top: float, logac50: float, hill: float) -> np.ndarray:
    return top / (1.0 + np.power(10.0, (logac50 - x) * hill))


def _stderr(param) -> Optional[float]:
    return float(param.stderr) if param.stderr is not None else None


@register_summarizer
class HillLmfitSummarizer(SummarizerEngine):
    """Hill curve fit with MEC, AC50, AC10 and ACC read off the fitted curve."""

    name = "hill_lmfit"
    version = "0.1.0"

    def summarize(self, request: SummaryRequest) -> SummaryResult:
        conc = np.asarray(request.conc, dtype=float)
        resp = np.asarray(request.resp, dtype=float)
        if conc.shape != resp.shape:
            raise TransformFailure(f"chid={request.chid}: concentration and response lengths differ.")
        keep = np.isfinite(conc) & np.isfinite(resp) & (conc > 0)
        conc, resp = conc[keep], resp[keep]
        if conc.size == 0:
            raise TransformFailure(f"chid={request.chid}: no usable concentration/response pairs.")

        cutoff = float(request.cutoff)
        above = resp > cutoff
        mec = float(conc[above].min()) if above.any() else None
        n_conc = int(np.unique(conc).size)

        if not above.any():
            return SummaryResult(
                model="constant",
                hitc=0,
                top=float(resp.max()),
                mec=None,
                params={},
                diagnostics={"n_conc": n_conc, "reason": "no response above cutoff"},
            )

        min_conc = int(request.options.get("min_concentrations", self._options.get("min_concentrations", 3)))
        if n_conc < min_conc:
            raise TransformFailure(
                f"chid={request.chid}: active series has {n_conc} concentration(s); {min_conc} required for a fit."
            )

        x = np.log10(conc)
        order = np.argsort(x)
        x, y = x[order], resp[order]
        fit = self._fit(x, y, request)

        top = float(fit.params["top"].value)
        logac50 = float(fit.params["logac50"].value)
        hill = float(fit.params["hill"].value)
        if not all(math.isfinite(v) for v in (top, logac50, hill)) or hill <= 0:
            raise TransformFailure(f"chid={request.chid}: Hill fit returned non-finite parameters.")

        ss_res = float(np.sum((y - fit.best_fit) ** 2))
        ss_tot = float(np.sum((y - y.mean()) ** 2))
        r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else None

        acc = None
        if cutoff > 0 and top > cutoff:
            acc = 10.0 ** (logac50 - math.log10(top / cutoff - 1.0) / hill)

        return SummaryResult(
            model="hill",
            hitc=int(top > cutoff),
            top=top,
            ac50=10.0 ** logac50,
            ac10=10.0 ** (logac50 - _LOG10_9 / hill),
            acc=acc,
            mec=mec,
            fit_quality=r2,
            params={
                "top": top,
                "logac50": logac50,
                "hill": hill,
                "top_stderr": _stderr(fit.params["top"]),
                "logac50_stderr": _stderr(fit.params["logac50"]),
                "hill_stderr": _stderr(fit.params["hill"]),
            },
            diagnostics=self._diagnostics(fit, n_conc),
        )

    def _fit(self, x: np.ndarray, y: np.ndarray, request: SummaryRequest):
        model = Model(_hill_model)
        params = model.make_params(
            top=float(np.max(y)),
            logac50=float(np.median(x)),
            hill=1.0,
        )
        span = float(np.max(np.abs(y))) or 1.0
        params["top"].set(min=0.0, max=float(self._options.get("top_scale", 1.5)) * span)
        params["logac50"].set(min=float(x.min()) - 2.0, max=float(x.max()) + 2.0)
        params["hill"].set(min=float(self._options.get("hill_min", 0.3)), max=float(self._options.get("hill_max", 8.0)))
        try:
            result = model.fit(y, params, x=x, nan_policy="omit")
        except (ValueError, TypeError) as exc:
            raise TransformFailure(f"chid={request.chid}: Hill fit failed: {exc}") from exc
        if not result.success:
            raise TransformFailure(f"chid={request.chid}: Hill fit did not converge ({result.message}).")
        return result

    @staticmethod
    def _diagnostics(fit, n_conc: int) -> Dict[str, Any]:
        return {
            "n_conc": n_conc,
            "ndata": int(fit.ndata),
            "nfev": int(getattr(fit, "nfev", 0) or 0),
            "chisq": float(getattr(fit, "chisqr", float("nan"))),
            "aic": float(getattr(fit, "aic", float("nan"))),
            "bic": float(getattr(fit, "bic", float("nan"))),
        }
