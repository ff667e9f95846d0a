"""
Level 2: estimate the endpoint's noise band and carry responses forward.
"""

from __future__ import annotations

from hcspipe.pipeline.noise_band import compute_noise_band

from .base import Method, MethodInput, MethodResult, register_method


class _NoiseBandMethod(Method):
    level = 2
    needs = ("controls",)

    def apply(self, data: MethodInput) -> MethodResult:
        multiplier = float(data.options.get("multiplier", data.settings.nband_multiplier))
        min_controls = int(data.options.get("min_controls", data.settings.min_controls))
        controls = data.controls if data.controls is not None else []
        band = compute_noise_band(
            controls,
            aeid=data.aeid,
            scope=self.control_scope,
            lvl=self.input_level,
            min_controls=min_controls,
            multiplier=multiplier,
            method=self.name,
        )
        frame = data.frame.loc[:, ["waid", "resp"]].reset_index(drop=True)
        return MethodResult(
            frame=frame,
            noise_band=band.as_row(),
            diagnostics={"cutoff": band.cutoff, "n_ctrl": band.n_ctrl},
        )


@register_method
class NbandMad3Study(_NoiseBandMethod):
    name = "nband_mad3_study"
    default = True
    description = "cutoff = 3 * MAD of this study's negative-control level-1 responses"
    control_scope = "study"


@register_method
class NbandMad3Global(_NoiseBandMethod):
    name = "nband_mad3_global"
    description = "cutoff = 3 * MAD of negative-control level-1 responses pooled over every study of the endpoint"
    control_scope = "global"
