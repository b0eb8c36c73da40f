#
# Copyright 2025 Hannes Holey
#           2025 Christoph Huber
#
# ### MIT License
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
r"""
Lumped external circuit of an electrode.

Voltage driven::

          _____                 Ve
    -----|_____|----/\/\/\/\-------> electrode (Ve, I)
    | +     R          L       |
   Vapp                     C ===
    | -                        |
    |__________________________|

Current driven::

                                Ve
    -->-----------------------------> electrode (Ve, I)
    |                          |
   Iapp                     C ===
    |__________________________|

Inter-connect member::

          _____                 Ve
    -----|_____|-------------------> electrode (Ve, I)
    |       R
   V_hub

``I`` is the conduction (plus displacement) current flowing from the
electrode into the device.
"""
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..errors import BoundaryConfigurationError


# ---------------------------
# Sources
# ---------------------------

@dataclass
class DCSource:
    value: float = 0.

    def __call__(self, t: float) -> float:
        return self.value


@dataclass
class PulseSource:
    """Trapezoidal pulse train between ``v1`` and ``v2``.

    Parameters
    ----------
    v1, v2 : float
        Base and pulse level.
    td : float
        Delay before the first rising edge.
    tr, tf : float
        Rise and fall time.
    pw : float
        Pulse width at level ``v2``.
    period : float
        Repetition period (``inf`` for a single pulse).
    """
    v1: float = 0.
    v2: float = 1.
    td: float = 0.
    tr: float = 1e-9
    tf: float = 1e-9
    pw: float = 5e-9
    period: float = np.inf

    def __call__(self, t: float) -> float:
        if t < self.td:
            return self.v1
        tau = (t - self.td) % self.period if np.isfinite(self.period) else t - self.td
        if tau < self.tr:
            return self.v1 + (self.v2 - self.v1) * tau / self.tr
        tau -= self.tr
        if tau < self.pw:
            return self.v2
        tau -= self.pw
        if tau < self.tf:
            return self.v2 + (self.v1 - self.v2) * tau / self.tf
        return self.v1


@dataclass
class SineSource:
    """``v0 + amplitude * sin(2 pi freq (t - td))`` for ``t >= td``."""
    v0: float = 0.
    amplitude: float = 1.
    freq: float = 1e6
    td: float = 0.

    def __call__(self, t: float) -> float:
        if t < self.td:
            return self.v0
        return self.v0 + self.amplitude * np.sin(2. * np.pi * self.freq * (t - self.td))


SOURCES = {'dc': DCSource, 'pulse': PulseSource, 'sin': SineSource}


def make_source(spec) -> object:
    """Source from a number (dc value) or a dict ``{'type': ..., **params}``."""
    if spec is None:
        return DCSource()
    if isinstance(spec, (int, float)):
        return DCSource(float(spec))
    spec = dict(spec)
    kind = spec.pop('type', 'dc')
    try:
        cls = SOURCES[kind]
    except KeyError:
        raise BoundaryConfigurationError(f"Unknown source type '{kind}'. Available: {sorted(SOURCES)}") from None
    return cls(**{k: float(v) for k, v in spec.items()})


# ---------------------------
# Circuit
# ---------------------------

DRIVERS = ('voltage', 'current', 'inter_connect')


@dataclass
class ExternalCircuit:
    """State and equation of the lumped circuit attached to one electrode.

    Attributes
    ----------
    driver : str
        'voltage', 'current' or 'inter_connect'.
    R, C, L : float
        Series resistance [Ohm], capacitance to ground [F], series inductance [H].
    source : callable
        Applied voltage (or current) as a function of time.
    potential, current, cap_current : float
        Electrode potential, device current and capacitor current of the last
        accepted step.
    potential_itering, current_itering : float
        Values of the current Newton iterate.
    """
    driver: str = 'voltage'
    R: float = 0.
    C: float = 0.
    L: float = 0.
    source: object = field(default_factory=DCSource)
    potential: float = 0.
    current: float = 0.
    cap_current: float = 0.
    potential_itering: float = 0.
    current_itering: float = 0.

    def __post_init__(self):
        if self.driver not in DRIVERS:
            raise BoundaryConfigurationError(f"Circuit driver must be one of {DRIVERS}, got '{self.driver}'")
        if min(self.R, self.C, self.L) < 0.:
            raise BoundaryConfigurationError("Circuit R, C and L must be non-negative")
        if self.driver == 'inter_connect' and self.R <= 0.:
            raise BoundaryConfigurationError("Inter-connect electrodes need a positive resistance")

    @property
    def is_voltage_driven(self) -> bool:
        return self.driver == 'voltage'

    @property
    def is_current_driven(self) -> bool:
        return self.driver == 'current'

    @property
    def is_inter_connect(self) -> bool:
        return self.driver == 'inter_connect'

    def applied(self, t: float) -> float:
        return float(self.source(t))

    def set_dc(self, value: float) -> None:
        self.source = DCSource(float(value))

    def row_scale(self) -> float:
        if self.is_voltage_driven:
            return 1. / (1. + self.R)
        return 1.

    def _grounded(self, ctx) -> bool:
        return ctx.equilibrium and not self.is_inter_connect

    def current_factor(self, ctx) -> float:
        """Derivative of the circuit equation with respect to the device current."""
        if self.is_inter_connect:
            return self.R
        if self.is_voltage_driven or self._grounded(ctx):
            if ctx.transient:
                return self.L / ctx.dt + self.R
            return self.R
        return 1.

    def diagonal(self, ctx) -> float:
        """Derivative of the circuit equation with respect to ``Ve``."""
        if self.is_inter_connect:
            return 1.
        if self.is_voltage_driven or self._grounded(ctx):
            if ctx.transient:
                return 1. + (self.L / ctx.dt + self.R) * self.C / ctx.dt
            return 1.
        return 0.

    def residual(self, I: float, Ve: float, ctx, V_hub: Optional[float] = None) -> float:
        """Circuit equation value for device current ``I`` and electrode potential ``Ve``."""
        self.current_itering = float(I)
        self.potential_itering = float(Ve)

        if self.is_inter_connect:
            return self.R * I + Ve - V_hub

        if self._grounded(ctx):
            return self.R * I + Ve

        if self.is_voltage_driven:
            Vapp = self.applied(ctx.time)
            if not ctx.transient:
                return self.R * I + Ve - Vapp
            c = self.L / ctx.dt + self.R
            return (c * I + (Ve - Vapp) + c * self.C / ctx.dt * (Ve - self.potential)
                    - self.L / ctx.dt * (self.current + self.cap_current))

        Iapp = self.applied(ctx.time)
        if not ctx.transient:
            return I - Iapp
        return I + self.cap_current - Iapp

    def update(self, dt: Optional[float] = None) -> None:
        """Commit the iterate after an accepted step."""
        if dt:
            self.cap_current = self.C * (self.potential_itering - self.potential) / dt
        else:
            self.cap_current = 0.
        self.potential = self.potential_itering
        self.current = self.current_itering

    def rollback(self) -> None:
        """Discard the iterate of a rejected step."""
        self.potential_itering = self.potential
        self.current_itering = self.current
