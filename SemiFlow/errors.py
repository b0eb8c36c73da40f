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
"""
Exception hierarchy.

Setup-time problems (``BoundaryConfigurationError``) are raised before any
solve starts. Stencil-level problems (``StencilInvariantViolation``) are
programming or modelling bugs and are never caught inside the package.
``NonlinearDivergence`` and ``TruncationToleranceExceeded`` are signals that
the solver drivers recover from with a bounded number of retries; once the
retries are exhausted they surface as ``SolveFailed``.
"""
from typing import Optional


class SemiFlowError(Exception):
    """Base class for all errors raised by SemiFlow."""


class StencilInvariantViolation(SemiFlowError, RuntimeError):
    """Internal consistency failure inside a stencil evaluation.

    Examples are a stencil width that does not match the number of seeded
    derivative directions, a non-finite residual or derivative, or a row
    merge whose destination lacks a reserved matrix position.
    """


class BoundaryConfigurationError(SemiFlowError, ValueError):
    """A boundary condition cannot be realised on the given regions."""


class NonlinearDivergence(SemiFlowError, RuntimeError):
    """Newton iteration failed to converge.

    Parameters
    ----------
    message : str
        Human readable reason.
    iterations : int, optional
        Number of Newton iterations performed.
    residual_norm : float, optional
        Last (scaled) residual norm.
    """

    def __init__(self, message: str, iterations: int = 0,
                 residual_norm: Optional[float] = None):
        super().__init__(message)
        self.iterations = iterations
        self.residual_norm = residual_norm


class TruncationToleranceExceeded(SemiFlowError):
    """Local truncation error of a time step is above tolerance.

    Not an error in the usual sense: the transient driver rejects the step
    and retries with ``next_dt``.
    """

    def __init__(self, lte: float, next_dt: float):
        super().__init__(f"LTE norm {lte:.3e} > 1, retry with dt = {next_dt:.3e}")
        self.lte = lte
        self.next_dt = next_dt


class SolveFailed(SemiFlowError, RuntimeError):
    """Bounded recovery did not rescue a solve step."""
