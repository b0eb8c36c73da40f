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
Seeded forward-mode differentiation of stencil residuals.

A stencil function maps the unknowns it touches to one or more residual
contributions,

    fn(x, params, consts) -> r,   x.shape == (n_directions,), r.shape == (n_outputs,)

where ``params`` holds per-stencil data (geometry, doping, previous values)
and ``consts`` data shared by all stencils of a pass (time step sizes).
``StencilKernel`` vectorises it over many stencils and evaluates the local
Jacobian with ``jax.jvp`` over an explicit identity seed matrix, one
direction per touched unknown. The direction count is fixed at construction.
"""
from typing import Any, Callable, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
import numpy.typing as npt
from jax import jit, vmap

from .errors import StencilInvariantViolation

NDArray = npt.NDArray[np.floating]

StencilFn = Callable[[Any, Any, Any], Any]


class StencilKernel:
    """Vectorised value and Jacobian of a stencil residual.

    Parameters
    ----------
    fn : callable
        Stencil residual ``fn(x, params, consts)``.
    n_directions : int
        Number of unknowns touched by one stencil (width of ``x``).
    n_outputs : int
        Number of residual contributions returned by one stencil.
    name : str, optional
        Label used in error messages.
    """

    def __init__(self,
                 fn: StencilFn,
                 n_directions: int,
                 n_outputs: int = 1,
                 name: Optional[str] = None) -> None:

        if n_directions < 1:
            raise StencilInvariantViolation("A stencil needs at least one direction")

        self.fn = fn
        self.n_directions = int(n_directions)
        self.n_outputs = int(n_outputs)
        self.name = name if name is not None else getattr(fn, '__name__', 'stencil')

        seeds = jnp.eye(self.n_directions)

        def value(x, params, consts):
            return jnp.reshape(fn(x, params, consts), (self.n_outputs,))

        def value_and_jac(x, params, consts):
            def f(xx):
                return value(xx, params, consts)

            def push(seed):
                return jax.jvp(f, (x,), (seed,))

            vals, tangents = vmap(push)(seeds)
            return vals[0], tangents.T

        self._value = jit(vmap(value, in_axes=(0, 0, None)))
        self._value_and_jac = jit(vmap(value_and_jac, in_axes=(0, 0, None)))

    def _check_width(self, x) -> None:
        if x.ndim != 2 or x.shape[1] != self.n_directions:
            raise StencilInvariantViolation(
                f"Stencil '{self.name}' expects {self.n_directions} directions, got input of shape {x.shape}")

    def _check_finite(self, *arrays) -> None:
        for a in arrays:
            if not np.all(np.isfinite(a)):
                raise StencilInvariantViolation(f"Non-finite value in stencil '{self.name}'")

    def value(self, x: NDArray, params, consts=()) -> NDArray:
        """Residual contributions, shape (n_stencils, n_outputs)."""
        x = np.asarray(x, dtype=np.float64)
        self._check_width(x)
        if len(x) == 0:
            return np.zeros((0, self.n_outputs))

        r = np.asarray(self._value(x, params, consts))
        self._check_finite(r)
        return r

    def value_and_jacobian(self, x: NDArray, params, consts=()) -> Tuple[NDArray, NDArray]:
        """Residual contributions and their derivatives.

        Returns
        -------
        r : NDArray, shape (n_stencils, n_outputs)
        J : NDArray, shape (n_stencils, n_outputs, n_directions)
        """
        x = np.asarray(x, dtype=np.float64)
        self._check_width(x)
        if len(x) == 0:
            return np.zeros((0, self.n_outputs)), np.zeros((0, self.n_outputs, self.n_directions))

        r, J = self._value_and_jac(x, params, consts)
        r, J = np.asarray(r), np.asarray(J)
        self._check_finite(r, J)
        return r, J
