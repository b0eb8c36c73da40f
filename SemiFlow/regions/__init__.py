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
from .base import Region, StencilPass  # noqa: F401
from .semiconductor import SemiconductorRegion  # noqa: F401
from .poisson import PoissonRegion, InsulatorRegion, ConductorRegion, VacuumRegion  # noqa: F401
from .resistive import ResistiveRegion  # noqa: F401
from ..layout import RegionType

REGION_CLASSES = {
    RegionType.SEMICONDUCTOR: SemiconductorRegion,
    RegionType.INSULATOR: InsulatorRegion,
    RegionType.CONDUCTOR: ConductorRegion,
    RegionType.RESISTIVE: ResistiveRegion,
    RegionType.VACUUM: VacuumRegion,
}

MATERIAL_REGION_TYPE = {
    'semiconductor': RegionType.SEMICONDUCTOR,
    'insulator': RegionType.INSULATOR,
    'conductor': RegionType.CONDUCTOR,
    'resistive': RegionType.RESISTIVE,
    'vacuum': RegionType.VACUUM,
}


def create_region(index: int, name: str, material, mesh, **kwargs) -> Region:
    """Region assembler matching the family of ``material``."""
    cls = REGION_CLASSES[MATERIAL_REGION_TYPE[material.kind]]
    return cls(index, name, material, mesh, **kwargs)
