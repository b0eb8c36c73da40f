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
Simulation driver: builds mesh, regions and boundaries from an input
dictionary and runs the solve types

    equilibrium   all electrodes grounded, generation off
    steadystate   DC operating point at the applied sources
    dcsweep       stepped source on one electrode, step halving on divergence
    transient     BDF1/BDF2 with LTE step control
"""
import io
import os
from typing import Dict, List, Optional, Self, Type

import numpy as np
from mpi4py import MPI

from . import __version__
from .boundary import ExternalCircuit, InterConnectHub, InterfaceBC, NeumannBC, OhmicContactBC, make_source
from .errors import BoundaryConfigurationError, NonlinearDivergence, SolveFailed, TruncationToleranceExceeded
from .fvm.time_control import LTE_ATOL, StepController, lte_norm
from .io import create_output_directory, history_to_csv, print_header, read_yaml_input, write_yaml
from .logging import get_logger
from .material import BulkTrap, DopingProfile, get_material
from .mesh import Mesh, box_regions
from .regions import create_region
from .solver import NEWTON_DEFAULTS, AssemblyContext, Orchestrator

logger = get_logger("semiflow.simulation")

AXES = {'x': 0, 'y': 1}


class Simulation:
    """
    Device simulation assembled from a sanitized input dictionary.

    Parameters
    ----------
    options : dict
        Output options and ambient temperature.
    mesh : dict
        Mesh builder, coordinates and region boxes.
    regions : dict
        Material, parameter overrides, doping and generation per region.
    boundaries : list of dict
        Boundary conditions, see ``SemiFlow.io.sanitize_boundaries``.
    solver : dict
        Solve type, Newton options and sweep / transient controls.
    comm : MPI communicator, optional
    """

    def __init__(self,
                 options: dict,
                 mesh: dict,
                 regions: dict,
                 boundaries: list,
                 solver: dict,
                 comm=MPI.COMM_WORLD) -> None:

        self.options = options
        self.mesh_spec = mesh
        self.region_spec = regions
        self.boundary_spec = boundaries
        self.solver_spec = solver
        self.comm = comm
        self.T_ext = options['T_ext']

        self.mesh = self._build_mesh(mesh)
        self.regions = self._build_regions(regions)
        self.boundaries = self._build_boundaries(boundaries)

        newton = {k: solver[k] for k in NEWTON_DEFAULTS if k in solver}
        self.orchestrator = Orchestrator(self.mesh, self.regions, self.boundaries, newton, comm)
        self.orchestrator.setup(lattice=solver['lattice_heating'], energy_balance=solver['energy_balance'])

        self.history: List[Dict[str, float]] = []
        self.time = 0.
        self.outdir = None

        if not options['silent'] and comm.Get_rank() == 0:
            self.outdir = create_output_directory(options['output'], options['use_tstamp'])
            full_dict = {'version': __version__,
                         'options': options,
                         'mesh': mesh,
                         'regions': regions,
                         'boundaries': boundaries,
                         'solver': solver}
            write_yaml(full_dict, os.path.join(self.outdir, 'config.yml'))

    # ---------------------------
    # Constructors
    # ---------------------------

    @classmethod
    def from_yaml(cls: Type[Self], fname: str) -> Self:
        """
        Create a Simulation instance from a YAML file.

        Parameters
        ----------
        fname : str
            Path to YAML configuration file.

        Returns
        -------
        Simulation
        """
        logger.info(f"Reading input file: {fname}")
        with open(fname, "r") as ymlfile:
            input_dict = read_yaml_input(ymlfile)

        return cls.from_dict(input_dict)

    @classmethod
    def from_string(cls: Type[Self], ymlstring: str) -> Self:
        """Create a Simulation instance from a YAML string."""
        with io.StringIO(ymlstring) as ymlfile:
            input_dict = read_yaml_input(ymlfile)

        return cls.from_dict(input_dict)

    @classmethod
    def from_dict(cls: Type[Self], input_dict: dict) -> Self:
        """Create a Simulation instance from a sanitized input dictionary."""
        return cls(input_dict['options'],
                   input_dict['mesh'],
                   input_dict['regions'],
                   input_dict['boundaries'],
                   input_dict['solver'])

    # ---------------------------
    # Setup
    # ---------------------------

    def _build_mesh(self, spec: dict) -> Mesh:
        names = [r['name'] for r in spec['regions']]
        kwargs = dict(cell_region=box_regions(spec['regions'], 1 if spec['type'] == 'line' else 2),
                      region_names=names,
                      z_width=spec['z_width'],
                      truncate=spec['truncate'])
        if spec['type'] == 'line':
            mesh = Mesh.line(spec['x'], **kwargs)
        else:
            mesh = Mesh.rectangle(spec['x'], spec['y'], **kwargs)
        mesh.partition(self.comm.Get_size())
        return mesh

    def _build_regions(self, spec: dict) -> list:
        regions = []
        for index, name in enumerate(self.mesh.region_names):
            r = spec[name]
            material = get_material(r['material'], **r['parameters'])
            doping = [DopingProfile(**p) for p in r['doping']]
            kwargs = {'doping': doping, 'generation': r['generation'], 'T_ext': self.T_ext}
            if material.kind == 'semiconductor':
                kwargs['models'] = r['models']
                kwargs['traps'] = [BulkTrap(**t) for t in r['traps']]
            elif doping:
                raise BoundaryConfigurationError(f"Region '{name}' is not a semiconductor and cannot be doped")
            elif r['traps'] or any(r['models'].values()):
                raise BoundaryConfigurationError(f"Region '{name}' is not a semiconductor and cannot hold "
                                                 "traps or generation models")
            regions.append(create_region(index, name, material, self.mesh, **kwargs))
        return regions

    def _locate(self, loc: dict) -> np.ndarray:
        if 'axis' in loc:
            return self.mesh.nodes_on(AXES[loc['axis']], loc['value'])
        return self.mesh.nodes_in_box(loc['lower'], loc['upper'])

    def _build_boundaries(self, spec: list) -> list:
        electrodes = {}
        surgery = []
        others = []

        for b in spec:
            if b['type'] == 'inter_connect':
                continue
            nodes = self._locate(b['location'])
            if b['type'] == 'ohmic':
                c = b['circuit']
                circuit = ExternalCircuit(driver=c['driver'], R=c['R'], C=c['C'], L=c['L'],
                                          source=make_source(c['source']))
                bc = OhmicContactBC(b['name'], nodes, circuit)
                electrodes[bc.name] = bc
                surgery.append(bc)
            elif b['type'] == 'interface':
                surgery.append(InterfaceBC(b['name'], nodes, interface_charge=b['interface_charge']))
            else:
                others.append((b, nodes))

        hubs = []
        for b in spec:
            if b['type'] == 'inter_connect':
                try:
                    members = [electrodes[m] for m in b['members']]
                except KeyError as err:
                    raise BoundaryConfigurationError(f"Inter-connect '{b['name']}' names unknown electrode {err}") from None
                hubs.append(InterConnectHub(b['name'], members))

        claimed = np.zeros(self.mesh.n_nodes, dtype=np.int64)
        for bc in surgery:
            claimed[bc.nodes] += 1
        if np.any(claimed > 1):
            node = int(np.flatnonzero(claimed > 1)[0])
            raise BoundaryConfigurationError(f"Node {node} is claimed by more than one electrode or interface")

        free = np.setdiff1d(self.mesh.interface_nodes(), np.flatnonzero(claimed))
        if len(free):
            surgery.append(InterfaceBC('interfaces', free))

        contact_nodes = np.concatenate([bc.nodes for bc in electrodes.values()] + [np.zeros(0, np.int64)])
        neumann = [NeumannBC(b['name'], np.setdiff1d(nodes, contact_nodes), heat_transfer=b['heat_transfer'])
                   for b, nodes in others]

        boundaries = surgery + neumann + hubs
        for bc in boundaries:
            bc.attach(self.mesh, self.regions)
        return boundaries

    # ---------------------------
    # Accessors
    # ---------------------------

    def boundary(self, name: str):
        for bc in self.boundaries:
            if bc.name == name:
                return bc
        raise KeyError(f"Unknown boundary '{name}'")

    @property
    def electrodes(self) -> List[OhmicContactBC]:
        return [bc for bc in self.boundaries if isinstance(bc, OhmicContactBC)]

    def _record(self, **extra) -> None:
        row = {'time': self.time}
        row.update(extra)
        for e in self.electrodes:
            row[f'{e.name}_V'] = e.circuit.potential
            row[f'{e.name}_I'] = e.circuit.current
        self.history.append(row)

    def _context(self, **kwargs) -> AssemblyContext:
        return AssemblyContext(T_ext=self.T_ext, **kwargs)

    # ---------------------------
    # Solve types
    # ---------------------------

    def _solve(self, ctx: AssemblyContext):
        """Solve and commit with bounded retries on divergence (halved potential update)."""
        orch = self.orchestrator
        base = orch.options['potential_update']
        try:
            for attempt in range(self.solver_spec['max_retry'] + 1):
                orch.options['potential_update'] = base * 0.5**attempt
                try:
                    res = orch.iterate(ctx)
                except NonlinearDivergence as err:
                    logger.info(f"Attempt {attempt}: {err}")
                    continue
                orch.update_solution(res.x, ctx)
                return res
        finally:
            orch.options['potential_update'] = base
        raise SolveFailed(f"No convergence after {self.solver_spec['max_retry'] + 1} attempts")

    def equilibrium(self):
        """Thermal equilibrium: grounded electrodes, no generation."""
        print_header("EQUILIBRIUM")
        res = self._solve(self._context(equilibrium=True))
        logger.info(f"Equilibrium converged in {res.iterations} iterations")
        self._record()
        return res

    def steadystate(self):
        """DC operating point at the source values at ``self.time``."""
        print_header("STEADY STATE")
        res = self._solve(self._context(time=self.time))
        logger.info(f"Steady state converged in {res.iterations} iterations")
        self._record()
        return res

    def dcsweep(self, electrode: str, start: float, stop: float, step: float,
                min_step: Optional[float] = None) -> List[Dict[str, float]]:
        """Sweep the DC source of ``electrode`` from ``start`` to ``stop``.

        A diverged point is retried with half the step, down to ``min_step``.
        """
        print_header("DC SWEEP")
        bc = self.boundary(electrode)
        if not isinstance(bc, OhmicContactBC) or bc.circuit.is_inter_connect:
            raise BoundaryConfigurationError(f"'{electrode}' is not a voltage or current driven electrode")
        min_step = abs(step) / 64. if min_step is None else min_step
        direction = np.sign(stop - start) if stop != start else 1.
        step = direction * abs(step)

        orch = self.orchestrator
        value = start
        h = step
        points = []
        first = True

        logger.info(61 * '-')
        logger.info(f"{'Source':<14s} {'Iter':<6s} " + " ".join(f"{e.name + ' [A]':<14s}" for e in self.electrodes))
        logger.info(61 * '-')

        while True:
            bc.circuit.set_dc(value)
            ctx = self._context(time=self.time)
            try:
                res = orch.iterate(ctx)
            except NonlinearDivergence:
                if first or abs(h) / 2. < min_step:
                    raise SolveFailed(f"DC sweep failed at {electrode} = {value:.4e}") from None
                value -= h
                h /= 2.
                value += h
                logger.info(f"Sweep step reduced to {h:.4e}")
                continue

            orch.update_solution(res.x, ctx)
            self._record(source=value)
            points.append(self.history[-1])
            logger.info(f"{value:<14.6e} {res.iterations:<6d} "
                        + " ".join(f"{e.circuit.current:<14.6e}" for e in self.electrodes))

            if (value - stop) * direction >= -1e-12 * max(abs(stop), 1.):
                break
            first = False
            h = direction * min(abs(h) * 2., abs(step))
            value = value + h
            if (value - stop) * direction > 0.:
                value = stop

        return points

    def transient(self, t_stop: float, dt: float, t_start: float = 0., bdf2: bool = True,
                  adaptive: bool = True, rtol: float = 1e-3,
                  dt_min: Optional[float] = None, dt_max: Optional[float] = None) -> List[Dict[str, float]]:
        """Time integration from the stored state with BDF1 / BDF2 and LTE control."""
        print_header("TRANSIENT")
        orch = self.orchestrator
        controller = StepController(dt_min=0. if dt_min is None else dt_min,
                                    dt_max=np.inf if dt_max is None else dt_max)
        dt_floor = dt * 1e-6 if dt_min is None else dt_min
        row_kind = orch.row_kind
        # Potential-only devices have no truncation error estimate
        n_counted = self.comm.allreduce(int(np.isin(row_kind, list(LTE_ATOL)).sum()), op=MPI.SUM)
        adaptive = adaptive and n_counted > 0

        orch.start_transient()
        self.time = t_start
        solutions = [orch.owned_solution()]
        steps: List[float] = []
        points = []
        step = 0

        logger.info(75 * '-')
        logger.info(f"{'Step':<6s} {'Timestep':<12s} {'Time':<12s} {'Iter':<6s} {'LTE':<12s}")
        logger.info(75 * '-')

        while self.time < t_stop * (1. - 1e-12):
            dt = min(dt, t_stop - self.time)
            use_bdf2 = bdf2 and len(steps) >= 1
            ctx = self._context(transient=True, bdf2=use_bdf2, dt=dt,
                                dt_last=steps[-1] if steps else dt, time=self.time + dt)
            try:
                res = orch.iterate(ctx)
            except NonlinearDivergence:
                dt *= 0.5
                if dt < dt_floor:
                    raise SolveFailed(f"Time step fell below {dt_floor:.3e} s at t = {self.time:.4e} s") from None
                logger.info(f"Diverged, retry with dt = {dt:.4e}")
                continue

            r = 0.
            dt_next = dt
            order = 2 if use_bdf2 and len(solutions) >= 3 else 1
            if adaptive and len(solutions) >= order + 1:
                history = solutions[::-1][:order + 1]
                h = [dt] + steps[::-1][:order]
                r = lte_norm(res.x, history, h, row_kind, rtol=rtol, comm=self.comm)
                try:
                    dt_next = controller.check(dt, r, order)
                except TruncationToleranceExceeded as err:
                    orch.reject()
                    dt = err.next_dt
                    if dt < dt_floor:
                        raise SolveFailed(f"Time step fell below {dt_floor:.3e} s at t = {self.time:.4e} s") from None
                    logger.info(f"{err}")
                    continue

            orch.update_solution(res.x, ctx)
            self.time += dt
            step += 1
            steps.append(dt)
            solutions = (solutions + [res.x])[-3:]
            self._record(dt=dt)
            points.append(self.history[-1])
            logger.info(f"{step:<6d} {dt:<12.4e} {self.time:<12.4e} {res.iterations:<6d} {r:<12.4e}")
            dt = dt_next

        return points

    # ---------------------------
    # Main run
    # ---------------------------

    def run(self) -> List[Dict[str, float]]:
        """Run the configured solve type and write the history."""
        spec = self.solver_spec
        self.equilibrium()

        if spec['type'] == 'steadystate':
            self.steadystate()
        elif spec['type'] == 'dcsweep':
            s = spec['dcsweep']
            self.dcsweep(s['electrode'], s['start'], s['stop'], s['step'], s['min_step'])
        elif spec['type'] == 'transient':
            t = spec['transient']
            self.time = t['t_start']
            self.steadystate()
            self.transient(t['t_stop'], t['dt'], t_start=t['t_start'], bdf2=t['bdf2'],
                           adaptive=t['adaptive'], rtol=t['rtol'], dt_min=t['dt_min'], dt_max=t['dt_max'])

        self.write()
        print_header("SIMULATION COMPLETED")
        return self.history

    def write(self) -> None:
        if self.outdir is not None:
            history_to_csv(os.path.join(self.outdir, 'history.csv'), self.history)
