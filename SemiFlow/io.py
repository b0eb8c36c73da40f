import os
from datetime import datetime

import numpy as np
import pandas as pd
import yaml

from .logging import get_logger

logger = get_logger("semiflow.io")


def print_header(s, n=60, f0='*', f1=' '):

    if len(s) > n:
        n = len(s) + 4

    w = n + len(s) % 2
    b = (w - len(s)) // 2 - 1
    logger.info(w * f0)
    logger.info(f0 + b * f1 + s + b * f1 + f0)
    logger.info(w * f0)


def print_dict(d, indent=2):
    pad = indent * ' '
    for k, v in d.items():
        if isinstance(v, dict):
            logger.info(f'{pad}- {k}:')
            print_dict(v, indent + 2)
        elif isinstance(v, list) and v and isinstance(v[0], dict):
            logger.info(f'{pad}- {k}:')
            for item in v:
                print_dict(item, indent + 4)
        else:
            logger.info(f'{pad}- {k:<25s}: {v}')


def create_output_directory(name, use_tstamp=True):

    if use_tstamp:
        timestamp = datetime.now().replace(microsecond=0).strftime("%Y-%m-%d_%H%M%S") + '_'
    else:
        timestamp = ''

    outbase = os.path.dirname(name)
    outname = timestamp + os.path.basename(name)
    outdir = os.path.join(outbase, outname)

    if not os.path.exists(outdir):
        os.makedirs(outdir)
    else:
        if len(os.listdir(outdir)) > 0:
            raise RuntimeError('Output path exists and is not empty.')

    print_header(f"Writing output into: {outdir}", f0=' ', f1=' ')

    return outdir


def write_yaml(output_dict, fname):

    with open(fname, 'w') as FILE:
        yaml.dump(output_dict, FILE)


def history_to_csv(fname, out):
    df = pd.DataFrame(data=out)
    df.to_csv(fname, index=False)


def read_yaml_input(file):

    return sanitize_input(yaml.full_load(file))


def sanitize_input(raw_dict):

    print_header("PROBLEM SETUP")

    sanitizing_functions = {'options': sanitize_options,
                            'mesh': sanitize_mesh,
                            'regions': sanitize_regions,
                            'boundaries': sanitize_boundaries,
                            'solver': sanitize_solver}

    for key in ('mesh', 'regions'):
        if key not in raw_dict:
            raise IOError(f"Input needs a '{key}' section")

    sanitized_dict = {}
    for key, func in sanitizing_functions.items():
        logger.info(f'- {key}:')
        sanitized_dict[key] = func(raw_dict.get(key) or {})

    region_names = [r['name'] for r in sanitized_dict['mesh']['regions']]
    missing = set(region_names) - set(sanitized_dict['regions'])
    if missing:
        raise IOError(f"Regions without material: {sorted(missing)}")

    print_header("PROBLEM SETUP COMPLETED")

    return sanitized_dict


def _coordinates(d, key):
    """Coordinates from an explicit list or ``{start, stop, num}``."""
    spec = d.get(key)
    if spec is None:
        raise IOError(f"Mesh needs '{key}' coordinates")
    if isinstance(spec, dict):
        return np.linspace(float(spec['start']), float(spec['stop']), int(spec.get('num', 51))).tolist()
    return [float(v) for v in spec]


def _interval(v):
    lo, hi = v
    return [float(lo), float(hi)]


def sanitize_options(d):
    out = {}
    out['output'] = str(d.get('output', 'semiflow'))
    out['use_tstamp'] = bool(d.get('use_tstamp', True))
    out['silent'] = bool(d.get('silent', False))
    out['T_ext'] = float(d.get('T_ext', 300.))

    if out['T_ext'] <= 0.:
        raise IOError("Ambient temperature must be positive")

    print_dict(out)

    return out


def sanitize_mesh(d):

    available = ['line', 'rectangle']
    out = {}

    out['type'] = str(d.get('type', 'line'))
    if out['type'] not in available:
        raise IOError(f"Mesh type must be one of {available}")

    out['x'] = _coordinates(d, 'x')
    if out['type'] == 'rectangle':
        out['y'] = _coordinates(d, 'y')

    out['z_width'] = float(d.get('z_width', 1.))
    out['truncate'] = bool(d.get('truncate', True))

    regions = d.get('regions', None)
    if not regions:
        raise IOError("Mesh needs at least one region")

    out['regions'] = []
    for r in regions:
        region = {'name': str(r['name'])}
        for key in ('x', 'y'):
            if key in r:
                region[key] = _interval(r[key])
        out['regions'].append(region)

    print_dict(out)

    return out


def sanitize_regions(d):

    species = ['donor', 'acceptor']
    shapes = ['uniform', 'gaussian']
    generation_models = ['impact_ionization', 'band_band_tunneling']
    trap_charges = ['acceptor', 'donor']
    out = {}

    for name, r in d.items():
        region = {}
        region['material'] = str(r.get('material', 'Si'))
        region['parameters'] = {k: float(v) for k, v in (r.get('parameters') or {}).items()}
        region['generation'] = float(r.get('generation', 0.))

        models = r.get('models') or {}
        unknown = set(models) - set(generation_models)
        if unknown:
            raise IOError(f"Unknown generation models {sorted(unknown)}, choose from {generation_models}")
        region['models'] = {k: bool(models.get(k, False)) for k in generation_models}

        region['traps'] = []
        for trap in r.get('traps') or []:
            t = {}
            t['charge'] = str(trap.get('charge', 'acceptor'))
            if t['charge'] not in trap_charges:
                raise IOError(f"Trap charge must be one of {trap_charges}")
            t['density'] = float(trap['density'])
            for key in ('energy', 'sigma_n', 'sigma_p', 'vth'):
                if key in trap:
                    t[key] = float(trap[key])
            region['traps'].append(t)

        region['doping'] = []
        for prof in r.get('doping') or []:
            p = {}
            p['species'] = str(prof.get('species', 'donor'))
            p['shape'] = str(prof.get('shape', 'uniform'))
            p['peak'] = float(prof['peak'])
            if p['species'] not in species:
                raise IOError(f"Doping species must be one of {species}")
            if p['shape'] not in shapes:
                raise IOError(f"Doping shape must be one of {shapes}")
            if p['shape'] == 'gaussian':
                p['center'] = [float(v) for v in prof['center']]
                p['char_length'] = [float(v) for v in prof['char_length']]
            if 'box' in prof:
                p['box'] = {k: _interval(v) for k, v in prof['box'].items()}
            region['doping'].append(p)

        out[str(name)] = region

    print_dict(out)

    return out


def _sanitize_circuit(d):

    drivers = ['voltage', 'current', 'inter_connect']
    out = {}
    out['driver'] = str(d.get('driver', 'voltage'))
    if out['driver'] not in drivers:
        raise IOError(f"Circuit driver must be one of {drivers}")

    for key in ('R', 'C', 'L'):
        out[key] = float(d.get(key, 0.))
        if out[key] < 0.:
            raise IOError(f"Circuit {key} must be non-negative")

    if out['driver'] == 'inter_connect' and out['R'] <= 0.:
        raise IOError("Inter-connect electrodes need a positive resistance")

    source = d.get('source', 0.)
    if isinstance(source, dict):
        out['source'] = {k: (str(v) if k == 'type' else float(v)) for k, v in source.items()}
    else:
        out['source'] = float(source)

    return out


def sanitize_boundaries(d):

    available = ['ohmic', 'neumann', 'interface', 'inter_connect']
    out = []

    for b in d or []:
        bc = {}
        bc['name'] = str(b['name'])
        bc['type'] = str(b.get('type', 'neumann'))
        if bc['type'] not in available:
            raise IOError(f"Boundary type must be one of {available}")

        if bc['type'] == 'inter_connect':
            bc['members'] = [str(m) for m in b['members']]
            if len(bc['members']) < 2:
                raise IOError("Inter-connect needs at least two electrodes")
            out.append(bc)
            continue

        loc = b.get('location', None)
        if loc is None:
            raise IOError(f"Boundary '{bc['name']}' needs a location")
        if 'axis' in loc:
            bc['location'] = {'axis': str(loc['axis']), 'value': float(loc['value'])}
            if bc['location']['axis'] not in ('x', 'y'):
                raise IOError("Boundary axis must be 'x' or 'y'")
        elif 'lower' in loc:
            bc['location'] = {'lower': [float(v) for v in loc['lower']],
                              'upper': [float(v) for v in loc['upper']]}
        else:
            raise IOError("Boundary location needs 'axis'/'value' or 'lower'/'upper'")

        if bc['type'] == 'ohmic':
            bc['circuit'] = _sanitize_circuit(b.get('circuit') or {})
        elif bc['type'] == 'neumann':
            bc['heat_transfer'] = float(b.get('heat_transfer', 0.))
        elif bc['type'] == 'interface':
            bc['interface_charge'] = float(b.get('interface_charge', 0.))

        out.append(bc)

    names = [bc['name'] for bc in out]
    if len(set(names)) != len(names):
        raise IOError("Boundary names must be unique")

    print_dict({'boundaries': out})

    return out


def sanitize_solver(d):

    solve_types = ['equilibrium', 'steadystate', 'dcsweep', 'transient']
    damping = ['potential', 'positive_density', 'none', 'bank_rose']
    linear = ['direct', 'iterative']
    out = {}

    out['type'] = str(d.get('type', 'equilibrium'))
    if out['type'] not in solve_types:
        raise IOError(f"Solve type must be one of {solve_types}")

    out['lattice_heating'] = bool(d.get('lattice_heating', False))
    out['energy_balance'] = bool(d.get('energy_balance', False))
    out['damping'] = str(d.get('damping', 'potential'))
    if out['damping'] not in damping:
        raise IOError(f"Damping must be one of {damping}")
    out['potential_update'] = float(d.get('potential_update', 1.))
    out['max_iteration'] = int(d.get('max_iteration', 30))
    out['max_retry'] = int(d.get('max_retry', 4))

    out['poisson_abs_toler'] = float(d.get('poisson_abs_toler', 1e-26))
    out['elec_continuity_abs_toler'] = float(d.get('elec_continuity_abs_toler', 5e-18))
    out['hole_continuity_abs_toler'] = float(d.get('hole_continuity_abs_toler', 5e-18))
    out['heat_equation_abs_toler'] = float(d.get('heat_equation_abs_toler', 1e-11))
    out['elec_energy_abs_toler'] = float(d.get('elec_energy_abs_toler', 1e-18))
    out['hole_energy_abs_toler'] = float(d.get('hole_energy_abs_toler', 1e-18))
    out['electrode_abs_toler'] = float(d.get('electrode_abs_toler', 1e-9))
    out['relative_toler'] = float(d.get('relative_toler', 1e-5))

    out['linear_solver'] = str(d.get('linear_solver', 'direct'))
    if out['linear_solver'] not in linear:
        raise IOError(f"Linear solver must be one of {linear}")
    out['petsc'] = bool(d.get('petsc', False))

    if out['type'] == 'dcsweep':
        s = d.get('dcsweep') or {}
        sweep = {}
        sweep['electrode'] = str(s['electrode'])
        sweep['start'] = float(s.get('start', 0.))
        sweep['stop'] = float(s['stop'])
        sweep['step'] = float(s.get('step', 0.1))
        if sweep['step'] == 0.:
            raise IOError("Sweep step must be non-zero")
        if np.sign(sweep['stop'] - sweep['start']) * np.sign(sweep['step']) < 0:
            sweep['step'] = -sweep['step']
        sweep['min_step'] = float(s.get('min_step', abs(sweep['step']) / 64.))
        out['dcsweep'] = sweep

    if out['type'] == 'transient':
        t = d.get('transient') or {}
        tr = {}
        tr['t_start'] = float(t.get('t_start', 0.))
        tr['t_stop'] = float(t['t_stop'])
        tr['dt'] = float(t.get('dt', (tr['t_stop'] - tr['t_start']) / 100.))
        tr['bdf2'] = bool(t.get('bdf2', True))
        tr['adaptive'] = bool(t.get('adaptive', True))
        tr['rtol'] = float(t.get('rtol', 1e-3))
        tr['dt_min'] = float(t.get('dt_min', tr['dt'] * 1e-6))
        tr['dt_max'] = float(t.get('dt_max', tr['t_stop'] - tr['t_start']))
        if tr['t_stop'] <= tr['t_start'] or tr['dt'] <= 0.:
            raise IOError("Transient needs t_stop > t_start and a positive dt")
        out['transient'] = tr

    print_dict(out)

    return out
