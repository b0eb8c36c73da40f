import io

import pytest

from SemiFlow.io import read_yaml_input


BASE = """
mesh:
    type: line
    x: {start: 0., stop: 1e-4, num: 11}
    regions:
        - name: bulk
regions:
    bulk:
        material: Si
        doping:
            - species: donor
              peak: 1e16
"""


def read(text):
    return read_yaml_input(io.StringIO(text))


def test_defaults():
    d = read(BASE)

    assert d['options']['T_ext'] == 300.
    assert d['options']['silent'] is False

    assert d['mesh']['type'] == 'line'
    assert len(d['mesh']['x']) == 11
    assert d['mesh']['x'][-1] == pytest.approx(1e-4)
    assert d['mesh']['z_width'] == 1.

    bulk = d['regions']['bulk']
    assert bulk['doping'] == [{'species': 'donor', 'shape': 'uniform', 'peak': 1e16}]
    assert bulk['generation'] == 0.

    assert d['boundaries'] == []

    s = d['solver']
    assert s['type'] == 'equilibrium'
    assert s['damping'] == 'potential'
    assert s['max_iteration'] == 30
    assert s['poisson_abs_toler'] == 1e-26
    assert s['elec_continuity_abs_toler'] == 5e-18
    assert s['heat_equation_abs_toler'] == 1e-11
    assert s['electrode_abs_toler'] == 1e-9
    assert s['relative_toler'] == 1e-5


def test_boundaries():
    d = read(BASE + """
boundaries:
    - name: left
      type: ohmic
      location: {axis: x, value: 0.}
      circuit: {R: 50., source: {type: pulse, v2: 1., pw: 1e-9}}
    - name: right
      type: ohmic
      location: {axis: x, value: 1e-4}
      circuit: {driver: inter_connect, R: 10.}
    - name: other
      type: ohmic
      location: {lower: [0.5e-4], upper: [0.6e-4]}
      circuit: {driver: inter_connect, R: 10.}
    - name: hub
      type: inter_connect
      members: [right, other]
""")
    left, right, other, hub = d['boundaries']

    assert left['location'] == {'axis': 'x', 'value': 0.}
    assert left['circuit']['driver'] == 'voltage'
    assert left['circuit']['R'] == 50.
    assert left['circuit']['C'] == 0.
    assert left['circuit']['source'] == {'type': 'pulse', 'v2': 1., 'pw': 1e-9}
    assert right['circuit']['source'] == 0.
    assert other['location'] == {'lower': [0.5e-4], 'upper': [0.6e-4]}
    assert hub['members'] == ['right', 'other']


def test_dcsweep_step_follows_direction():
    d = read(BASE + """
solver:
    type: dcsweep
    dcsweep: {electrode: left, start: 0., stop: -1., step: 0.2}
""")
    sweep = d['solver']['dcsweep']
    assert sweep['step'] == -0.2
    assert sweep['min_step'] == pytest.approx(0.2 / 64.)


def test_transient_defaults():
    d = read(BASE + """
solver:
    type: transient
    transient: {t_stop: 1e-8}
""")
    tr = d['solver']['transient']
    assert tr['dt'] == pytest.approx(1e-10)
    assert tr['dt_min'] == pytest.approx(1e-16)
    assert tr['dt_max'] == pytest.approx(1e-8)
    assert tr['bdf2'] and tr['adaptive']


@pytest.mark.parametrize("extra", [
    # unknown solve type
    "solver: {type: harmonic}\n",
    # unknown damping
    "solver: {damping: strong}\n",
    # non-positive ambient temperature
    "options: {T_ext: 0.}\n",
    # unknown boundary type
    "boundaries:\n    - {name: a, type: schottky, location: {axis: x, value: 0.}}\n",
    # boundary without location
    "boundaries:\n    - {name: a, type: neumann}\n",
    # duplicate boundary names
    "boundaries:\n"
    "    - {name: a, type: neumann, location: {axis: x, value: 0.}}\n"
    "    - {name: a, type: neumann, location: {axis: x, value: 1e-4}}\n",
    # inter-connect electrode without resistance
    "boundaries:\n"
    "    - {name: a, type: ohmic, location: {axis: x, value: 0.}, circuit: {driver: inter_connect}}\n",
    # negative circuit element
    "boundaries:\n"
    "    - {name: a, type: ohmic, location: {axis: x, value: 0.}, circuit: {C: -1.}}\n",
    # hub with a single member
    "boundaries:\n    - {name: h, type: inter_connect, members: [a]}\n",
    # zero sweep step
    "solver: {type: dcsweep, dcsweep: {electrode: a, stop: 1., step: 0.}}\n",
    # empty time interval
    "solver: {type: transient, transient: {t_start: 1e-9, t_stop: 1e-9}}\n",
])
def test_invalid_input_raises(extra):
    with pytest.raises(IOError):
        read(BASE + extra)


def test_missing_sections_raise():
    with pytest.raises(IOError):
        read("regions: {bulk: {material: Si}}\n")

    with pytest.raises(IOError):
        read("""
mesh:
    x: [0., 1e-4]
    regions: [{name: bulk}, {name: cap}]
regions:
    bulk: {material: Si}
""")


def test_unknown_doping_species_raises():
    with pytest.raises(IOError):
        read(BASE.replace('species: donor', 'species: electron'))
