import pytest

from Blocksize.Config import Miner, SimulationConfig, Target
from Blocksize.Simulator import IDLE, RaceRules, step
from Blocksize.Topology import default_topology

NAMES = ('A', 'B', 'C', 'D', 'E', 'F')


def found(**counts):
    """Successes for one tick, e.g. found(A=1, D=2)."""
    return tuple(counts.get(name, 0) for name in NAMES)


def quiet():
    return found()


def drive(ticks, state=IDLE, rules=None):
    """Step through a sequence of ticks, collecting every delta and resolution."""
    rules = rules or default_rules()
    deltas, resolutions = [], []
    for successes in ticks:
        state, delta, resolution = step(state, successes, rules)
        if delta is not None:
            deltas.append(delta)
        if resolution is not None:
            resolutions.append(resolution)
    return state, deltas, resolutions


def advance_to(state, progress, rules=None):
    rules = rules or default_rules()
    while state.racing and state.progress < progress:
        state, delta, resolution = step(state, quiet(), rules)
        assert delta is None and resolution is None
    return state


def default_rules():
    return RaceRules(NAMES, 'A', default_topology())


def totals(deltas):
    accepted = [0] * len(NAMES)
    stale = [0] * len(NAMES)
    for delta in deltas:
        for i in range(len(NAMES)):
            accepted[i] += delta.accepted[i]
            stale[i] += delta.stale[i]
    return dict(zip(NAMES, accepted)), dict(zip(NAMES, stale))


@pytest.fixture
def rules():
    return default_rules()


@pytest.fixture
def small_config():
    # easy target so a few thousand ticks hold plenty of races
    return SimulationConfig(
        ticks=20_000,
        miners=[Miner('A', 5), Miner('B', 5), Miner('C', 5), Miner('D', 2), Miner('E', 2), Miner('F', 1)],
        producer='A',
        target=Target.from_difficulty(400),
        topology=default_topology(),
        seed=7,
        chunk_ticks=5_000,
    )
