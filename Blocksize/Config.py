from dataclasses import dataclass, field, replace
from fractions import Fraction
from numbers import Integral

from Blocksize.Topology import PropagationTopology, default_topology

ROOT_DEPTH = 2**256 - 1

# ------------------------------
# Errors
# ------------------------------

class ConfigError(ValueError):
    """Raised before a run starts when the configuration cannot be simulated."""

# ------------------------------
# Miner Class
# ------------------------------

@dataclass(frozen=True)
class Miner:
    name: str
    hashrate: int  # trials per tick

    def __repr__(self):
        return f"Miner({self.name}, {self.hashrate}/tick)"

# ------------------------------
# Target Class
# ------------------------------

@dataclass(frozen=True)
class Target:
    value: int  # a hash at or below this value is a block

    @classmethod
    def from_difficulty(cls, hashes_per_block):
        try:
            difficulty = Fraction(hashes_per_block)
        except (TypeError, ValueError, OverflowError):
            raise ConfigError(f"difficulty must be a finite number, got {hashes_per_block!r}")
        if difficulty < 1:
            raise ConfigError(f"difficulty must be at least one hash per block, got {hashes_per_block}")
        return cls(int(ROOT_DEPTH // difficulty))

    @classmethod
    def from_block_rate(cls, blocks_per_tick, hashes_per_tick):
        # e.g. 1/600 blocks per tick at 20 hashes per tick is difficulty 12000
        if blocks_per_tick <= 0 or hashes_per_tick <= 0:
            raise ConfigError("block rate and hashes per tick must be positive")
        return cls.from_difficulty(Fraction(hashes_per_tick) / Fraction(blocks_per_tick))

    @property
    def threshold64(self):
        return self.value >> 192

    @property
    def probability(self):
        return (self.threshold64 + 1) / 2**64

    @property
    def difficulty(self):
        return 1 / self.probability

    def expected_blocks(self, hashes):
        return hashes * self.probability

# ------------------------------
# Share Scaling
# ------------------------------

def scale_hashrates(shares, hashes_per_tick):
    """
    Turn relative hash-rate shares into whole trials per tick, assigning
    leftover trials by largest remainder. Ties go to the earlier miner.
    """
    total = sum(Fraction(s) for s in shares)
    if total <= 0:
        raise ConfigError("hash-rate shares must sum to a positive value")
    exact = [Fraction(s) * hashes_per_tick / total for s in shares]
    counts = [int(x) for x in exact]
    leftover = hashes_per_tick - sum(counts)
    order = sorted(range(len(shares)), key=lambda i: (-(exact[i] - counts[i]), i))
    for i in order[:leftover]:
        counts[i] += 1
    return counts

# ------------------------------
# Simulation Config
# ------------------------------

@dataclass
class SimulationConfig:
    ticks: int
    miners: list
    producer: object = None  # None runs the friendly baseline, no heavy blocks
    target: Target = field(default_factory=lambda: Target.from_difficulty(12000))
    topology: PropagationTopology = field(default_factory=default_topology)
    seed: int = 0
    progress_interval: int = None
    chunk_ticks: int = 100_000

    @property
    def names(self):
        return [m.name for m in self.miners]

    @property
    def total_hashrate(self):
        return sum(m.hashrate for m in self.miners)

    def miner(self, name):
        for m in self.miners:
            if m.name == name:
                return m
        raise KeyError(name)

    def validate(self):
        if isinstance(self.ticks, bool) or not isinstance(self.ticks, Integral) or self.ticks <= 0:
            raise ConfigError(f"tick count must be a positive integer, got {self.ticks!r}")
        if not self.miners:
            raise ConfigError("at least one miner is required")
        names = self.names
        if len(set(names)) != len(names):
            raise ConfigError(f"miner names must be unique: {names}")
        for m in self.miners:
            if m.hashrate < 0:
                raise ConfigError(f"miner {m.name} has negative hashrate {m.hashrate}")
        if self.total_hashrate <= 0:
            raise ConfigError("total hashrate must be positive")
        if self.producer is not None and self.producer not in names:
            raise ConfigError(f"heavy producer {self.producer!r} is not one of the miners {names}")
        if not 0 < self.target.value <= ROOT_DEPTH:
            raise ConfigError(f"target must be positive and at most 2**256 - 1, got {self.target.value}")
        if self.progress_interval is not None and self.progress_interval <= 0:
            raise ConfigError("progress interval must be positive")
        if self.chunk_ticks <= 0:
            raise ConfigError("chunk size must be positive")
        if self.producer is not None:
            problems = self.topology.problems(names, self.producer)
            if problems:
                raise ConfigError("invalid propagation topology: " + "; ".join(problems))
        return self

    def with_changes(self, **changes):
        return replace(self, **changes)

# ------------------------------
# Default Scenario
# ------------------------------

DEFAULT_SHARES = {'A': 25, 'B': 25, 'C': 25, 'D': 10, 'E': 10, 'F': 5}
HASHES_PER_TICK = 20      # the whole network, kept small so ticks are cheap
HASHES_PER_BLOCK = 12000  # one block every 600 ticks
DEFAULT_TICKS = 600 * 50000

def build_miners(shares, hashes_per_tick=HASHES_PER_TICK):
    names = list(shares)
    rates = scale_hashrates([shares[n] for n in names], hashes_per_tick)
    return [Miner(n, r) for n, r in zip(names, rates)]

def default_config(**overrides):
    config = SimulationConfig(
        ticks=DEFAULT_TICKS,
        miners=build_miners(DEFAULT_SHARES),
        producer='A',
        target=Target.from_difficulty(HASHES_PER_BLOCK),
        topology=default_topology(),
    )
    return replace(config, **overrides) if overrides else config
