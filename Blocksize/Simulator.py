import argparse
import hashlib
from collections import Counter
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd

from Blocksize.Config import (ConfigError, SimulationConfig, Target, DEFAULT_SHARES, DEFAULT_TICKS,
                              HASHES_PER_BLOCK, HASHES_PER_TICK, build_miners)
from Blocksize.Topology import PropagationTopology, default_topology, render

# ------------------------------
# Miner Model
# ------------------------------

class MinerModel:
    """
    Proof-of-work trials for a fixed set of miners. Each miner draws from its
    own Philox stream keyed by (seed, miner name); the counter position of a
    tick is a pure function of the tick, so trial j of a miner at tick t is
    the same value however the ticks are batched.
    """
    WORDS_PER_STEP = 4  # Philox4x64 produces four 64-bit words per counter step

    def __init__(self, miners, target, seed=0):
        self.miners = list(miners)
        self.target = target
        self.threshold = np.uint64(target.threshold64)
        self.keys = [self.miner_key(seed, m.name) for m in self.miners]
        self.steps = [-(-m.hashrate // self.WORDS_PER_STEP) for m in self.miners]  # counter steps per tick

    @staticmethod
    def miner_key(seed, name):
        digest = hashlib.blake2b(f"{seed}:{name}".encode(), digest_size=16).digest()
        return int.from_bytes(digest, 'big')

    def trials(self, index, start, count):
        # raw 64-bit hashes, shape (count, hashrate)
        miner = self.miners[index]
        steps = self.steps[index]
        bitgen = np.random.Philox(key=self.keys[index], counter=start * steps)
        words = bitgen.random_raw(count * steps * self.WORDS_PER_STEP)
        return words.reshape(count, steps * self.WORDS_PER_STEP)[:, :miner.hashrate]

    def successes_block(self, start, count):
        found = np.zeros((count, len(self.miners)), dtype=np.int64)
        for i, miner in enumerate(self.miners):
            if miner.hashrate == 0:
                continue
            found[:, i] = np.count_nonzero(self.trials(i, start, count) <= self.threshold, axis=1)
        return found

    def successes(self, tick):
        return self.successes_block(tick, 1)[0]

# ------------------------------
# Race States
# ------------------------------

class Outcome(Enum):
    ABANDONED = "abandoned"
    HEAVY_WON = "heavy won"
    COMPETING_WON = "competing won"

@dataclass(frozen=True)
class Idle:
    racing = False

    def __repr__(self):
        return "Idle"

IDLE = Idle()

@dataclass(frozen=True)
class Racing:
    progress: int           # ticks since the heavy block was found
    heavy: tuple            # provisional blocks per miner on the heavy chain
    competing: tuple        # provisional blocks per miner on the competing chain
    switched: frozenset = frozenset()  # aware miners now extending the heavy chain

    racing = True

    @property
    def heavy_depth(self):
        return sum(self.heavy)

    @property
    def comp_depth(self):
        return sum(self.competing)

    def __repr__(self):
        return f"Racing(progress={self.progress}, heavy={self.heavy_depth}, competing={self.comp_depth})"

@dataclass(frozen=True)
class LedgerDelta:
    accepted: tuple
    stale: tuple

@dataclass(frozen=True)
class Resolution:
    outcome: Outcome
    heavy_depth: int
    comp_depth: int

# ------------------------------
# Race Rules
# ------------------------------

class RaceRules:
    def __init__(self, names, producer, topology):
        self.names = tuple(names)
        self.producer = self.names.index(producer) if producer is not None else None
        self.horizon = topology.horizon
        # aware miners may change chains only before the last stage is reached
        self.last_threshold = max((s.threshold for s in topology.stages), default=0)
        # (threshold, miner indices) in processing order, unreached miners last
        self.groups = []
        for threshold, members in topology.groups(self.names):
            indices = tuple(self.names.index(m) for m in members if m != producer)
            if indices:
                self.groups.append((threshold, indices))

    @classmethod
    def from_config(cls, config):
        return cls(config.names, config.producer, config.topology)

def step(state, successes, rules):
    """
    Advance the race by one tick. Returns the next state, the blocks that
    became final this tick (or None) and the race resolution (or None).
    Pure: neither `state` nor `successes` is modified.
    """
    found = tuple(int(s) for s in successes)
    n = len(found)
    p = rules.producer

    if not state.racing:
        if p is None or found[p] == 0:
            if any(found):
                return IDLE, LedgerDelta(found, (0,) * n), None
            return IDLE, None, None
        # the producer found a block, it will be a heavy one
        state = Racing(0, (0,) * n, (0,) * n)

    heavy = list(state.heavy)
    competing = list(state.competing)
    switched = set(state.switched)

    # the producer always extends its own chain
    heavy[p] += found[p]

    if state.progress == 0:
        # nobody else has the heavy block, defending it is not viable
        others = tuple(0 if i == p else f for i, f in enumerate(found))
        if any(others):
            stale = tuple(heavy[i] if i == p else 0 for i in range(n))
            return IDLE, LedgerDelta(others, stale), Resolution(Outcome.ABANDONED, sum(heavy), 0)
    else:
        for threshold, members in rules.groups:
            aware = threshold is not None and threshold <= state.progress
            undecided = state.progress < rules.last_threshold or threshold == state.progress
            if aware and undecided and not switched.issuperset(members) and sum(heavy) > sum(competing):
                switched.update(members)
            for i in members:
                if i in switched:
                    heavy[i] += found[i]
                else:
                    competing[i] += found[i]

    heavy_depth, comp_depth = sum(heavy), sum(competing)
    if comp_depth > heavy_depth:
        delta = LedgerDelta(tuple(competing), tuple(heavy))
        return IDLE, delta, Resolution(Outcome.COMPETING_WON, heavy_depth, comp_depth)

    if state.progress < rules.horizon:
        return Racing(state.progress + 1, tuple(heavy), tuple(competing), frozenset(switched)), None, None

    # fully propagated and not behind: ties go to the heavy chain
    delta = LedgerDelta(tuple(heavy), tuple(competing))
    return IDLE, delta, Resolution(Outcome.HEAVY_WON, heavy_depth, comp_depth)

# ------------------------------
# Ledger Class
# ------------------------------

class Ledger:
    def __init__(self, names):
        self.names = list(names)
        self.index = {name: i for i, name in enumerate(self.names)}
        self.accepted = [0] * len(self.names)
        self.stale = [0] * len(self.names)
        self.mined = [0] * len(self.names)

    def _position(self, miner, count):
        if miner not in self.index:
            raise ValueError(f"unknown miner {miner!r}")
        if count < 0:
            raise ValueError(f"block counts only grow, got {count} for {miner}")
        return self.index[miner]

    def record_accepted(self, miner, count):
        self.accepted[self._position(miner, count)] += count

    def record_stale(self, miner, count):
        self.stale[self._position(miner, count)] += count

    def record_mined(self, counts):
        for i, count in enumerate(counts):
            self.mined[i] += int(count)

    def apply(self, delta):
        for name, accepted, stale in zip(self.names, delta.accepted, delta.stale):
            if accepted:
                self.record_accepted(name, accepted)
            if stale:
                self.record_stale(name, stale)

# ------------------------------
# Simulation Result
# ------------------------------

@dataclass(frozen=True)
class SimulationResult:
    ticks: int
    names: tuple
    hashrates: tuple
    accepted: tuple
    stale: tuple
    pending: tuple  # provisional blocks of a race still open at the end
    mined: tuple
    outcomes: dict
    contested: int  # heavy wins over a non-empty competing chain

    def _i(self, miner):
        return self.names.index(miner)

    def stale_rate(self, miner):
        i = self._i(miner)
        total = self.accepted[i] + self.stale[i]
        return self.stale[i] / total if total > 0 else 0.0

    @property
    def total_accepted(self):
        return sum(self.accepted)

    @property
    def total_stale(self):
        return sum(self.stale)

    @property
    def total_blocks(self):
        return self.total_accepted + self.total_stale

    @property
    def total_stale_rate(self):
        return self.total_stale / self.total_blocks if self.total_blocks > 0 else 0.0

    def revenue_share(self, miner):
        return self.accepted[self._i(miner)] / self.total_accepted if self.total_accepted > 0 else 0.0

    def fair_share(self, miner):
        return self.hashrates[self._i(miner)] / sum(self.hashrates)

    def revenue_change(self, miner):
        fair = self.fair_share(miner)
        return self.revenue_share(miner) / fair - 1 if fair > 0 else 0.0

    @property
    def abandoned(self):
        return self.outcomes.get(Outcome.ABANDONED, 0)

    @property
    def heavy_wins(self):
        return self.outcomes.get(Outcome.HEAVY_WON, 0)

    @property
    def competing_wins(self):
        return self.outcomes.get(Outcome.COMPETING_WON, 0)

    def to_frame(self):
        rows = []
        for i, name in enumerate(self.names):
            rows.append({
                'miner': name,
                'hashrate': self.hashrates[i],
                'mined': self.mined[i],
                'accepted': self.accepted[i],
                'stale': self.stale[i],
                'pending': self.pending[i],
                'stale_rate': self.stale_rate(name),
                'revenue_share': self.revenue_share(name),
                'fair_share': self.fair_share(name),
                'revenue_change': self.revenue_change(name),
            })
        return pd.DataFrame(rows).set_index('miner')

# ------------------------------
# Simulator Class
# ------------------------------

class Simulator:
    def __init__(self, config, progress=None, verbose=False):
        self.config = config.validate()
        self.model = MinerModel(config.miners, config.target, config.seed)
        self.rules = RaceRules.from_config(config)
        self.ledger = Ledger(config.names)
        self.state = IDLE
        self.tick = 0  # ticks completed so far
        self.progress = progress  # progress(tick, total); returning False stops the run
        self.verbose = verbose
        self.outcomes = Counter()
        self.contested = 0

    def run(self, ticks=None):
        end = self.config.ticks if ticks is None else min(self.config.ticks, self.tick + ticks)
        interval = self.config.progress_interval or self.config.chunk_ticks
        while self.tick < end:
            stop = min(end, self.tick + self.config.chunk_ticks)
            if self.progress is not None:
                stop = min(stop, (self.tick // interval + 1) * interval)
            block = self.model.successes_block(self.tick, stop - self.tick)
            self.advance(block)
            if self.progress is not None and self.tick % interval == 0:
                if self.progress(self.tick, self.config.ticks) is False:
                    break
        return self.result()

    def advance(self, block):
        """Feed a (ticks, miners) block of successes starting at the current tick."""
        start = self.tick
        self.ledger.record_mined(block.sum(axis=0))
        active = np.flatnonzero(block.any(axis=1))
        k = 0
        i = 0
        while i < len(block):
            if not self.state.racing:
                # quiet ticks leave an idle race untouched
                while k < len(active) and active[k] < i:
                    k += 1
                if k == len(active):
                    break
                i = int(active[k])
            self.handle_tick(start + i, block[i])
            i += 1
        self.tick = start + len(block)

    def handle_tick(self, tick, successes):
        self.state, delta, resolution = step(self.state, successes, self.rules)
        if delta is not None:
            self.ledger.apply(delta)
        if resolution is not None:
            self.handle_resolution(tick, resolution)

    def handle_resolution(self, tick, resolution):
        self.outcomes[resolution.outcome] += 1
        if resolution.outcome == Outcome.HEAVY_WON and resolution.comp_depth > 0:
            self.contested += 1
        if not self.verbose:
            return
        if resolution.outcome == Outcome.ABANDONED:
            print(f"[tick {tick}] Heavy block of depth {resolution.heavy_depth} thrown away for being inviable")
        elif resolution.outcome == Outcome.COMPETING_WON:
            print(f"[tick {tick}] Competing chain of {resolution.comp_depth} defeated heavy chain of {resolution.heavy_depth}")
        elif resolution.comp_depth > 0:
            print(f"[tick {tick}] Heavy chain of {resolution.heavy_depth} defeated competing chain of {resolution.comp_depth}")

    def result(self):
        n = len(self.config.miners)
        if self.state.racing:
            pending = tuple(h + c for h, c in zip(self.state.heavy, self.state.competing))
        else:
            pending = (0,) * n
        return SimulationResult(
            ticks=self.tick,
            names=tuple(self.config.names),
            hashrates=tuple(m.hashrate for m in self.config.miners),
            accepted=tuple(self.ledger.accepted),
            stale=tuple(self.ledger.stale),
            pending=pending,
            mined=tuple(self.ledger.mined),
            outcomes=dict(self.outcomes),
            contested=self.contested,
        )

# ------------------------------
# Dump Ledger to file
# ------------------------------

def dump_ledger(result, filename):
    with open(filename, "w") as f:
        f.write("miner\thashrate\taccepted\tstale\tpending\tstale_rate\trevenue_change\n")
        for i, name in enumerate(result.names):
            f.write(f"{name}\t{result.hashrates[i]}\t{result.accepted[i]}\t{result.stale[i]}\t"
                    f"{result.pending[i]}\t{result.stale_rate(name):.4f}\t{result.revenue_change(name):+.4f}\n")

def report(result):
    print(result.to_frame().to_string(float_format=lambda x: f"{x:.4f}"))
    print(f"\n{result.total_blocks} settled blocks over {result.ticks} ticks, "
          f"{result.total_stale} stale ({result.total_stale_rate * 100:.2f}%)")
    print(f"Races: {result.heavy_wins} heavy wins ({result.contested} contested), "
          f"{result.competing_wins} competing wins, {result.abandoned} abandoned")

# ------------------------------
# Argument Parsing
# ------------------------------

def parse_shares(text):
    # "A=25,B=25,C=25" -> {'A': 25.0, ...}
    shares = {}
    for item in text.split(','):
        name, _, value = item.partition('=')
        if not name or not value:
            raise argparse.ArgumentTypeError(f"expected NAME=SHARE, got {item!r}")
        try:
            shares[name.strip()] = float(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"share for {name} is not a number: {value!r}")
    return shares

def parse_topology(text):
    # "1:B,C;41:D,E;81:F;82" -> stages plus horizon (the bare last entry)
    parts = [p.strip() for p in text.split(';') if p.strip()]
    try:
        horizon = int(parts[-1])
        stages = []
        for part in parts[:-1]:
            threshold, _, members = part.partition(':')
            stages.append((int(threshold), {m.strip() for m in members.split(',') if m.strip()}))
    except (ValueError, IndexError):
        raise argparse.ArgumentTypeError(f"expected TICK:MINER,...;...;HORIZON, got {text!r}")
    return PropagationTopology(stages, horizon)

def build_config(args):
    miners = build_miners(args.shares, args.hashes_per_tick)
    return SimulationConfig(
        ticks=args.ticks,
        miners=miners,
        producer=None if args.friendly else args.producer,
        target=Target.from_difficulty(args.difficulty),
        topology=args.topology,
        seed=args.seed,
        progress_interval=args.progress_every,
    )

def print_progress(tick, total):
    print(f"{tick * 100 // total}% complete")

# ------------------------------
# Main Function
# ------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(description="Heavy block propagation race simulator")
    parser.add_argument("--ticks", type=int, default=DEFAULT_TICKS, help="Seconds of network time to simulate")
    parser.add_argument("--shares", type=parse_shares, default=dict(DEFAULT_SHARES), help="Relative hash rates, e.g. A=25,B=25,F=5")
    parser.add_argument("--hashes-per-tick", type=int, default=HASHES_PER_TICK, help="Hashes per tick across the whole network")
    parser.add_argument("--difficulty", type=float, default=HASHES_PER_BLOCK, help="Expected hashes per block")
    parser.add_argument("--producer", default='A', help="Miner producing heavy blocks")
    parser.add_argument("--friendly", action='store_true', help="Nobody produces heavy blocks (baseline)")
    parser.add_argument("--topology", type=parse_topology, default=default_topology(), help="Propagation stages, e.g. '1:B,C;41:D,E;81:F;82'")
    parser.add_argument("--seed", type=int, default=0, help="Random seed")
    parser.add_argument("--progress-every", type=int, default=600 * 500, help="Ticks between progress reports")
    parser.add_argument("--verbose", action='store_true', help="Print every contested race")
    parser.add_argument("--dump", metavar="FILE", help="Write the per-miner ledger as TSV")
    parser.add_argument("--plot", action='store_true', help="Save stale rate and revenue plots")
    parser.add_argument("--render", metavar="FILE", help="Render the propagation schedule with Graphviz")
    parser.add_argument("--sweep", choices=['producer_hashrate', 'far_delay', 'difficulty'], help="Run a parameter sweep instead")

    args = parser.parse_args(argv)

    try:
        config = build_config(args).validate()
    except ConfigError as e:
        parser.error(str(e))

    if args.render and config.producer is not None:
        render(config.topology, config.producer, filename=args.render)

    if args.sweep:
        from Blocksize.Analysis import run_sweep
        run_sweep(args.sweep, config)
        return

    sim = Simulator(config, progress=print_progress, verbose=args.verbose)
    result = sim.run()
    report(result)

    if args.dump:
        dump_ledger(result, args.dump)
    if args.plot:
        from Blocksize.Analysis import BlocksizeAnalyzer
        BlocksizeAnalyzer(result).run_all()

if __name__ == "__main__":
    main()
