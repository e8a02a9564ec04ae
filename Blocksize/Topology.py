import math
from dataclasses import dataclass

import networkx as nx
import matplotlib.pyplot as plt
from graphviz import Digraph

# ------------------------------
# Stage Class
# ------------------------------

@dataclass(frozen=True)
class Stage:
    threshold: int      # ticks after the heavy block is found
    miners: frozenset   # miners that receive the heavy block at this tick

    def __repr__(self):
        return f"Stage({self.threshold}, {sorted(self.miners)})"

# ------------------------------
# Propagation Topology Class
# ------------------------------

class PropagationTopology:
    """
    Static delay schedule of a heavy block. Stages are ordered by threshold
    and cumulative: a miner that became aware at one stage stays aware at
    every later one. After `horizon` ticks the heavy block counts as fully
    propagated.
    """
    def __init__(self, stages, horizon):
        self.stages = tuple(Stage(int(threshold), frozenset(miners)) for threshold, miners in stages)
        self.horizon = int(horizon)

    def __repr__(self):
        return f"PropagationTopology({list(self.stages)}, horizon={self.horizon})"

    def __eq__(self, other):
        if not isinstance(other, PropagationTopology):
            return NotImplemented
        return self.stages == other.stages and self.horizon == other.horizon

    def __hash__(self):
        return hash((self.stages, self.horizon))

    @property
    def miners(self):
        members = set()
        for stage in self.stages:
            members |= stage.miners
        return members

    def problems(self, miner_names, producer):
        # one message per problem, empty when the schedule is usable
        errors = []
        last = 0
        seen = set()
        for stage in self.stages:
            if stage.threshold <= last:
                errors.append(f"stage thresholds must be strictly increasing and positive (got {stage.threshold} after {last})")
            last = stage.threshold
            unknown = stage.miners - set(miner_names)
            if unknown:
                errors.append(f"stage at tick {stage.threshold} names unknown miners {sorted(unknown)}")
            if producer in stage.miners:
                errors.append(f"heavy producer {producer} cannot appear in a propagation stage")
            repeated = stage.miners & seen
            if repeated:
                errors.append(f"miners {sorted(repeated)} appear in more than one stage")
            seen |= stage.miners
        if self.horizon <= last:
            errors.append(f"horizon {self.horizon} must be later than the last stage threshold {last}")
        return errors

    def aware_at(self, progress):
        aware = set()
        for stage in self.stages:
            if stage.threshold > progress:
                break
            aware |= stage.miners
        return aware

    def groups(self, miner_names):
        """
        Miner groups in processing order: one group per stage, then every
        miner the schedule never reaches, whose threshold is None.
        """
        groups = [(stage.threshold, [m for m in miner_names if m in stage.miners]) for stage in self.stages]
        listed = self.miners
        never = [m for m in miner_names if m not in listed]
        if never:
            groups.append((None, never))
        return groups

    def shifted(self, delay):
        # every stage after the first moves by `delay` ticks, the horizon too
        if not self.stages:
            return PropagationTopology([], self.horizon + delay)
        first, rest = self.stages[0], self.stages[1:]
        stages = [(first.threshold, first.miners)] + [(s.threshold + delay, s.miners) for s in rest]
        return PropagationTopology(stages, self.horizon + delay)

    @classmethod
    def from_links(cls, graph, producer, block_size_bits, relays=None):
        """
        Derive a schedule from a link graph. Edges carry `bandwidth` in bits
        per tick and an optional `latency` in ticks. A miner's arrival tick
        is the cheapest path from the producer, rounded up to a whole tick.
        When `relays` is given the producer only uploads to those neighbours.
        """
        if producer not in graph:
            raise ValueError(f"producer {producer} is not in the link graph")
        G = graph
        if relays is not None:
            G = graph.copy()
            for neighbour in list(G.neighbors(producer)):
                if neighbour not in relays:
                    G.remove_edge(producer, neighbour)

        def transfer_time(u, v, data):
            return data.get('latency', 0) + block_size_bits / data['bandwidth']

        arrivals = nx.single_source_dijkstra_path_length(G, producer, weight=transfer_time)
        by_tick = {}
        for miner, t in arrivals.items():
            if miner == producer:
                continue
            # guard against float noise such as 40.000000001
            tick = max(1, math.ceil(round(t, 9)))
            by_tick.setdefault(tick, set()).add(miner)

        stages = sorted(by_tick.items())
        horizon = stages[-1][0] + 1 if stages else 1
        return cls(stages, horizon)

# ------------------------------
# Example Network
# ------------------------------

GBPS = 1e9
HEAVY_BLOCK_BITS = 5 * 8e9  # a 5GB block of transactions new to the network

def example_network():
    """Six miners, B and C on 40Gbps backbone links to A, everyone else on 1Gbps."""
    G = nx.Graph()
    G.add_edge('A', 'B', bandwidth=40 * GBPS)
    G.add_edge('A', 'C', bandwidth=40 * GBPS)
    G.add_edge('B', 'C', bandwidth=40 * GBPS)
    G.add_edge('B', 'D', bandwidth=1 * GBPS)
    G.add_edge('C', 'E', bandwidth=1 * GBPS)
    G.add_edge('D', 'F', bandwidth=1 * GBPS)
    G.add_edge('E', 'F', bandwidth=1 * GBPS)
    return G

def default_topology():
    # near group at 1, D/E at 41, F at 81, fully propagated at 82
    return PropagationTopology([(1, {'B', 'C'}), (41, {'D', 'E'}), (81, {'F'})], horizon=82)

# ------------------------------
# Visualizations
# ------------------------------

def draw_links(graph, producer, filename="link_topology.png"):
    pos = nx.spring_layout(graph, seed=42)
    others = [n for n in graph.nodes if n != producer]
    nx.draw_networkx_nodes(graph, pos, nodelist=[producer], node_color='orange', label='Heavy producer')
    nx.draw_networkx_nodes(graph, pos, nodelist=others, node_color='skyblue', label='Miners')
    nx.draw_networkx_edges(graph, pos)
    nx.draw_networkx_labels(graph, pos)
    edge_labels = {(u, v): f"{d['bandwidth'] / GBPS:g}G" for u, v, d in graph.edges(data=True)}
    nx.draw_networkx_edge_labels(graph, pos, edge_labels=edge_labels)
    plt.title("Miner Link Topology")
    plt.axis('off')
    plt.legend()
    plt.savefig(filename)
    plt.close()

def render(topology, producer, filename="propagation_schedule", format='png'):
    """
    Renders the propagation schedule with Graphviz: the producer on the left,
    one rank per stage, and the horizon as the final node.
    """
    dot = Digraph(comment="Heavy block propagation schedule")
    dot.attr(rankdir='LR', nodesep='0.4', ranksep='0.8')
    dot.attr('node', shape='ellipse', fontsize='14')

    dot.node(producer, label=f"{producer}\n(t=0)", style='filled', fillcolor='orange')
    previous = producer
    for stage in topology.stages:
        stage_id = f"stage_{stage.threshold}"
        dot.node(stage_id, label=f"t={stage.threshold}", shape='box')
        dot.edge(previous, stage_id)
        for miner in sorted(stage.miners):
            dot.node(miner)
            dot.edge(stage_id, miner)
        previous = stage_id
    dot.node("horizon", label=f"full propagation\n(t={topology.horizon})", shape='box', style='dashed')
    dot.edge(previous, "horizon")

    dot.render(filename, format=format, cleanup=True)
    print(f"Propagation schedule saved as {filename}.{format}")
    return dot
