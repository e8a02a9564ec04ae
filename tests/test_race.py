import dataclasses

import pytest

from Blocksize.Simulator import IDLE, Outcome, RaceRules, Racing, step
from Blocksize.Topology import PropagationTopology, default_topology
from conftest import NAMES, advance_to, drive, found, quiet, totals


class TestIdle:
    def test_quiet_tick_changes_nothing(self, rules):
        assert step(IDLE, quiet(), rules) == (IDLE, None, None)

    def test_blocks_are_final_immediately(self, rules):
        state, delta, resolution = step(IDLE, found(B=1, D=2), rules)

        assert state is IDLE
        assert resolution is None
        assert delta.accepted == (0, 1, 0, 2, 0, 0)
        assert delta.stale == (0,) * 6

    def test_simultaneous_blocks_stack(self, rules):
        _, delta, _ = step(IDLE, found(B=1, C=1, D=1, E=1, F=1), rules)

        assert sum(delta.accepted) == 5
        assert sum(delta.stale) == 0

    def test_no_producer_never_races(self):
        rules = RaceRules(NAMES, None, default_topology())
        state, deltas, resolutions = drive([found(A=2, B=1), found(A=1), quiet()], rules=rules)

        assert state is IDLE
        assert resolutions == []
        accepted, stale = totals(deltas)
        assert accepted['A'] == 3
        assert sum(stale.values()) == 0


class TestRaceStart:
    def test_producer_block_starts_race(self, rules):
        state, delta, resolution = step(IDLE, found(A=1), rules)

        assert delta is None and resolution is None
        assert isinstance(state, Racing)
        assert state.progress == 1
        assert state.heavy_depth == 1
        assert state.comp_depth == 0

    def test_producer_blocks_in_one_tick_all_extend_heavy_chain(self, rules):
        state, _, _ = step(IDLE, found(A=3), rules)

        assert state.heavy == (3, 0, 0, 0, 0, 0)
        assert state.comp_depth == 0

    def test_producer_keeps_extending_heavy_chain(self, rules):
        state, _, _ = drive([found(A=1), found(A=1), found(A=2)])

        assert state.heavy[0] == 4
        assert state.comp_depth == 0


class TestAbandon:
    def test_other_block_in_same_tick_abandons_heavy_block(self, rules):
        state, delta, resolution = step(IDLE, found(A=1, D=1), rules)

        assert state is IDLE
        assert resolution.outcome == Outcome.ABANDONED
        assert delta.stale == (1, 0, 0, 0, 0, 0)
        assert delta.accepted == (0, 0, 0, 1, 0, 0)

    def test_whole_heavy_depth_becomes_stale(self, rules):
        unseen = Racing(0, (2, 0, 0, 0, 0, 0), (0,) * 6)
        state, delta, resolution = step(unseen, found(A=1, B=1), rules)

        assert state is IDLE
        assert resolution.heavy_depth == 3
        assert delta.stale == (3, 0, 0, 0, 0, 0)
        assert delta.accepted == (0, 1, 0, 0, 0, 0)

    def test_abandon_only_while_nobody_has_the_block(self, rules):
        # one tick later the near group already mines on the heavy block
        state, deltas, resolutions = drive([found(A=1), found(B=1)])

        assert resolutions == []
        assert deltas == []
        assert state.heavy == (1, 1, 0, 0, 0, 0)
        assert state.switched >= {1, 2}

    def test_late_first_stage_keeps_block_unseen_longer(self):
        topology = PropagationTopology([(3, {'B', 'C', 'D', 'E', 'F'})], horizon=4)
        rules = RaceRules(NAMES, 'A', topology)
        state, deltas, resolutions = drive([found(A=1), found(B=1)], rules=rules)

        # B has not received the block yet so it mines a competitor, and a
        # tie is not enough for the competitor to win
        assert resolutions == []
        assert state.competing == (0, 1, 0, 0, 0, 0)


class TestCompetingChain:
    def test_unaware_miners_extend_competing_chain(self, rules):
        state, deltas, resolutions = drive([found(A=1), found(F=1)])

        assert resolutions == []
        assert state.competing == (0, 0, 0, 0, 0, 1)
        assert state.heavy_depth == 1

    def test_competing_chain_wins_when_longer(self, rules):
        state, deltas, resolutions = drive([found(A=1), found(D=1, F=1)])

        assert state is IDLE
        assert [r.outcome for r in resolutions] == [Outcome.COMPETING_WON]
        accepted, stale = totals(deltas)
        assert stale == {'A': 1, 'B': 0, 'C': 0, 'D': 0, 'E': 0, 'F': 0}
        assert accepted == {'A': 0, 'B': 0, 'C': 0, 'D': 1, 'E': 0, 'F': 1}

    def test_heavy_chain_blocks_of_other_miners_go_stale(self, rules):
        state, deltas, resolutions = drive([found(A=1), found(B=1), found(D=1, E=1, F=1)])

        assert resolutions[-1].outcome == Outcome.COMPETING_WON
        accepted, stale = totals(deltas)
        assert stale['A'] == 1 and stale['B'] == 1
        assert accepted['D'] == accepted['E'] == accepted['F'] == 1

    def test_resolution_returns_to_idle_with_clean_counters(self, rules):
        state, _, _ = drive([found(A=1), found(D=1, F=1)])
        state, delta, _ = step(state, found(B=1), rules)

        assert state is IDLE
        assert delta.accepted == (0, 1, 0, 0, 0, 0)


class TestAllegiance:
    def test_aware_group_stays_on_competing_chain_while_tied(self, rules):
        state, _, _ = drive([found(A=1), found(F=1)])
        state = advance_to(state, 41)
        state, delta, resolution = step(state, found(D=1), rules)

        # D has the heavy block but the chains are level, so D extends its own chain
        assert state is IDLE
        assert resolution.outcome == Outcome.COMPETING_WON
        assert delta.accepted == (0, 0, 0, 1, 0, 1)

    def test_aware_group_switches_when_heavy_chain_leads(self, rules):
        state, _, _ = drive([found(A=1), found(B=1), found(F=1)])
        state = advance_to(state, 41)
        state, delta, resolution = step(state, found(D=1), rules)

        assert resolution is None
        assert state.heavy == (1, 1, 0, 1, 0, 0)
        assert {3, 4} <= state.switched

    def test_switch_is_sticky(self, rules):
        state, _, _ = drive([found(A=1), found(B=1)])
        state = advance_to(state, 41)
        state, _, _ = step(state, quiet(), rules)
        assert {3, 4} <= state.switched

        # F (still unaware) draws level, D and E keep mining on the heavy block
        state, _, _ = step(state, found(F=2), rules)
        state, _, resolution = step(state, found(E=1), rules)

        assert resolution is None
        assert state.heavy[4] == 1
        assert state.comp_depth == 2

    def test_allegiance_is_fixed_once_the_last_stage_is_reached(self, rules):
        # D and E stay level-tied on the competing chain through ticks 41-80
        state, _, _ = drive([found(A=1), found(F=1)])
        state = advance_to(state, 81)
        assert not {3, 4} & state.switched

        # the heavy chain pulls ahead at 81, too late for D and E to move
        state, _, resolution = step(state, found(B=1, D=1), rules)

        assert resolution is None
        assert state.competing[3] == 1
        assert state.heavy[3] == 0
        assert not {3, 4} & state.switched

    def test_last_stage_settles_allegiance_on_arrival(self, rules):
        # F arrives at 81 with the heavy chain ahead, so it joins it
        state, _, _ = drive([found(A=1), found(B=1)])
        state = advance_to(state, 81)
        state, _, _ = step(state, found(F=1), rules)

        assert 5 in state.switched
        assert state.heavy[5] == 1

    def test_single_stage_group_joins_on_arrival(self):
        rules = RaceRules(NAMES, 'A', PropagationTopology([(1, {'B', 'C', 'D', 'E', 'F'})], horizon=2))
        state, _, _ = drive([found(A=1), found(D=1)], rules=rules)

        assert state.heavy == (1, 0, 0, 1, 0, 0)

    def test_unreached_miners_always_compete(self):
        topology = PropagationTopology([(1, {'B', 'C'})], horizon=5)
        rules = RaceRules(NAMES, 'A', topology)
        state, _, _ = drive([found(A=1), found(B=1), quiet(), found(F=1)], rules=rules)

        assert state.competing[5] == 1
        assert 5 not in state.switched


class TestFullPropagation:
    def test_tie_at_horizon_goes_to_heavy_chain(self, rules):
        state, _, _ = drive([found(A=1), found(F=1)])
        assert state.heavy_depth == state.comp_depth == 1

        quiet_ticks = 0
        resolution = None
        while resolution is None:
            state, delta, resolution = step(state, quiet(), rules)
            quiet_ticks += 1

        assert quiet_ticks == 81
        assert resolution.outcome == Outcome.HEAVY_WON
        assert (resolution.heavy_depth, resolution.comp_depth) == (1, 1)
        assert delta.accepted == (1, 0, 0, 0, 0, 0)
        assert delta.stale == (0, 0, 0, 0, 0, 1)

    def test_progress_stops_at_horizon(self, rules):
        state, _, _ = step(IDLE, found(A=1), rules)
        state = advance_to(state, rules.horizon)

        assert state.progress == rules.horizon
        state, _, resolution = step(state, quiet(), rules)
        assert state is IDLE
        assert resolution.outcome == Outcome.HEAVY_WON

    def test_uncontested_heavy_block_is_accepted(self, rules):
        state, deltas, resolutions = drive([found(A=1)] + [quiet()] * 82)

        assert state is IDLE
        assert resolutions[0].outcome == Outcome.HEAVY_WON
        assert resolutions[0].comp_depth == 0
        assert totals(deltas)[0]['A'] == 1


class TestOvertakeAndRevert:
    def test_only_end_of_tick_depths_are_compared(self, rules):
        # E's two blocks and C's one arrive together: 2 against 2 is a tie
        state, _, resolutions = drive([found(A=1), found(C=1, E=2)])

        assert resolutions == []
        assert (state.heavy_depth, state.comp_depth) == (2, 2)

    def test_competing_lead_lost_before_resolution_does_not_count(self, rules):
        state, _, _ = drive([found(A=1), found(B=1, D=2)])
        assert state.heavy_depth == state.comp_depth == 2

        state, _, _ = step(state, found(C=1), rules)
        state, deltas, resolutions = drive([quiet()] * 100, state=state)

        assert [r.outcome for r in resolutions] == [Outcome.HEAVY_WON]
        accepted, stale = totals(deltas)
        assert accepted == {'A': 1, 'B': 1, 'C': 1, 'D': 0, 'E': 0, 'F': 0}
        assert stale['D'] == 2


class TestPurity:
    def test_step_does_not_modify_state(self, rules):
        before = Racing(5, (1, 1, 0, 0, 0, 0), (0, 0, 0, 0, 0, 1), frozenset({1, 2}))
        snapshot = dataclasses.replace(before)
        step(before, found(B=1, F=1), rules)

        assert before == snapshot

    def test_states_are_immutable(self):
        state = Racing(1, (1,) + (0,) * 5, (0,) * 6)
        with pytest.raises(dataclasses.FrozenInstanceError):
            state.progress = 2

    def test_blocks_are_conserved_across_a_race(self, rules):
        ticks = [found(A=1), found(B=1, F=1), found(D=2), found(A=1, C=1), found(E=1, F=1)] + [quiet()] * 90
        state, deltas, _ = drive(ticks)

        accepted, stale = totals(deltas)
        assert state is IDLE
        assert sum(accepted.values()) + sum(stale.values()) == sum(sum(t) for t in ticks)
