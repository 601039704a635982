"""
changefeed_verify/test_reconstruct.py - Replay Semantics

Tests:
- Worked scenario from base state at version 100 to 110
- ClearRange is end-exclusive and idempotent
- Last writer wins across and within batches
- Empty interval returns the base unchanged
- Protocol errors are fatal
"""
import pytest

from .errors import ProtocolError
from .mutations import (
    ALL_KEYS_BEGIN, ALL_KEYS_END, KeyValue, Mutation, MutationBatch, make_state,
)
from .reconstruct import advance_state
from .compare import compare_states


def batch(version, *mutations):
    return MutationBatch(version, tuple(mutations))


class TestScenarios:

    def test_set_then_exclusive_clear(self):
        """ClearRange("a", "b") removes "a" but not "b"."""
        base = make_state([("a", "1"), ("b", "2")])
        batches = [
            batch(105, Mutation.set("b", "20"), Mutation.clear_range("a", "b")),
            batch(110, Mutation.set("c", "3")),
        ]

        result = advance_state(base, batches)

        assert result == (KeyValue("b", "20"), KeyValue("c", "3"))

    def test_clear_whole_key_space(self):
        base = make_state([("a", "1"), ("m", "2"), ("z", "3")])
        result = advance_state(base, [batch(7, Mutation.clear_range(ALL_KEYS_BEGIN, ALL_KEYS_END))])

        assert result == ()
        assert compare_states(result, ()).matched

    def test_size_mismatch_detected(self):
        base = make_state([("k1", "v1")])
        result = advance_state(base, [batch(2, Mutation.set("k2", "v2"))])

        assert len(result) == 2
        comparison = compare_states(result, make_state([("k1", "v1")]))
        assert not comparison.matched


class TestSemantics:

    def test_empty_interval_returns_base(self):
        base = make_state([("a", "1"), ("b", "2")])
        assert advance_state(base, []) == base

    def test_clear_range_idempotent(self):
        base = make_state([(k, k.upper()) for k in "abcdefg"])
        once = advance_state(base, [batch(1, Mutation.clear_range("b", "e"))])
        twice = advance_state(base, [
            batch(1, Mutation.clear_range("b", "e"), Mutation.clear_range("b", "e")),
        ])

        assert once == twice
        assert [kv.key for kv in once] == ["a", "e", "f", "g"]

    def test_clear_empty_and_inverted_range_is_noop(self):
        base = make_state([("a", "1"), ("b", "2")])
        assert advance_state(base, [batch(1, Mutation.clear_range("b", "b"))]) == base
        assert advance_state(base, [batch(1, Mutation.clear_range("c", "a"))]) == base

    def test_last_writer_wins_within_batch(self):
        result = advance_state((), [batch(1, Mutation.set("k", "1"), Mutation.set("k", "2"))])
        assert result == (KeyValue("k", "2"),)

    def test_last_writer_wins_across_batches(self):
        result = advance_state((), [
            batch(1, Mutation.set("k", "1")),
            batch(2, Mutation.set("k", "2")),
            batch(3, Mutation.set("k", "3")),
        ])
        assert result == (KeyValue("k", "3"),)

    def test_set_after_clear_in_same_batch_survives(self):
        base = make_state([("a", "1")])
        result = advance_state(base, [batch(1, Mutation.clear_range("a", "z"), Mutation.set("a", "new"))])
        assert result == (KeyValue("a", "new"),)

    def test_output_sorted(self):
        result = advance_state((), [batch(1, *(Mutation.set(k, "v") for k in "qwerty"))])
        keys = [kv.key for kv in result]
        assert keys == sorted(keys)

    def test_deterministic(self):
        base = make_state([("a", "1"), ("c", "3")])
        batches = [
            batch(1, Mutation.set("b", "2"), Mutation.clear_range("c", "d")),
            batch(4, Mutation.set("c", "33")),
        ]
        assert advance_state(base, batches) == advance_state(base, list(batches))

    def test_base_not_modified(self):
        base = make_state([("a", "1")])
        advance_state(base, [batch(1, Mutation.clear_range("a", "b"))])
        assert base == (KeyValue("a", "1"),)


class TestProtocolErrors:

    def test_unknown_mutation_type(self):
        bogus = Mutation("ATOMIC_ADD", "a", "1")
        with pytest.raises(ProtocolError):
            advance_state((), [batch(1, bogus)])

    def test_versions_must_ascend(self):
        with pytest.raises(ProtocolError):
            advance_state((), [batch(5, Mutation.set("a", "1")), batch(5, Mutation.set("a", "2"))])
