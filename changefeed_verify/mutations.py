"""
changefeed_verify/mutations.py - Keyed State and Mutation Log Definitions

A KeyedState is the full content of a key range at one version.
A MutationBatch is every mutation the store committed at one version.
"""
from enum import Enum
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

Version = int

# The user key space. Keys at or above "\xff" belong to the store itself.
ALL_KEYS_BEGIN = ""
ALL_KEYS_END = "\xff"


class KeyValue(NamedTuple):
    key: str
    value: str


class KeyRange(NamedTuple):
    """Half-open key interval [begin, end)."""
    begin: str
    end: str

    def contains(self, key: str) -> bool:
        return self.begin <= key < self.end

    def intersect(self, other: "KeyRange") -> Optional["KeyRange"]:
        begin = max(self.begin, other.begin)
        end = min(self.end, other.end)
        if begin >= end:
            return None
        return KeyRange(begin, end)


NORMAL_KEYS = KeyRange(ALL_KEYS_BEGIN, ALL_KEYS_END)

# Sorted, unique keys. Tuples so a state can't change after it is produced.
KeyedState = Tuple[KeyValue, ...]


class MutationType(str, Enum):
    SET_VALUE = "SET_VALUE"
    CLEAR_RANGE = "CLEAR_RANGE"


@dataclass(frozen=True)
class Mutation:
    """
    A single logged mutation.

    SET_VALUE: param1 = key, param2 = value
    CLEAR_RANGE: param1 = begin key, param2 = end key (exclusive)
    """
    type: MutationType
    param1: str
    param2: str

    @staticmethod
    def set(key: str, value: str) -> "Mutation":
        return Mutation(MutationType.SET_VALUE, key, value)

    @staticmethod
    def clear_range(begin: str, end: str) -> "Mutation":
        return Mutation(MutationType.CLEAR_RANGE, begin, end)

    def to_dict(self):
        return {"type": self.type.value, "param1": self.param1, "param2": self.param2}


@dataclass(frozen=True)
class MutationBatch:
    version: Version
    mutations: Tuple[Mutation, ...]


def make_state(pairs) -> KeyedState:
    """Build a KeyedState from (key, value) pairs, sorting by key."""
    data = dict(pairs)
    return tuple(KeyValue(k, data[k]) for k in sorted(data))
