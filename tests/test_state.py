from __future__ import annotations

import copy

import pytest

from clockgov.errors import DeviceSelectionError
from clockgov.state import (
    UNREADABLE, Device, GovernanceMode, GovernedSet, ObservedSample, Unreadable, display
)


def test_unreadable_is_a_distinct_singleton() -> None:
    assert Unreadable() is UNREADABLE
    assert UNREADABLE != 0
    assert UNREADABLE != -1
    assert display(UNREADABLE) == "unreadable"
    assert display(0) == "0"


def test_sample_readability() -> None:
    assert ObservedSample(0, 0, 135).readable
    assert not ObservedSample(0, UNREADABLE, 135).readable


def test_device_targets() -> None:
    device = Device(1, 544, 1328)
    assert device.target_clock(GovernanceMode.LOW) == 544
    assert device.target_clock(GovernanceMode.HIGH) == 1328
    with pytest.raises(ValueError):
        device.target_clock(GovernanceMode.UNSET)


def test_device_is_immutable() -> None:
    device = Device(1, 544, 1328)
    with pytest.raises(AttributeError):
        device.low_clock = 135


def test_governed_set_must_not_be_empty() -> None:
    with pytest.raises(DeviceSelectionError):
        GovernedSet([])


def test_governed_set_rejects_duplicates() -> None:
    with pytest.raises(DeviceSelectionError):
        GovernedSet([Device(1, 544, 1328), Device(1, 135, 1380)])


def test_governed_set_orders_by_index_and_starts_unset() -> None:
    governed = GovernedSet([Device(2, 135, 1380), Device(1, 544, 1328)])

    assert governed.indices() == [1, 2]
    assert 1 in governed and 3 not in governed
    assert len(governed) == 2
    assert governed[2].mode == GovernanceMode.UNSET


def test_snapshot() -> None:
    governed = GovernedSet([Device(1, 544, 1328)])
    governed[1].mode = GovernanceMode.HIGH

    assert governed.snapshot() == [{
        "index": 1,
        "low_clock": 544,
        "high_clock": 1328,
        "mode": "HIGH",
        "last_transition": None,
    }]


def test_unreadable_survives_copy() -> None:
    assert copy.copy(UNREADABLE) is UNREADABLE
