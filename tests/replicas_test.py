from typing import Optional

import pytest

from controlplane.replicas import resolve_replicas
from controlplane.types import AutoscalingMode, ReplicaSource

coordinated = AutoscalingMode.coordinated
split = AutoscalingMode.split


@pytest.mark.parametrize(
    "override, live_count, hibernating, mode, default, expected_count, expected_source",
    [
        # A static override wins in split mode
        (3, None, False, split, 1, 3, ReplicaSource.static_override),
        (3, 5, False, split, 1, 3, ReplicaSource.static_override),
        (3, 0, True, split, 1, 3, ReplicaSource.static_override),
        # ...but is ignored in coordinated mode
        (3, 5, False, coordinated, 1, 5, ReplicaSource.preserved),
        (3, None, False, coordinated, 2, 2, ReplicaSource.default),
        # Live counts survive re-rendering
        (None, 5, False, split, 1, 5, ReplicaSource.preserved),
        (None, 5, True, coordinated, 1, 5, ReplicaSource.preserved),
        # Hibernated workloads stay asleep
        (None, 0, True, coordinated, 1, 0, ReplicaSource.hibernated),
        (3, 0, True, coordinated, 1, 0, ReplicaSource.hibernated),
        (None, None, True, split, 1, 0, ReplicaSource.hibernated),
        # Fresh or woken up workloads start at the default
        (None, 0, False, split, 1, 1, ReplicaSource.default),
        (None, None, False, coordinated, 3, 3, ReplicaSource.default),
    ],
)
def test_resolve_replicas(
    override: Optional[int],
    live_count: Optional[int],
    hibernating: bool,
    mode: AutoscalingMode,
    default: int,
    expected_count: int,
    expected_source: ReplicaSource,
) -> None:
    decision = resolve_replicas(override, live_count, hibernating, mode, default=default)
    assert decision.count == expected_count
    assert decision.source == expected_source


def test_override_of_zero_is_honored_in_split_mode() -> None:
    decision = resolve_replicas(0, 4, False, split)
    assert (decision.count, decision.source) == (0, ReplicaSource.static_override)


@pytest.mark.parametrize(
    "override, live_count, default",
    [(-1, None, 1), (None, -2, 1), (None, None, -1)],
)
def test_negative_inputs_rejected(
    override: Optional[int], live_count: Optional[int], default: int
) -> None:
    with pytest.raises(ValueError, match="must not be negative"):
        resolve_replicas(override, live_count, False, split, default=default)
