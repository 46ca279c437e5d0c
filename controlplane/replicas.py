# Copyright 2022 Cisco Systems, Inc. and/or its affiliates.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Replica continuity across reconciliation passes.

Re-rendering a workload must not reset a replica count that an autoscaler has already
adjusted, nor wake up a workload that was deliberately scaled to zero.
"""
from __future__ import annotations

from typing import Optional

from controlplane.types import AutoscalingMode, ReplicaDecision, ReplicaSource

__all__ = ("resolve_replicas",)


def resolve_replicas(
    override: Optional[int],
    live_count: Optional[int],
    hibernating: bool,
    mode: AutoscalingMode,
    default: int = 1,
) -> ReplicaDecision:
    """Decide the replica count of a workload for the current reconciliation pass.

    The first matching rule wins:

    1. A static override applies in split mode, where no coordinated autoscaler owns the count.
    2. A positive live count is preserved because an autoscaler may have adjusted it.
    3. A hibernating workload without live replicas stays at zero.
    4. Otherwise the default count applies.

    Args:
        override: The statically configured replica count, if any.
        live_count: The replica count of the live workload, or None when it does not exist.
        hibernating: Whether the cluster is hibernated or being hibernated.
        mode: The autoscaling mode of the workload.
        default: The count of a freshly started, unhibernated workload.

    Raises:
        ValueError: Raised if any count is negative.
    """
    for name, value in (("override", override), ("live count", live_count), ("default", default)):
        if value is not None and value < 0:
            raise ValueError(f"{name} must not be negative, got {value}")

    if override is not None and mode == AutoscalingMode.split:
        return ReplicaDecision(count=override, source=ReplicaSource.static_override)

    if live_count:
        return ReplicaDecision(count=live_count, source=ReplicaSource.preserved)

    if hibernating:
        return ReplicaDecision(count=0, source=ReplicaSource.hibernated)

    return ReplicaDecision(count=default, source=ReplicaSource.default)
