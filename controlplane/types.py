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

from __future__ import annotations

import enum
from typing import Any

import pydantic

__all__ = (
    "AutoscalingMode",
    "BlockWithExceptions",
    "ObjectKey",
    "ReplicaDecision",
    "ReplicaSource",
    "ResourceClass",
    "ResourceRequirements",
    "ScalingInterval",
)

# Plural resource names that cannot be derived by lowercasing the kind and appending an "s"
IRREGULAR_PLURALS = {
    "NetworkPolicy": "networkpolicies",
    "PodDisruptionBudget": "poddisruptionbudgets",
}


class ObjectKey(pydantic.BaseModel):
    """
    ObjectKey models the stable identity of a namespaced object in the cluster.

    The API version is part of the key because it is needed to address the object in the
    API server. Two keys that differ only in their API version address different
    representations of the object and are considered distinct.
    """

    model_config = pydantic.ConfigDict(frozen=True)

    api_version: str = pydantic.Field(
        ..., description="Group and version of the object, e.g. `apps/v1`."
    )
    kind: str = pydantic.Field(..., description="Kind of the object, e.g. `Deployment`.")
    namespace: str = pydantic.Field(..., description="Namespace of the object.")
    name: str = pydantic.Field(..., description="Name of the object.")

    @property
    def group(self) -> str:
        """Return the API group of the object. The core group is the empty string."""
        group, _, _ = self.api_version.rpartition("/")
        return group

    @property
    def version(self) -> str:
        _, _, version = self.api_version.rpartition("/")
        return version

    @property
    def plural(self) -> str:
        """Return the plural resource name used in API paths."""
        return IRREGULAR_PLURALS.get(self.kind, f"{self.kind.lower()}s")

    def empty_body(self) -> dict[str, Any]:
        """Return a body carrying nothing but the identity of the object."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": {"name": self.name, "namespace": self.namespace},
        }

    def with_name(self, name: str) -> ObjectKey:
        return self.model_copy(update={"name": name})

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


class AutoscalingMode(str, enum.Enum):
    """
    The AutoscalingMode enumeration selects which autoscaling strategy owns the scaling of a workload.

    The modes are mutually exclusive: the objects of exactly one mode may exist for a given
    workload at any time.
    """

    coordinated = "coordinated"
    """A single HVPA object arbitrates between horizontal and vertical scaling via weighted intervals."""

    split = "split"
    """Independent VPA and HPA objects each own one axis of scaling."""


class ReplicaSource(str, enum.Enum):
    """Provenance of a resolved replica count."""

    static_override = "static_override"
    preserved = "preserved"
    hibernated = "hibernated"
    default = "default"


class ReplicaDecision(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    count: pydantic.NonNegativeInt
    source: ReplicaSource


class ResourceClass(str, enum.Enum):
    """Resource classes ordered from the smallest to the largest footprint."""

    small = "small"
    medium = "medium"
    large = "large"
    xlarge = "xlarge"
    xxlarge = "2xlarge"

    @classmethod
    def values(cls) -> list[str]:
        """
        Return a list of strings that identifies all resource class values.
        """
        return list(map(lambda rsrc: rsrc.value, cls.__members__.values()))


class ResourceRequirements(pydantic.BaseModel):
    """CPU and memory requests and limits of a container, as Kubernetes quantity strings."""

    model_config = pydantic.ConfigDict(frozen=True)

    cpu_request: str
    memory_request: str
    cpu_limit: str
    memory_limit: str

    def to_resources(self) -> dict[str, dict[str, str]]:
        """Render the requirements as the `resources` field of a container."""
        return {
            "requests": {"cpu": self.cpu_request, "memory": self.memory_request},
            "limits": {"cpu": self.cpu_limit, "memory": self.memory_limit},
        }


class ScalingInterval(pydantic.BaseModel):
    """
    A replica count range paired with the percentage of scaling attributed to vertical scaling.

    A weight of 0 leaves scaling to the horizontal autoscaler while a weight of 100 leaves it
    entirely to the vertical autoscaler.
    """

    model_config = pydantic.ConfigDict(frozen=True)

    start_replica_count: pydantic.PositiveInt
    last_replica_count: pydantic.PositiveInt
    vpa_weight: int = pydantic.Field(..., ge=0, le=100)

    @pydantic.model_validator(mode="after")
    def _check_range(self) -> ScalingInterval:
        if self.last_replica_count < self.start_replica_count:
            raise ValueError(
                f"last replica count ({self.last_replica_count}) must not be less than"
                f" start replica count ({self.start_replica_count})"
            )
        return self

    def to_dict(self) -> dict[str, int]:
        return {
            "vpaWeight": self.vpa_weight,
            "startReplicaCount": self.start_replica_count,
            "lastReplicaCount": self.last_replica_count,
        }


class BlockWithExceptions(pydantic.BaseModel):
    """A network block paired with the exception subnets that carve holes into it."""

    model_config = pydantic.ConfigDict(frozen=True, populate_by_name=True)

    cidr: str
    except_: tuple[str, ...] = pydantic.Field((), alias="except")

    def to_peer(self) -> dict[str, Any]:
        """Render the block as a NetworkPolicy peer. Blocks without exceptions omit the `except` field."""
        ip_block: dict[str, Any] = {"cidr": self.cidr}
        if self.except_:
            ip_block["except"] = list(self.except_)
        return {"ipBlock": ip_block}
