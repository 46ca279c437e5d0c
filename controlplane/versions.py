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

"""Version-gated behavior expressed as data.

A `VersionTable` is an ordered table of `(constraint, capability)` pairs. It is built once at
startup and handed to the components that need it, which then ask for the capabilities of a
concrete Kubernetes version instead of comparing versions themselves. Supporting a new version
band is a table insertion.
"""
from __future__ import annotations

import enum
from typing import Iterable, NamedTuple, Union

import semver

__all__ = (
    "Capability",
    "DEFAULT_VERSION_TABLE",
    "VersionCapabilities",
    "VersionConstraint",
    "VersionTable",
    "parse_version",
)

Version = semver.Version


class Capability(str, enum.Enum):
    """Behavior flags that depend on the Kubernetes version of the target cluster."""

    hpa_autoscaling_v2 = "hpa-autoscaling-v2"
    """HorizontalPodAutoscalers are served as `autoscaling/v2` with structured metric targets."""

    hpa_autoscaling_v2beta1 = "hpa-autoscaling-v2beta1"
    """HorizontalPodAutoscalers are served as `autoscaling/v2beta1` with `targetAverageUtilization`."""


def parse_version(version: Union[str, Version]) -> Version:
    """Parse a Kubernetes version string such as `v1.24`, `1.24.3` or `1.25.0-gke.1`."""
    if isinstance(version, Version):
        return version
    return Version.parse(version.strip().lstrip("v"), optional_minor_and_patch=True)


class VersionConstraint:
    """A conjunction of semver comparisons such as `>=1.16, <1.23`."""

    def __init__(self, expression: str) -> None:
        clauses = [clause.strip() for clause in expression.split(",") if clause.strip()]
        if not clauses:
            raise ValueError(f"invalid version constraint '{expression}': no clauses")

        self.expression = expression
        self._clauses: list[tuple[str, Version]] = []
        for clause in clauses:
            operator = clause.rstrip("0123456789.v ")
            if operator not in ("<", "<=", ">", ">=", "==", "!="):
                raise ValueError(
                    f"invalid version constraint '{expression}': unknown operator in '{clause}'"
                )
            self._clauses.append((operator, parse_version(clause[len(operator) :])))

    def check(self, version: Union[str, Version]) -> bool:
        """Return True if the version satisfies every clause of the constraint."""
        version = parse_version(version)
        # Compare without prerelease/build so that `1.23.0-gke.1` satisfies `>=1.23`
        version = version.finalize_version()
        return all(version.match(f"{op}{bound}") for op, bound in self._clauses)

    def __repr__(self) -> str:
        return f"VersionConstraint('{self.expression}')"


class VersionCapabilities(frozenset):
    """The set of capabilities applicable to a resolved version."""

    def __new__(cls, version: Version, capabilities: Iterable[Capability] = ()):
        instance = super().__new__(cls, capabilities)
        instance.version = version
        return instance

    def has(self, capability: Capability) -> bool:
        return capability in self

    def __repr__(self) -> str:
        flags = ", ".join(sorted(c.value for c in self))
        return f"VersionCapabilities({self.version}: {flags})"


class VersionTableEntry(NamedTuple):
    constraint: VersionConstraint
    capability: Capability


class VersionTable:
    """An ordered table of version ranges and the capabilities they enable."""

    def __init__(self, entries: Iterable[tuple[Union[str, VersionConstraint], Capability]]) -> None:
        self.entries: tuple[VersionTableEntry, ...] = tuple(
            VersionTableEntry(
                constraint
                if isinstance(constraint, VersionConstraint)
                else VersionConstraint(constraint),
                capability,
            )
            for constraint, capability in entries
        )

    def capabilities_for(self, version: Union[str, Version]) -> VersionCapabilities:
        version = parse_version(version)
        return VersionCapabilities(
            version,
            (entry.capability for entry in self.entries if entry.constraint.check(version)),
        )


DEFAULT_VERSION_TABLE = VersionTable(
    [
        (">=1.23", Capability.hpa_autoscaling_v2),
        ("<1.23", Capability.hpa_autoscaling_v2beta1),
    ]
)
