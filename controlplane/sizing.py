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

from typing import Optional, Union

from controlplane.logging import logger
from controlplane.types import ResourceClass, ResourceRequirements

__all__ = ("RESOURCE_CLASS_REQUIREMENTS", "resource_class_for", "requirements_for")

RESOURCE_CLASS_REQUIREMENTS: dict[ResourceClass, ResourceRequirements] = {
    ResourceClass.small: ResourceRequirements(
        cpu_request="800m", memory_request="800Mi", cpu_limit="1000m", memory_limit="1200Mi"
    ),
    ResourceClass.medium: ResourceRequirements(
        cpu_request="1000m", memory_request="1100Mi", cpu_limit="1200m", memory_limit="1900Mi"
    ),
    ResourceClass.large: ResourceRequirements(
        cpu_request="1200m", memory_request="1600Mi", cpu_limit="1500m", memory_limit="3900Mi"
    ),
    ResourceClass.xlarge: ResourceRequirements(
        cpu_request="2500m", memory_request="5200Mi", cpu_limit="3000m", memory_limit="5900Mi"
    ),
    ResourceClass.xxlarge: ResourceRequirements(
        cpu_request="3000m", memory_request="5200Mi", cpu_limit="4000m", memory_limit="7800Mi"
    ),
}

# Upper node count bounds (inclusive) of each class, ascending
_NODE_COUNT_THRESHOLDS = (
    (2, ResourceClass.small),
    (10, ResourceClass.medium),
    (50, ResourceClass.large),
    (100, ResourceClass.xlarge),
)


def resource_class_for(
    node_count: int, override: Union[ResourceClass, str, None] = None
) -> ResourceClass:
    """Return the resource class for a cluster of `node_count` nodes.

    A recognised override wins outright. Unrecognised overrides are ignored.
    """
    if override:
        try:
            return ResourceClass(override)
        except ValueError:
            logger.warning(
                f"ignoring unknown resource class '{override}',"
                f" expected one of: {', '.join(ResourceClass.values())}"
            )

    if node_count < 0:
        raise ValueError(f"node count must not be negative, got {node_count}")

    for bound, resource_class in _NODE_COUNT_THRESHOLDS:
        if node_count <= bound:
            return resource_class
    return ResourceClass.xxlarge


def requirements_for(
    node_count: int, override: Optional[Union[ResourceClass, str]] = None
) -> ResourceRequirements:
    return RESOURCE_CLASS_REQUIREMENTS[resource_class_for(node_count, override)]
