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

"""Configuration of the control plane components.

Settings are read from keyword arguments, `CONTROLPLANE_` prefixed environment variables (with
`__` separating nested fields, e.g. `CONTROLPLANE_AUTOSCALING__MAX_REPLICAS=6`) or a YAML
document via `ControlPlaneSettings.from_yaml`.
"""
from __future__ import annotations

import datetime
import ipaddress
import os
import pathlib
import re
from typing import Annotated, Any, Optional, Union

import kubernetes_asyncio.config
import pydantic
import pydantic_settings
import yaml

import controlplane.logging
from controlplane.autoscaling import AutoscalingOptions
from controlplane.types import AutoscalingMode, ObjectKey
from controlplane.versions import (
    DEFAULT_VERSION_TABLE,
    VersionCapabilities,
    VersionTable,
    parse_version,
)

__all__ = (
    "AutoscalingConfiguration",
    "ControlPlaneSettings",
    "Duration",
    "NetworkConfiguration",
    "timedelta_from_duration_str",
)

_DURATION_UNITS = {
    "ms": datetime.timedelta(milliseconds=1),
    "s": datetime.timedelta(seconds=1),
    "m": datetime.timedelta(minutes=1),
    "h": datetime.timedelta(hours=1),
    "d": datetime.timedelta(days=1),
}
_DURATION_PATTERN = re.compile(r"([\d\.]+)([a-z]+)")


def timedelta_from_duration_str(duration: str) -> datetime.timedelta:
    """Parse a Golang style duration string such as `300ms`, `5m` or `1h30m` into a timedelta.

    Raises a ValueError if the string cannot be parsed.
    """
    if duration.strip() == "0":
        return datetime.timedelta()

    matches = _DURATION_PATTERN.findall(duration)
    if not matches or "".join(value + unit for value, unit in matches) != duration.strip():
        raise ValueError(f"Invalid duration '{duration}'")

    total = datetime.timedelta()
    for value, unit in matches:
        if unit not in _DURATION_UNITS:
            raise ValueError(f"Unknown unit '{unit}' in duration '{duration}'")
        try:
            total += float(value) * _DURATION_UNITS[unit]
        except ValueError:
            raise ValueError(f"Invalid value '{value}' in duration '{duration}'")
    return total


def _parse_duration(value: Any) -> Any:
    if isinstance(value, str):
        return timedelta_from_duration_str(value)
    return value


Duration = Annotated[datetime.timedelta, pydantic.BeforeValidator(_parse_duration)]
"""A timedelta that can also be given as a duration string, e.g. `5m`."""


def _validate_cidr(value: str) -> str:
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError as error:
        raise ValueError(f"invalid CIDR '{value}': {error}") from error
    return value


class AutoscalingConfiguration(pydantic.BaseModel):
    """
    AutoscalingConfiguration models how a control plane workload is scaled.
    """

    hvpa_enabled: bool = pydantic.Field(
        False,
        description="Scale the workload with a single HVPA object instead of a VPA and HPA pair.",
    )
    replicas: Optional[pydantic.NonNegativeInt] = pydantic.Field(
        None,
        description="Static replica count. Honored only when HVPA is disabled.",
    )
    min_replicas: pydantic.PositiveInt = 1
    max_replicas: pydantic.PositiveInt = 4
    use_memory_metric: bool = False
    scale_down_disabled: bool = False
    scaling_class: Optional[str] = pydantic.Field(
        None,
        description="Resource class overriding the class derived from the node count. Unknown classes are ignored.",
    )
    node_count: pydantic.NonNegativeInt = pydantic.Field(
        1, description="Number of nodes of the cluster the control plane serves."
    )
    container_policies: list[dict[str, Any]] = pydantic.Field(
        [],
        description="Container resource policies handed to the vertical autoscaler.",
    )

    @pydantic.model_validator(mode="after")
    def _check_bounds(self) -> AutoscalingConfiguration:
        if self.max_replicas < self.min_replicas:
            raise ValueError(
                f"max_replicas ({self.max_replicas}) must not be less than min_replicas ({self.min_replicas})"
            )
        return self

    @property
    def mode(self) -> AutoscalingMode:
        return AutoscalingMode.coordinated if self.hvpa_enabled else AutoscalingMode.split

    @property
    def options(self) -> AutoscalingOptions:
        return AutoscalingOptions(
            use_memory_metric=self.use_memory_metric,
            scale_down_disabled=self.scale_down_disabled,
            container_policies=tuple(self.container_policies),
        )


class NetworkConfiguration(pydantic.BaseModel):
    """
    NetworkConfiguration models the networks of a cluster and the addresses blocked by operators.
    """

    blocked_cidrs: list[str] = []
    pods: Optional[str] = None
    services: Optional[str] = None
    nodes: Optional[str] = None

    @pydantic.field_validator("blocked_cidrs")
    @classmethod
    def _validate_blocked_cidrs(cls, value: list[str]) -> list[str]:
        return [_validate_cidr(cidr) for cidr in value]

    @pydantic.field_validator("pods", "services", "nodes")
    @classmethod
    def _validate_network(cls, value: Optional[str]) -> Optional[str]:
        return _validate_cidr(value) if value is not None else None

    @property
    def cluster_networks(self) -> list[str]:
        """The configured pod, service and node networks, in that order."""
        return [cidr for cidr in (self.pods, self.services, self.nodes) if cidr]


class ControlPlaneSettings(pydantic_settings.BaseSettings, controlplane.logging.Mixin):
    """
    ControlPlaneSettings is the root of the control plane configuration.
    """

    model_config = pydantic_settings.SettingsConfigDict(
        env_prefix="CONTROLPLANE_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    kubeconfig: Optional[pathlib.Path] = pydantic.Field(
        None,
        description="Path to the kubeconfig file. Defaults to `~/.kube/config`.",
    )
    context: Optional[str] = pydantic.Field(None, description="Name of the kubeconfig context to use.")
    namespace: str = "default"
    kubernetes_version: str = pydantic.Field(
        "1.24", description="Kubernetes version of the target cluster, e.g. `1.24` or `v1.22.3`."
    )
    timeout: Duration = pydantic.Field(
        datetime.timedelta(minutes=5),
        description="Time interval to wait before considering Kubernetes operations to have failed.",
    )
    interval: Duration = pydantic.Field(
        datetime.timedelta(seconds=5),
        description="Time interval between two checks while waiting for an object.",
    )
    hibernated: bool = pydantic.Field(
        False, description="Whether the cluster is hibernated or being hibernated."
    )
    autoscaling: AutoscalingConfiguration = pydantic.Field(default_factory=AutoscalingConfiguration)
    network: NetworkConfiguration = pydantic.Field(default_factory=NetworkConfiguration)

    @pydantic.field_validator("kubernetes_version")
    @classmethod
    def _validate_kubernetes_version(cls, value: str) -> str:
        try:
            parse_version(value)
        except ValueError as error:
            raise ValueError(f"invalid Kubernetes version '{value}': {error}") from error
        return value

    @pydantic.field_validator("timeout", "interval")
    @classmethod
    def _validate_positive(cls, value: datetime.timedelta) -> datetime.timedelta:
        if value <= datetime.timedelta():
            raise ValueError("must be a positive duration")
        return value

    @classmethod
    def from_yaml(
        cls, file: Union[str, pathlib.Path], *, key: Optional[str] = None
    ) -> ControlPlaneSettings:
        """
        Parse a YAML configuration file and return the settings it describes.

        If the file does not contain a valid configuration, a `ValidationError` will be raised.
        """
        config = yaml.safe_load(pathlib.Path(file).read_text()) or {}
        if key:
            try:
                config = config[key]
            except KeyError as error:
                raise KeyError(f"invalid key '{key}'") from error
        return cls(**config)

    def capabilities(self, table: VersionTable = DEFAULT_VERSION_TABLE) -> VersionCapabilities:
        return table.capabilities_for(self.kubernetes_version)

    def deployment_key(self, name: str) -> ObjectKey:
        return ObjectKey(
            api_version="apps/v1", kind="Deployment", namespace=self.namespace, name=name
        )

    async def load_kubeconfig(self) -> None:
        """
        Asynchronously load the Kubernetes configuration
        """
        config_file = pathlib.Path(
            self.kubeconfig
            or kubernetes_asyncio.config.kube_config.KUBE_CONFIG_DEFAULT_LOCATION
        ).expanduser()
        if config_file.exists():
            await kubernetes_asyncio.config.load_kube_config(
                config_file=str(config_file),
                context=self.context,
            )
        elif os.getenv("KUBERNETES_SERVICE_HOST"):
            kubernetes_asyncio.config.load_incluster_config()
        else:
            raise RuntimeError(
                "unable to configure Kubernetes client: no kubeconfig file nor in-cluster environment variables found"
            )
