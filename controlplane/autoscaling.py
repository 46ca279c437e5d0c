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

"""Arbitration between the coordinated and split autoscaling strategies of a workload.

A workload is scaled either by a single HVPA object that weighs horizontal against vertical
scaling (coordinated mode) or by an independent VPA and HPA pair (split mode). Both strategies
must never act on the same workload at once, so the objects of the losing strategy are always
deleted before any object of the winning strategy is written.
"""
from __future__ import annotations

import functools
from typing import Any, Callable, NamedTuple, Optional

import pydantic

from controlplane import reconciler
from controlplane.kubernetes_helpers import ObjectStore
from controlplane.logging import Mixin, logger
from controlplane.types import AutoscalingMode, ObjectKey, ScalingInterval
from controlplane.versions import Capability, VersionCapabilities

__all__ = (
    "AutoscalerArbitrator",
    "AutoscalingOptions",
    "HPA_FLAVOURS",
    "build_hpa",
    "build_hvpa",
    "build_vpa",
    "hpa_key",
    "hvpa_key",
    "resolve_autoscaling",
    "scaling_intervals",
    "vpa_key",
)

HVPA_API_VERSION = "autoscaling.k8s.io/v1alpha1"
VPA_API_VERSION = "autoscaling.k8s.io/v1"
TARGET_UTILIZATION = 80


class AutoscalingOptions(pydantic.BaseModel):
    """Tunables of the autoscaler objects that do not affect arbitration."""

    model_config = pydantic.ConfigDict(frozen=True)

    use_memory_metric: bool = pydantic.Field(
        False,
        description="Scale the coordinated autoscaler horizontally on memory utilization as well as CPU.",
    )
    scale_down_disabled: bool = pydantic.Field(
        False,
        description="Turn off vertical scale down of the coordinated autoscaler.",
    )
    container_policies: tuple[dict[str, Any], ...] = pydantic.Field(
        (),
        description="Container resource policies of the vertical autoscaler, in their JSON form.",
    )


def hvpa_key(workload: ObjectKey) -> ObjectKey:
    return ObjectKey(
        api_version=HVPA_API_VERSION,
        kind="Hvpa",
        namespace=workload.namespace,
        name=workload.name,
    )


def vpa_key(workload: ObjectKey) -> ObjectKey:
    return ObjectKey(
        api_version=VPA_API_VERSION,
        kind="VerticalPodAutoscaler",
        namespace=workload.namespace,
        name=f"{workload.name}-vpa",
    )


class HpaFlavour(NamedTuple):
    """The served API version of HorizontalPodAutoscalers and the shape of their metrics."""

    api_version: str
    resource_metric: Callable[[str, int], dict[str, Any]]


def _resource_metric_v2(name: str, utilization: int) -> dict[str, Any]:
    return {
        "type": "Resource",
        "resource": {
            "name": name,
            "target": {"type": "Utilization", "averageUtilization": utilization},
        },
    }


def _resource_metric_v2beta1(name: str, utilization: int) -> dict[str, Any]:
    return {
        "type": "Resource",
        "resource": {"name": name, "targetAverageUtilization": utilization},
    }


# Consulted in order, the first flavour whose capability applies wins
HPA_FLAVOURS: tuple[tuple[Capability, HpaFlavour], ...] = (
    (Capability.hpa_autoscaling_v2, HpaFlavour("autoscaling/v2", _resource_metric_v2)),
    (
        Capability.hpa_autoscaling_v2beta1,
        HpaFlavour("autoscaling/v2beta1", _resource_metric_v2beta1),
    ),
)


def hpa_flavour(capabilities: VersionCapabilities) -> HpaFlavour:
    for capability, flavour in HPA_FLAVOURS:
        if capabilities.has(capability):
            return flavour
    raise ValueError(
        f"no HorizontalPodAutoscaler API is available for Kubernetes {capabilities.version}"
    )


def hpa_key(workload: ObjectKey, capabilities: VersionCapabilities) -> ObjectKey:
    return ObjectKey(
        api_version=hpa_flavour(capabilities).api_version,
        kind="HorizontalPodAutoscaler",
        namespace=workload.namespace,
        name=workload.name,
    )


def _target_ref(workload: ObjectKey) -> dict[str, str]:
    return {"apiVersion": workload.api_version, "kind": workload.kind, "name": workload.name}


def scaling_intervals(min_replicas: int, max_replicas: int) -> list[ScalingInterval]:
    """Return the weight based scaling intervals of the coordinated autoscaler.

    Vertical scaling takes over entirely once the workload runs at its maximum replica
    count. Below the maximum, scaling is purely horizontal.
    """
    intervals = [
        ScalingInterval(
            start_replica_count=max_replicas, last_replica_count=max_replicas, vpa_weight=100
        )
    ]
    if max_replicas > min_replicas:
        intervals.append(
            ScalingInterval(
                start_replica_count=min_replicas,
                last_replica_count=max_replicas - 1,
                vpa_weight=0,
            )
        )
    return intervals


def build_hpa(
    body: dict[str, Any],
    *,
    workload: ObjectKey,
    min_replicas: int,
    max_replicas: int,
    capabilities: VersionCapabilities,
) -> dict[str, Any]:
    """Render the spec of the HorizontalPodAutoscaler of a workload in split mode."""
    resource_metric = hpa_flavour(capabilities).resource_metric
    body.setdefault("spec", {}).update(
        {
            "minReplicas": min_replicas,
            "maxReplicas": max_replicas,
            "scaleTargetRef": _target_ref(workload),
            "metrics": [
                resource_metric("cpu", TARGET_UTILIZATION),
                resource_metric("memory", TARGET_UTILIZATION),
            ],
        }
    )
    return body


def build_vpa(
    body: dict[str, Any], *, workload: ObjectKey, options: AutoscalingOptions
) -> dict[str, Any]:
    """Render the spec of the VerticalPodAutoscaler of a workload in split mode."""
    spec = body.setdefault("spec", {})
    spec.update(
        {
            "targetRef": _target_ref(workload),
            "updatePolicy": {"updateMode": "Auto"},
        }
    )
    if options.container_policies:
        spec["resourcePolicy"] = {"containerPolicies": list(options.container_policies)}
    else:
        spec.pop("resourcePolicy", None)
    return body


def _min_change() -> dict[str, Any]:
    return {
        "cpu": {"value": "300m", "percentage": TARGET_UTILIZATION},
        "memory": {"value": "200M", "percentage": TARGET_UTILIZATION},
    }


def build_hvpa(
    body: dict[str, Any],
    *,
    workload: ObjectKey,
    min_replicas: int,
    max_replicas: int,
    options: AutoscalingOptions,
) -> dict[str, Any]:
    """Render the spec of the HVPA of a workload in coordinated mode.

    The HVPA custom resource embeds `autoscaling/v2beta1` metric specs regardless of the
    Kubernetes version of the cluster.
    """
    hpa_labels = {"role": f"{workload.name}-hpa"}
    vpa_labels = {"role": f"{workload.name}-vpa"}

    metrics = [_resource_metric_v2beta1("cpu", TARGET_UTILIZATION)]
    if options.use_memory_metric:
        metrics.append(_resource_metric_v2beta1("memory", TARGET_UTILIZATION))

    scale_down_update_mode = "Off" if options.scale_down_disabled else "Auto"

    vpa_template_spec: dict[str, Any] = {}
    if options.container_policies:
        vpa_template_spec["resourcePolicy"] = {
            "containerPolicies": list(options.container_policies)
        }

    body.setdefault("spec", {}).update(
        {
            "replicas": 1,
            "hpa": {
                "selector": {"matchLabels": hpa_labels},
                "deploy": True,
                "scaleUp": {"updatePolicy": {"updateMode": "Auto"}},
                "scaleDown": {"updatePolicy": {"updateMode": "Auto"}},
                "template": {
                    "metadata": {"labels": hpa_labels},
                    "spec": {
                        "minReplicas": min_replicas,
                        "maxReplicas": max_replicas,
                        "metrics": metrics,
                    },
                },
            },
            "vpa": {
                "selector": {"matchLabels": vpa_labels},
                "deploy": True,
                "scaleUp": {
                    "updatePolicy": {"updateMode": "Auto"},
                    "stabilizationDuration": "3m",
                    "minChange": _min_change(),
                },
                "scaleDown": {
                    "updatePolicy": {"updateMode": scale_down_update_mode},
                    "stabilizationDuration": "15m",
                    "minChange": _min_change(),
                },
                "limitsRequestsGapScaleParams": {
                    "cpu": {"value": "1", "percentage": 70},
                    "memory": {"value": "1G", "percentage": 70},
                },
                "template": {
                    "metadata": {"labels": vpa_labels},
                    "spec": vpa_template_spec,
                },
            },
            "weightBasedScalingIntervals": [
                interval.to_dict() for interval in scaling_intervals(min_replicas, max_replicas)
            ],
            "targetRef": _target_ref(workload),
        }
    )
    return body


def _check_bounds(min_replicas: int, max_replicas: int, replicas: int) -> None:
    if min_replicas < 1:
        raise ValueError(f"min replicas must be at least 1, got {min_replicas}")
    if max_replicas < min_replicas:
        raise ValueError(
            f"max replicas ({max_replicas}) must not be less than min replicas ({min_replicas})"
        )
    if replicas < 0:
        raise ValueError(f"replicas must not be negative, got {replicas}")


async def resolve_autoscaling(
    store: ObjectStore,
    workload: ObjectKey,
    mode: AutoscalingMode,
    min_replicas: int,
    max_replicas: int,
    replicas: int,
    *,
    options: Optional[AutoscalingOptions] = None,
    capabilities: VersionCapabilities,
) -> None:
    """Converge the autoscaler objects of a workload to the given mode.

    The objects of the other mode are deleted before any object of `mode` is written. An
    autoscaler that scales horizontally is never left in place for a workload at zero
    replicas, otherwise it would scale a hibernated workload back up.

    Raises:
        ValueError: Raised if the replica bounds are invalid. Nothing is written in that case.
    """
    _check_bounds(min_replicas, max_replicas, replicas)
    options = options or AutoscalingOptions()

    hvpa = hvpa_key(workload)
    vpa = vpa_key(workload)
    hpa = hpa_key(workload, capabilities)

    logger.debug(
        f"resolving autoscaling of {workload}: mode={mode.value}, min={min_replicas},"
        f" max={max_replicas}, replicas={replicas}"
    )

    if mode == AutoscalingMode.coordinated:
        await reconciler.delete(store, vpa)
        await reconciler.delete(store, hpa)

        if replicas == 0:
            await reconciler.delete(store, hvpa)
            return

        await reconciler.reconcile(
            store,
            hvpa,
            functools.partial(
                build_hvpa,
                workload=workload,
                min_replicas=min_replicas,
                max_replicas=max_replicas,
                options=options,
            ),
        )

    elif mode == AutoscalingMode.split:
        await reconciler.delete(store, hvpa)

        await reconciler.reconcile(
            store, vpa, functools.partial(build_vpa, workload=workload, options=options)
        )

        if replicas == 0:
            await reconciler.delete(store, hpa)
            return

        await reconciler.reconcile(
            store,
            hpa,
            functools.partial(
                build_hpa,
                workload=workload,
                min_replicas=min_replicas,
                max_replicas=max_replicas,
                capabilities=capabilities,
            ),
        )

    else:
        raise ValueError(f"unknown autoscaling mode '{mode}'")


class AutoscalerArbitrator(Mixin):
    """Owns the autoscaler objects of a single workload."""

    def __init__(
        self,
        store: ObjectStore,
        workload: ObjectKey,
        *,
        capabilities: VersionCapabilities,
        options: Optional[AutoscalingOptions] = None,
    ) -> None:
        self.store = store
        self.workload = workload
        self.capabilities = capabilities
        self.options = options or AutoscalingOptions()

    @property
    def keys(self) -> tuple[ObjectKey, ObjectKey, ObjectKey]:
        """The identities of the HPA, VPA and HVPA of the workload, in deletion order."""
        return (
            hpa_key(self.workload, self.capabilities),
            vpa_key(self.workload),
            hvpa_key(self.workload),
        )

    async def arbitrate(
        self, mode: AutoscalingMode, min_replicas: int, max_replicas: int, replicas: int
    ) -> None:
        self.logger.info(f"arbitrating autoscaling of {self.workload} in {mode.value} mode")
        await resolve_autoscaling(
            self.store,
            self.workload,
            mode,
            min_replicas,
            max_replicas,
            replicas,
            options=self.options,
            capabilities=self.capabilities,
        )

    async def destroy(self) -> None:
        """Delete the autoscaler objects of both modes."""
        for key in self.keys:
            await reconciler.delete(self.store, key)
