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

import copy
import functools
from typing import Any, Optional

from controlplane import reconciler
from controlplane.autoscaling import AutoscalerArbitrator
from controlplane.configuration import ControlPlaneSettings
from controlplane.errors import ObjectNotFoundError
from controlplane.kubernetes_helpers import ObjectStore
from controlplane.logging import Mixin, log_execution_time
from controlplane.replicas import resolve_replicas
from controlplane.sizing import requirements_for
from controlplane.types import AutoscalingMode, ObjectKey, ReplicaDecision
from controlplane.versions import VersionCapabilities

__all__ = ("AutoscaledWorkload", "build_deployment")


def _merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Merge `source` into `target` recursively. Lists and scalars of `source` replace those of `target`."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _find_container(body: dict[str, Any], name: str) -> Optional[dict[str, Any]]:
    containers = body.get("spec", {}).get("template", {}).get("spec", {}).get("containers") or []
    return next((c for c in containers if c.get("name") == name), None)


def build_deployment(
    body: dict[str, Any],
    *,
    template: dict[str, Any],
    replicas: int,
    container_name: str,
    resources: dict[str, Any],
) -> dict[str, Any]:
    """Render a Deployment from the caller's template with the resolved replicas and resources."""
    _merge(body, template)
    body.setdefault("spec", {})["replicas"] = replicas

    container = _find_container(body, container_name)
    if container is None:
        raise ValueError(f"template has no container named '{container_name}'")
    container["resources"] = copy.deepcopy(resources)
    return body


class AutoscaledWorkload(Mixin):
    """
    AutoscaledWorkload deploys a control plane Deployment together with its autoscalers.

    The replica count and container resources are chosen so that re-deploying never undoes the
    work of the autoscalers: live replica counts are preserved and, when the coordinated
    autoscaler owns the container resources, live resources are kept as well.
    """

    def __init__(
        self,
        store: ObjectStore,
        key: ObjectKey,
        template: dict[str, Any],
        settings: ControlPlaneSettings,
        *,
        container_name: Optional[str] = None,
        capabilities: Optional[VersionCapabilities] = None,
    ) -> None:
        self.store = store
        self.key = key
        self.template = template
        self.settings = settings
        self.container_name = container_name or key.name
        self.arbitrator = AutoscalerArbitrator(
            store,
            key,
            capabilities=capabilities or settings.capabilities(),
            options=settings.autoscaling.options,
        )

    async def _read_live(self) -> Optional[dict[str, Any]]:
        try:
            return await self.store.get(self.key)
        except ObjectNotFoundError:
            return None

    def _resources(self, live: Optional[dict[str, Any]]) -> dict[str, Any]:
        autoscaling = self.settings.autoscaling
        if live is not None and autoscaling.mode == AutoscalingMode.coordinated:
            container = _find_container(live, self.container_name)
            if container and container.get("resources"):
                self.logger.debug(f"preserving live container resources of {self.key}")
                return container["resources"]

        return requirements_for(autoscaling.node_count, autoscaling.scaling_class).to_resources()

    @log_execution_time
    async def deploy(self) -> ReplicaDecision:
        """Reconcile the Deployment and its autoscalers. Returns the replica decision taken."""
        autoscaling = self.settings.autoscaling
        live = await self._read_live()
        live_count = live.get("spec", {}).get("replicas") if live is not None else None

        decision = resolve_replicas(
            autoscaling.replicas,
            live_count,
            self.settings.hibernated,
            autoscaling.mode,
            default=autoscaling.min_replicas,
        )
        self.logger.info(
            f"deploying {self.key} with {decision.count} replicas ({decision.source.value})"
        )

        await reconciler.reconcile(
            self.store,
            self.key,
            functools.partial(
                build_deployment,
                template=self.template,
                replicas=decision.count,
                container_name=self.container_name,
                resources=self._resources(live),
            ),
        )
        await self.arbitrator.arbitrate(
            autoscaling.mode, autoscaling.min_replicas, autoscaling.max_replicas, decision.count
        )
        return decision

    async def wait(self) -> dict[str, Any]:
        return await reconciler.wait_until_healthy(
            self.store, self.key, timeout=self.settings.timeout, interval=self.settings.interval
        )

    async def destroy(self) -> None:
        """Delete the autoscalers, then the Deployment."""
        await self.arbitrator.destroy()
        await reconciler.delete(self.store, self.key)

    async def wait_cleanup(self) -> None:
        await reconciler.wait_until_deleted(
            self.store, self.key, timeout=self.settings.timeout, interval=self.settings.interval
        )
