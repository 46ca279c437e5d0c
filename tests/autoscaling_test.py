from typing import Any

import pytest

from controlplane.autoscaling import (
    AutoscalerArbitrator,
    AutoscalingOptions,
    build_hpa,
    build_hvpa,
    build_vpa,
    hpa_key,
    hvpa_key,
    resolve_autoscaling,
    scaling_intervals,
    vpa_key,
)
from controlplane.types import AutoscalingMode, ObjectKey, ScalingInterval
from controlplane.versions import Capability, VersionCapabilities, parse_version
from tests.fake import FakeObjectStore

coordinated = AutoscalingMode.coordinated
split = AutoscalingMode.split


class TestKeys:
    def test_hvpa(self, workload: ObjectKey) -> None:
        key = hvpa_key(workload)
        assert (key.api_version, key.kind, key.namespace, key.name) == (
            "autoscaling.k8s.io/v1alpha1",
            "Hvpa",
            workload.namespace,
            "kube-apiserver",
        )
        assert key.plural == "hvpas"

    def test_vpa(self, workload: ObjectKey) -> None:
        key = vpa_key(workload)
        assert (key.api_version, key.kind, key.name) == (
            "autoscaling.k8s.io/v1",
            "VerticalPodAutoscaler",
            "kube-apiserver-vpa",
        )

    def test_hpa_follows_capabilities(
        self,
        workload: ObjectKey,
        capabilities: VersionCapabilities,
        legacy_capabilities: VersionCapabilities,
    ) -> None:
        assert hpa_key(workload, capabilities).api_version == "autoscaling/v2"
        assert hpa_key(workload, legacy_capabilities).api_version == "autoscaling/v2beta1"
        assert hpa_key(workload, capabilities).name == "kube-apiserver"

    def test_hpa_without_capability(self, workload: ObjectKey) -> None:
        with pytest.raises(ValueError, match="no HorizontalPodAutoscaler API"):
            hpa_key(workload, VersionCapabilities(parse_version("1.24")))


class TestScalingIntervals:
    def test_min_equals_max(self) -> None:
        assert scaling_intervals(5, 5) == [
            ScalingInterval(start_replica_count=5, last_replica_count=5, vpa_weight=100)
        ]

    def test_range(self) -> None:
        assert [interval.to_dict() for interval in scaling_intervals(1, 4)] == [
            {"vpaWeight": 100, "startReplicaCount": 4, "lastReplicaCount": 4},
            {"vpaWeight": 0, "startReplicaCount": 1, "lastReplicaCount": 3},
        ]

    def test_two_to_five(self) -> None:
        assert scaling_intervals(2, 5) == [
            ScalingInterval(start_replica_count=5, last_replica_count=5, vpa_weight=100),
            ScalingInterval(start_replica_count=2, last_replica_count=4, vpa_weight=0),
        ]

    def test_adjacent(self) -> None:
        assert [interval.to_dict() for interval in scaling_intervals(2, 3)] == [
            {"vpaWeight": 100, "startReplicaCount": 3, "lastReplicaCount": 3},
            {"vpaWeight": 0, "startReplicaCount": 2, "lastReplicaCount": 2},
        ]


def hvpa_cpu_metric() -> dict[str, Any]:
    return {"type": "Resource", "resource": {"name": "cpu", "targetAverageUtilization": 80}}


def hvpa_memory_metric() -> dict[str, Any]:
    return {"type": "Resource", "resource": {"name": "memory", "targetAverageUtilization": 80}}


class TestBuilders:
    def test_hvpa(self, workload: ObjectKey) -> None:
        options = AutoscalingOptions(
            container_policies=(
                {
                    "containerName": "kube-apiserver",
                    "minAllowed": {"cpu": "300m", "memory": "400M"},
                    "maxAllowed": {"cpu": "8", "memory": "25G"},
                },
                {"containerName": "vpn-seed", "mode": "Off"},
            )
        )
        body = build_hvpa(
            hvpa_key(workload).empty_body(),
            workload=workload,
            min_replicas=5,
            max_replicas=5,
            options=options,
        )
        min_change = {
            "cpu": {"value": "300m", "percentage": 80},
            "memory": {"value": "200M", "percentage": 80},
        }
        assert body["spec"] == {
            "replicas": 1,
            "hpa": {
                "selector": {"matchLabels": {"role": "kube-apiserver-hpa"}},
                "deploy": True,
                "scaleUp": {"updatePolicy": {"updateMode": "Auto"}},
                "scaleDown": {"updatePolicy": {"updateMode": "Auto"}},
                "template": {
                    "metadata": {"labels": {"role": "kube-apiserver-hpa"}},
                    "spec": {"minReplicas": 5, "maxReplicas": 5, "metrics": [hvpa_cpu_metric()]},
                },
            },
            "vpa": {
                "selector": {"matchLabels": {"role": "kube-apiserver-vpa"}},
                "deploy": True,
                "scaleUp": {
                    "updatePolicy": {"updateMode": "Auto"},
                    "stabilizationDuration": "3m",
                    "minChange": min_change,
                },
                "scaleDown": {
                    "updatePolicy": {"updateMode": "Auto"},
                    "stabilizationDuration": "15m",
                    "minChange": min_change,
                },
                "limitsRequestsGapScaleParams": {
                    "cpu": {"value": "1", "percentage": 70},
                    "memory": {"value": "1G", "percentage": 70},
                },
                "template": {
                    "metadata": {"labels": {"role": "kube-apiserver-vpa"}},
                    "spec": {"resourcePolicy": {"containerPolicies": list(options.container_policies)}},
                },
            },
            "weightBasedScalingIntervals": [
                {"vpaWeight": 100, "startReplicaCount": 5, "lastReplicaCount": 5}
            ],
            "targetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": "kube-apiserver"},
        }

    def test_hvpa_memory_metric(self, workload: ObjectKey) -> None:
        body = build_hvpa(
            {},
            workload=workload,
            min_replicas=1,
            max_replicas=3,
            options=AutoscalingOptions(use_memory_metric=True),
        )
        assert body["spec"]["hpa"]["template"]["spec"]["metrics"] == [
            hvpa_cpu_metric(),
            hvpa_memory_metric(),
        ]

    def test_hvpa_scale_down_disabled(self, workload: ObjectKey) -> None:
        body = build_hvpa(
            {},
            workload=workload,
            min_replicas=1,
            max_replicas=3,
            options=AutoscalingOptions(scale_down_disabled=True),
        )
        assert body["spec"]["vpa"]["scaleDown"]["updatePolicy"] == {"updateMode": "Off"}
        assert body["spec"]["vpa"]["scaleUp"]["updatePolicy"] == {"updateMode": "Auto"}

    def test_hpa_v2(self, workload: ObjectKey, capabilities: VersionCapabilities) -> None:
        body = build_hpa(
            {}, workload=workload, min_replicas=2, max_replicas=6, capabilities=capabilities
        )
        assert body["spec"] == {
            "minReplicas": 2,
            "maxReplicas": 6,
            "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": "kube-apiserver"},
            "metrics": [
                {
                    "type": "Resource",
                    "resource": {
                        "name": "cpu",
                        "target": {"type": "Utilization", "averageUtilization": 80},
                    },
                },
                {
                    "type": "Resource",
                    "resource": {
                        "name": "memory",
                        "target": {"type": "Utilization", "averageUtilization": 80},
                    },
                },
            ],
        }

    def test_hpa_v2beta1(self, workload: ObjectKey, legacy_capabilities: VersionCapabilities) -> None:
        body = build_hpa(
            {}, workload=workload, min_replicas=2, max_replicas=6, capabilities=legacy_capabilities
        )
        assert body["spec"]["metrics"] == [hvpa_cpu_metric(), hvpa_memory_metric()]

    def test_hpa_preserves_foreign_fields(
        self, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        behavior = {"scaleDown": {"stabilizationWindowSeconds": 300}}
        body = build_hpa(
            {"spec": {"behavior": behavior, "minReplicas": 1}},
            workload=workload,
            min_replicas=2,
            max_replicas=6,
            capabilities=capabilities,
        )
        assert body["spec"]["behavior"] == behavior
        assert body["spec"]["minReplicas"] == 2

    def test_vpa(self, workload: ObjectKey) -> None:
        body = build_vpa({}, workload=workload, options=AutoscalingOptions())
        assert body["spec"] == {
            "targetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": "kube-apiserver"},
            "updatePolicy": {"updateMode": "Auto"},
        }

    def test_vpa_container_policies(self, workload: ObjectKey) -> None:
        policy = {"containerName": "kube-apiserver", "controlledValues": "RequestsOnly"}
        body = build_vpa({}, workload=workload, options=AutoscalingOptions(container_policies=(policy,)))
        assert body["spec"]["resourcePolicy"] == {"containerPolicies": [policy]}


class TestResolveAutoscaling:
    async def test_coordinated_deletes_split_objects_first(
        self, store: FakeObjectStore, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        vpa, hpa, hvpa = vpa_key(workload), hpa_key(workload, capabilities), hvpa_key(workload)
        store.add(vpa)
        store.add(hpa)

        await resolve_autoscaling(store, workload, coordinated, 1, 4, 2, capabilities=capabilities)

        assert store.calls == [
            ("delete", vpa),
            ("delete", hpa),
            ("get", hvpa),
            ("create", hvpa),
        ]
        assert set(store.objects) == {hvpa}
        assert store.objects[hvpa]["spec"]["weightBasedScalingIntervals"] == [
            {"vpaWeight": 100, "startReplicaCount": 4, "lastReplicaCount": 4},
            {"vpaWeight": 0, "startReplicaCount": 1, "lastReplicaCount": 3},
        ]

    async def test_coordinated_zero_replicas_deletes_hvpa(
        self, store: FakeObjectStore, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        hvpa = hvpa_key(workload)
        store.add(hvpa)

        await resolve_autoscaling(store, workload, coordinated, 1, 4, 0, capabilities=capabilities)

        assert store.operations(hvpa) == ["delete"]
        assert store.objects == {}

    async def test_split_deletes_hvpa_first(
        self, store: FakeObjectStore, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        vpa, hpa, hvpa = vpa_key(workload), hpa_key(workload, capabilities), hvpa_key(workload)
        store.add(hvpa)

        await resolve_autoscaling(store, workload, split, 2, 6, 3, capabilities=capabilities)

        assert store.calls == [
            ("delete", hvpa),
            ("get", vpa),
            ("create", vpa),
            ("get", hpa),
            ("create", hpa),
        ]
        assert set(store.objects) == {vpa, hpa}
        assert store.objects[hpa]["spec"]["minReplicas"] == 2
        assert store.objects[hpa]["spec"]["maxReplicas"] == 6

    async def test_split_zero_replicas_removes_hpa(
        self, store: FakeObjectStore, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        vpa, hpa = vpa_key(workload), hpa_key(workload, capabilities)
        store.add(hpa, {"spec": {"minReplicas": 1, "maxReplicas": 4}})

        await resolve_autoscaling(store, workload, split, 1, 4, 0, capabilities=capabilities)

        assert set(store.objects) == {vpa}
        assert store.operations(hpa) == ["delete"]

    async def test_split_hpa_version_follows_capabilities(
        self,
        store: FakeObjectStore,
        workload: ObjectKey,
        legacy_capabilities: VersionCapabilities,
    ) -> None:
        await resolve_autoscaling(store, workload, split, 1, 4, 1, capabilities=legacy_capabilities)
        hpa = hpa_key(workload, legacy_capabilities)
        assert hpa.api_version == "autoscaling/v2beta1"
        assert store.objects[hpa]["apiVersion"] == "autoscaling/v2beta1"

    @pytest.mark.parametrize("first, second", [(coordinated, split), (split, coordinated)])
    async def test_modes_are_mutually_exclusive(
        self,
        store: FakeObjectStore,
        workload: ObjectKey,
        capabilities: VersionCapabilities,
        first: AutoscalingMode,
        second: AutoscalingMode,
    ) -> None:
        hvpa = hvpa_key(workload)
        await resolve_autoscaling(store, workload, first, 1, 4, 2, capabilities=capabilities)
        await resolve_autoscaling(store, workload, second, 1, 4, 2, capabilities=capabilities)

        if second == coordinated:
            assert set(store.objects) == {hvpa}
        else:
            assert hvpa not in store.objects
            assert set(store.objects) == {vpa_key(workload), hpa_key(workload, capabilities)}

    @pytest.mark.parametrize("mode", [coordinated, split])
    async def test_idempotent(
        self,
        store: FakeObjectStore,
        workload: ObjectKey,
        capabilities: VersionCapabilities,
        mode: AutoscalingMode,
    ) -> None:
        await resolve_autoscaling(store, workload, mode, 1, 4, 2, capabilities=capabilities)
        store.calls.clear()

        await resolve_autoscaling(store, workload, mode, 1, 4, 2, capabilities=capabilities)

        assert "create" not in store.operations()
        assert "update" not in store.operations()

    @pytest.mark.parametrize(
        "min_replicas, max_replicas, replicas",
        [(0, 4, 1), (3, 2, 1), (1, 4, -1)],
    )
    async def test_invalid_bounds(
        self,
        store: FakeObjectStore,
        workload: ObjectKey,
        capabilities: VersionCapabilities,
        min_replicas: int,
        max_replicas: int,
        replicas: int,
    ) -> None:
        with pytest.raises(ValueError):
            await resolve_autoscaling(
                store, workload, coordinated, min_replicas, max_replicas, replicas,
                capabilities=capabilities,
            )
        assert store.calls == []


class TestAutoscalerArbitrator:
    async def test_arbitrate(
        self, store: FakeObjectStore, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        arbitrator = AutoscalerArbitrator(
            store,
            workload,
            capabilities=capabilities,
            options=AutoscalingOptions(use_memory_metric=True),
        )
        await arbitrator.arbitrate(coordinated, 1, 3, 1)

        hvpa = store.objects[hvpa_key(workload)]
        assert hvpa["spec"]["hpa"]["template"]["spec"]["metrics"][-1] == hvpa_memory_metric()

    async def test_destroy(
        self, store: FakeObjectStore, workload: ObjectKey, capabilities: VersionCapabilities
    ) -> None:
        arbitrator = AutoscalerArbitrator(store, workload, capabilities=capabilities)
        await arbitrator.arbitrate(split, 1, 3, 1)
        store.calls.clear()

        await arbitrator.destroy()

        assert store.operations() == ["delete", "delete", "delete"]
        assert [call.key.kind for call in store.calls] == [
            "HorizontalPodAutoscaler",
            "VerticalPodAutoscaler",
            "Hvpa",
        ]
        assert store.objects == {}

    def test_capability_keyed(self) -> None:
        assert Capability("hpa-autoscaling-v2") == Capability.hpa_autoscaling_v2
