import builtins
import datetime
from typing import Any

import pytest

import controlplane
from controlplane.types import ObjectKey
from tests.fake import FakeObjectStore

# Add the devtools debug() function globally in tests
from devtools import debug

builtins.debug = debug


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def namespace() -> str:
    return "shoot--core--local"


@pytest.fixture
def workload(namespace: str) -> ObjectKey:
    return ObjectKey(
        api_version="apps/v1", kind="Deployment", namespace=namespace, name="kube-apiserver"
    )


@pytest.fixture
def capabilities() -> controlplane.VersionCapabilities:
    return controlplane.DEFAULT_VERSION_TABLE.capabilities_for("1.24")


@pytest.fixture
def legacy_capabilities() -> controlplane.VersionCapabilities:
    return controlplane.DEFAULT_VERSION_TABLE.capabilities_for("1.22")


@pytest.fixture
def fast_settings() -> dict[str, Any]:
    """Settings keyword arguments with short waits for exercising timeouts."""
    return {
        "timeout": datetime.timedelta(milliseconds=50),
        "interval": datetime.timedelta(milliseconds=5),
    }


@pytest.fixture
def deployment_template(workload: ObjectKey) -> dict[str, Any]:
    return {
        "metadata": {"labels": {"app": "kubernetes", "role": "apiserver"}},
        "spec": {
            "selector": {"matchLabels": {"app": "kubernetes", "role": "apiserver"}},
            "template": {
                "metadata": {"labels": {"app": "kubernetes", "role": "apiserver"}},
                "spec": {
                    "containers": [
                        {"name": workload.name, "image": "registry.k8s.io/kube-apiserver:v1.24.3"},
                        {"name": "vpn-seed", "image": "eu.gcr.io/gardener-project/vpn-seed:0.20.0"},
                    ]
                },
            },
        },
    }
