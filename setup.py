# This setup.py is required to make type annotations available to dependent projects' mypy.
from setuptools import find_packages, setup

setup(
    name="controlplane",
    version="0.1.0",
    description="Declarative reconciliation of autoscaled control plane workloads on Kubernetes",
    python_requires=">=3.9",
    package_data={"controlplane": ["py.typed"]},
    packages=find_packages(include=["controlplane", "controlplane.*"]),
    install_requires=[
        "kubernetes_asyncio>=24.2.0",
        "loguru>=0.6.0",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "semver>=3.0",
        "PyYAML>=6.0",
        "devtools>=0.8.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "pytest-mock>=3.10",
            "freezegun>=1.2",
        ],
    },
)
