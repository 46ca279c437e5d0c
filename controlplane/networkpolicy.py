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

"""Egress network policies carved out of well-known address blocks.

The heart of this module is `resolve_exceptions`, which decides for a fixed list of address
blocks which exception subnets carve a hole into which block. The policy builders use it to
allow egress to private or public networks while excluding the networks of the cluster itself
and any addresses blocked by operators.
"""
from __future__ import annotations

import functools
import ipaddress
from typing import Any, Iterable, Sequence, Union

from controlplane import reconciler
from controlplane.configuration import NetworkConfiguration
from controlplane.kubernetes_helpers import ObjectStore
from controlplane.logging import Mixin
from controlplane.types import BlockWithExceptions, ObjectKey

__all__ = (
    "NetworkPolicyReconciler",
    "PRIVATE_NETWORK_BLOCKS",
    "PUBLIC_NETWORK_BLOCK",
    "deny_all",
    "allow_to_blocked_cidrs",
    "allow_to_private_networks",
    "allow_to_public_networks",
    "allow_to_shoot_networks",
    "network_policy_key",
    "resolve_exceptions",
)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# RFC1918 private networks and RFC6598 carrier-grade NAT
PRIVATE_NETWORK_BLOCKS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "100.64.0.0/10",
)
PUBLIC_NETWORK_BLOCK = "0.0.0.0/0"

LABEL_ALLOWED = "allowed"
LABEL_TO_PRIVATE_NETWORKS = "networking.gardener.cloud/to-private-networks"
LABEL_TO_PUBLIC_NETWORKS = "networking.gardener.cloud/to-public-networks"
LABEL_TO_BLOCKED_CIDRS = "networking.gardener.cloud/to-blocked-cidrs"
LABEL_TO_SHOOT_NETWORKS = "networking.gardener.cloud/to-shoot-networks"
DESCRIPTION_ANNOTATION = "gardener.cloud/description"


def _parse_network(cidr: str) -> IPNetwork:
    try:
        return ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as error:
        raise ValueError(f"invalid CIDR '{cidr}': {error}") from error


def _applies(exception: IPNetwork, block: IPNetwork) -> bool:
    # Networks of different IP versions never contain each other
    if exception.version != block.version:
        return False
    return exception.network_address in block and block.network_address not in exception


def resolve_exceptions(
    blocks: Sequence[str], exceptions: Iterable[str]
) -> list[BlockWithExceptions]:
    """Pair every block with the exceptions that carve a hole into it.

    An exception applies to a block if the block contains the network address of the exception
    and the exception does not contain the network address of the block. Exceptions equal to or
    wider than a block therefore never apply to it.

    Blocks and their exceptions keep their input order and every block yields exactly one entry,
    even when no exception applies. CIDRs are accepted with host bits set and rendered in their
    normalized form.

    Raises:
        ValueError: Raised if a block or exception is not a valid CIDR.
    """
    exception_networks = [_parse_network(cidr) for cidr in exceptions]

    resolved = []
    for cidr in blocks:
        block = _parse_network(cidr)
        resolved.append(
            BlockWithExceptions(
                cidr=str(block),
                except_=tuple(
                    str(exception)
                    for exception in exception_networks
                    if _applies(exception, block)
                ),
            )
        )
    return resolved


def network_policy_key(namespace: str, name: str) -> ObjectKey:
    return ObjectKey(
        api_version="networking.k8s.io/v1",
        kind="NetworkPolicy",
        namespace=namespace,
        name=name,
    )


def _egress_policy(
    body: dict[str, Any],
    *,
    label: str,
    description: str,
    egress: list[dict[str, Any]],
) -> dict[str, Any]:
    metadata = body.setdefault("metadata", {})
    metadata.setdefault("annotations", {})[DESCRIPTION_ANNOTATION] = description
    body["spec"] = {
        "podSelector": {"matchLabels": {label: LABEL_ALLOWED}},
        "egress": egress,
        "ingress": [],
        "policyTypes": ["Egress"],
    }
    return body


def allow_to_private_networks(
    body: dict[str, Any],
    *,
    cluster_networks: Sequence[str],
    blocked_cidrs: Sequence[str],
) -> dict[str, Any]:
    """Allow egress to the private networks, except for the networks of the cluster."""
    peers = resolve_exceptions(PRIVATE_NETWORK_BLOCKS, [*cluster_networks, *blocked_cidrs])
    return _egress_policy(
        body,
        label=LABEL_TO_PRIVATE_NETWORKS,
        description=(
            f"Allows egress from pods labeled with '{LABEL_TO_PRIVATE_NETWORKS}={LABEL_ALLOWED}'"
            " to the private networks (RFC1918) and carrier-grade NAT (RFC6598), except for"
            " cluster-specific networks."
        ),
        egress=[{"to": [peer.to_peer() for peer in peers]}],
    )


def allow_to_public_networks(
    body: dict[str, Any], *, blocked_cidrs: Sequence[str]
) -> dict[str, Any]:
    """Allow egress to all public IPv4 addresses, except for explicitly blocked ones.

    Every blocked CIDR is excluded as configured, including those that contain the network
    address of the public block.
    """
    peer = BlockWithExceptions(
        cidr=PUBLIC_NETWORK_BLOCK,
        except_=(
            *PRIVATE_NETWORK_BLOCKS,
            *(str(_parse_network(cidr)) for cidr in blocked_cidrs),
        ),
    )
    return _egress_policy(
        body,
        label=LABEL_TO_PUBLIC_NETWORKS,
        description=(
            f"Allows egress from pods labeled with '{LABEL_TO_PUBLIC_NETWORKS}={LABEL_ALLOWED}'"
            " to all public network IPs, except for private networks (RFC1918), carrier-grade"
            " NAT (RFC6598), and explicitly blocked addresses configured by human operators."
        ),
        egress=[{"to": [peer.to_peer()]}],
    )


def allow_to_blocked_cidrs(
    body: dict[str, Any], *, blocked_cidrs: Sequence[str]
) -> dict[str, Any]:
    return _egress_policy(
        body,
        label=LABEL_TO_BLOCKED_CIDRS,
        description=(
            f"Allows egress from pods labeled with '{LABEL_TO_BLOCKED_CIDRS}={LABEL_ALLOWED}'"
            " to explicitly blocked addresses configured by human operators."
        ),
        egress=[
            {"to": [BlockWithExceptions(cidr=str(_parse_network(cidr))).to_peer()]}
            for cidr in blocked_cidrs
        ],
    )


def allow_to_shoot_networks(
    body: dict[str, Any],
    *,
    cluster_networks: Sequence[str],
    blocked_cidrs: Sequence[str],
) -> dict[str, Any]:
    peers = resolve_exceptions(cluster_networks, blocked_cidrs)
    return _egress_policy(
        body,
        label=LABEL_TO_SHOOT_NETWORKS,
        description=(
            f"Allows egress from pods labeled with '{LABEL_TO_SHOOT_NETWORKS}={LABEL_ALLOWED}'"
            " to the blocks belonging to the cluster networks."
        ),
        egress=[{"to": [peer.to_peer() for peer in peers]}],
    )


def deny_all(body: dict[str, Any]) -> dict[str, Any]:
    """Deny all ingress and egress traffic of the pods in the namespace."""
    metadata = body.setdefault("metadata", {})
    metadata.setdefault("annotations", {})[DESCRIPTION_ANNOTATION] = (
        "Disables all ingress and egress traffic into/from this namespace."
    )
    body["spec"] = {"podSelector": {}, "policyTypes": ["Ingress", "Egress"]}
    return body


class NetworkPolicyReconciler(Mixin):
    """Reconciles the egress network policies of a namespace."""

    def __init__(self, store: ObjectStore, network: NetworkConfiguration) -> None:
        self.store = store
        self.network = network

    def mutators(self) -> dict[str, reconciler.Mutator]:
        cluster_networks = self.network.cluster_networks
        blocked_cidrs = list(self.network.blocked_cidrs)
        return {
            "deny-all": deny_all,
            "allow-to-public-networks": functools.partial(
                allow_to_public_networks, blocked_cidrs=blocked_cidrs
            ),
            "allow-to-private-networks": functools.partial(
                allow_to_private_networks,
                cluster_networks=cluster_networks,
                blocked_cidrs=blocked_cidrs,
            ),
            "allow-to-blocked-cidrs": functools.partial(
                allow_to_blocked_cidrs, blocked_cidrs=blocked_cidrs
            ),
            "allow-to-shoot-networks": functools.partial(
                allow_to_shoot_networks,
                cluster_networks=cluster_networks,
                blocked_cidrs=blocked_cidrs,
            ),
        }

    async def reconcile(self, namespace: str) -> list[dict[str, Any]]:
        self.logger.info(f"reconciling egress network policies in namespace '{namespace}'")
        return [
            await reconciler.reconcile(self.store, network_policy_key(namespace, name), mutate)
            for name, mutate in self.mutators().items()
        ]
