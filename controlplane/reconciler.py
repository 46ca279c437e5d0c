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

"""Declarative reconciliation of named cluster objects.

`reconcile` converges an object towards a desired shape expressed as a pure mutation of its
current body. Fields the mutation does not touch survive as they were read from the cluster,
so objects that are concurrently modified by other controllers are never clobbered beyond the
fields this package owns.
"""
from __future__ import annotations

import asyncio
import copy
import datetime
from typing import Any, Awaitable, Callable, Optional

import devtools

from controlplane.errors import ObjectNotFoundError, UnhealthyObjectError, WaitTimeoutError
from controlplane.kubernetes_helpers import ObjectStore
from controlplane.logging import logger, object_context
from controlplane.types import ObjectKey

__all__ = (
    "DEFAULT_INTERVAL",
    "DEFAULT_TIMEOUT",
    "Mutator",
    "delete",
    "is_workload_healthy",
    "poll_until",
    "reconcile",
    "wait_until_deleted",
    "wait_until_healthy",
)

DEFAULT_TIMEOUT = datetime.timedelta(minutes=5)
DEFAULT_INTERVAL = datetime.timedelta(seconds=5)

Mutator = Callable[[dict[str, Any]], dict[str, Any]]
"""A pure function from the current body of an object to its desired body."""

StateCheck = Callable[[], Awaitable[tuple[bool, Any]]]
"""An awaitable check returning whether the expected state was reached and the observed state."""


def _assert_identity(key: ObjectKey, body: dict[str, Any]) -> dict[str, Any]:
    body["apiVersion"] = key.api_version
    body["kind"] = key.kind
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        metadata = body["metadata"] = {}
    metadata["name"] = key.name
    metadata["namespace"] = key.namespace
    return body


async def reconcile(store: ObjectStore, key: ObjectKey, mutate: Mutator) -> dict[str, Any]:
    """Converge the object identified by `key` to the body produced by `mutate`.

    The object is read once. If it is absent, the mutation is applied to a body that carries
    nothing but the identity of the object and the result is created. Otherwise the mutation
    is applied to a copy of the live body and the result replaces the object, carrying the
    resourceVersion that was read so that concurrent writers are detected by the API server.

    When the mutation leaves the body unchanged no write is issued and the live body is returned.

    Args:
        store: The object store to read from and write to.
        key: The identity of the object.
        mutate: A pure function deriving the desired body from the current one. Any inputs
            it needs must be bound explicitly, e.g. with `functools.partial`.

    Returns:
        The body as persisted (or as read, when no write was necessary).

    Raises:
        Any error raised by the store other than `ObjectNotFoundError` on the initial read.
    """
    with object_context(str(key)):
        try:
            current = await store.get(key)
            exists = True
        except ObjectNotFoundError:
            current = key.empty_body()
            exists = False

        desired = _assert_identity(key, mutate(copy.deepcopy(current)))

        if exists and desired == current:
            logger.debug(f"{key} is up to date, skipping write")
            return current

        logger.trace(f"desired state of {key}: {devtools.pformat(desired)}")
        if exists:
            logger.info(f"updating {key}")
            return await store.update(key, desired)
        else:
            logger.info(f"creating {key}")
            return await store.create(key, desired)


async def delete(store: ObjectStore, key: ObjectKey) -> bool:
    """Delete the object identified by `key`, treating absence as success.

    Returns:
        True if an object was deleted, False if it did not exist.
    """
    with object_context(str(key)):
        try:
            await store.delete(key)
        except ObjectNotFoundError:
            logger.debug(f"{key} does not exist, nothing to delete")
            return False

        logger.info(f"deleted {key}")
        return True


async def poll_until(
    check: StateCheck,
    *,
    key: ObjectKey,
    state: str,
    timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    interval: datetime.timedelta = DEFAULT_INTERVAL,
) -> Any:
    """Invoke `check` every `interval` until it reports success or `timeout` elapses.

    The wait is cancellable: cancelling the awaiting task cancels the pending check or sleep.

    Returns:
        The state observed by the successful check.

    Raises:
        WaitTimeoutError: The expected state was not observed within the timeout.
    """
    observed: Any = None

    async def _poll() -> Any:
        nonlocal observed
        while True:
            done, observed = await check()
            if done:
                return observed
            logger.debug(f"waiting for {key} to become {state} (observed: {observed})")
            await asyncio.sleep(interval.total_seconds())

    try:
        return await asyncio.wait_for(_poll(), timeout=timeout.total_seconds())
    except asyncio.TimeoutError as error:
        raise WaitTimeoutError(key, state, observed, timeout) from error


def is_workload_healthy(key: ObjectKey, body: dict[str, Any]) -> bool:
    """Return True when a Deployment has rolled out its current generation completely.

    Raises:
        UnhealthyObjectError: The rollout exceeded its progress deadline.
    """
    metadata = body.get("metadata", {})
    spec = body.get("spec", {})
    status = body.get("status") or {}

    if metadata.get("generation") != status.get("observedGeneration"):
        logger.debug(
            f"status observed generation ({status.get('observedGeneration')}) does not match"
            f" metadata generation ({metadata.get('generation')})"
        )
        return False

    for condition in status.get("conditions") or []:
        if (
            condition.get("type") == "Progressing"
            and condition.get("status") == "False"
            and condition.get("reason") == "ProgressDeadlineExceeded"
        ):
            raise UnhealthyObjectError(
                key,
                f"rollout failed: {condition.get('message', 'progress deadline exceeded')}",
                reason="progress-deadline-exceeded",
            )

    if unavailable_count := status.get("unavailableReplicas", 0):
        logger.debug(f"found {unavailable_count} unavailable replicas")
        return False

    desired_replicas = spec.get("replicas", 1)
    # Total replicas include those of previous revisions, so scale downs are awaited too
    replica_counts = [
        status.get("replicas", 0),
        status.get("readyReplicas", 0),
        status.get("updatedReplicas", 0),
        status.get("availableReplicas", 0),
    ]
    if replica_counts.count(desired_replicas) == len(replica_counts):
        return True

    logger.debug(
        f"replica counts {replica_counts} out of alignment with desired replicas ({desired_replicas})"
    )
    return False


async def wait_until_healthy(
    store: ObjectStore,
    key: ObjectKey,
    *,
    timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    interval: datetime.timedelta = DEFAULT_INTERVAL,
) -> dict[str, Any]:
    """Wait until the workload identified by `key` exists and is healthy."""

    latest: dict[str, Any] = {}

    async def _check() -> tuple[bool, Any]:
        try:
            body = await store.get(key)
        except ObjectNotFoundError:
            return False, "absent"
        latest.update(body)
        return is_workload_healthy(key, body), body.get("status")

    with object_context(str(key)):
        logger.info(f"waiting up to {timeout} for {key} to become healthy")
        await poll_until(_check, key=key, state="healthy", timeout=timeout, interval=interval)
        return latest


async def wait_until_deleted(
    store: ObjectStore,
    key: ObjectKey,
    *,
    timeout: datetime.timedelta = DEFAULT_TIMEOUT,
    interval: datetime.timedelta = DEFAULT_INTERVAL,
) -> None:
    """Wait until the object identified by `key` no longer exists."""

    async def _check() -> tuple[bool, Optional[str]]:
        try:
            body = await store.get(key)
        except ObjectNotFoundError:
            return True, "absent"
        deletion = body.get("metadata", {}).get("deletionTimestamp")
        return False, f"terminating since {deletion}" if deletion else "present"

    with object_context(str(key)):
        logger.info(f"waiting up to {timeout} for {key} to be deleted")
        await poll_until(_check, key=key, state="deleted", timeout=timeout, interval=interval)
