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

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from kubernetes_asyncio.client import ApiClient, ApiException, CustomObjectsApi

from controlplane.errors import ObjectNotFoundError
from controlplane.logging import logger
from controlplane.types import ObjectKey
from .base import ObjectStore


class KubernetesObjectStore(ObjectStore):
    """An object store backed by the Kubernetes API server.

    Objects are addressed through the generic `/apis/{group}/{version}` paths, which serve
    built-in grouped kinds (`apps/v1` Deployments, `networking.k8s.io/v1` NetworkPolicies)
    as well as custom resources such as HVPAs. Kinds of the legacy core group are not
    supported.
    """

    def __init__(self, api_client: Optional[ApiClient] = None) -> None:
        self._api_client = api_client

    @asynccontextmanager
    async def api_client(self) -> AsyncIterator[CustomObjectsApi]:
        if self._api_client is not None:
            yield CustomObjectsApi(self._api_client)
            return

        async with ApiClient() as api:
            yield CustomObjectsApi(api)

    @staticmethod
    def _path_args(key: ObjectKey) -> dict[str, str]:
        if not key.group:
            raise ValueError(
                f"{key}: objects of the core API group are not supported"
                f" (apiVersion '{key.api_version}')"
            )
        return dict(
            group=key.group,
            version=key.version,
            namespace=key.namespace,
            plural=key.plural,
        )

    async def get(self, key: ObjectKey) -> dict[str, Any]:
        logger.debug(f"reading {key}")
        async with self.api_client() as api:
            try:
                return await api.get_namespaced_custom_object(
                    name=key.name, **self._path_args(key)
                )
            except ApiException as error:
                self._raise_for_api_exception(key, "read", error)

    async def create(self, key: ObjectKey, body: dict[str, Any]) -> dict[str, Any]:
        logger.debug(f"creating {key}")
        async with self.api_client() as api:
            try:
                return await api.create_namespaced_custom_object(
                    body=body, **self._path_args(key)
                )
            except ApiException as error:
                self._raise_for_api_exception(key, "create", error)

    async def update(self, key: ObjectKey, body: dict[str, Any]) -> dict[str, Any]:
        logger.debug(f"replacing {key}")
        async with self.api_client() as api:
            try:
                return await api.replace_namespaced_custom_object(
                    name=key.name, body=body, **self._path_args(key)
                )
            except ApiException as error:
                self._raise_for_api_exception(key, "replace", error)

    async def delete(self, key: ObjectKey) -> None:
        logger.debug(f"deleting {key}")
        async with self.api_client() as api:
            try:
                await api.delete_namespaced_custom_object(
                    name=key.name, **self._path_args(key)
                )
            except ApiException as error:
                self._raise_for_api_exception(key, "delete", error)

    @staticmethod
    def _raise_for_api_exception(key: ObjectKey, operation: str, error: ApiException) -> None:
        if error.status == 404:
            raise ObjectNotFoundError(key) from error

        logger.error(
            f"failed to {operation} {key}: {error.status} {error.reason}"
        )
        raise error
