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

import abc
from typing import Any

from controlplane.types import ObjectKey


class ObjectStore(abc.ABC):
    """A store of named cluster objects handled as plain dict bodies.

    Implementations raise `ObjectNotFoundError` from `get` and `delete` when the object
    is absent. Any other failure propagates unchanged to the caller.
    """

    @abc.abstractmethod
    async def get(self, key: ObjectKey) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def create(self, key: ObjectKey, body: dict[str, Any]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def update(self, key: ObjectKey, body: dict[str, Any]) -> dict[str, Any]:
        """Replace the whole object. The body carries the resourceVersion that was read."""
        ...

    @abc.abstractmethod
    async def delete(self, key: ObjectKey) -> None:
        ...
