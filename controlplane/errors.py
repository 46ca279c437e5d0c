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

import datetime
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from controlplane.types import ObjectKey

__all__ = (
    "BaseError",
    "ObjectError",
    "ObjectNotFoundError",
    "UnhealthyObjectError",
    "WaitTimeoutError",
)


class BaseError(RuntimeError):
    """The base class for all errors in the controlplane package."""

    def __init__(
        self,
        message: str = "",
        reason: Optional[str] = None,
        *args,
    ) -> None:
        super().__init__(message, *args)
        self._reason = reason
        self._created_at = datetime.datetime.now()

    @property
    def reason(self) -> Optional[str]:
        """A supplemental reason explaining why the error occurred."""
        return self._reason

    @reason.setter
    def reason(self, value: Optional[str]) -> None:
        self._reason = value

    @property
    def created_at(self) -> datetime.datetime:
        """The date and time when the error occurred."""
        return self._created_at


class ObjectError(BaseError):
    """An error occurred while operating on a named cluster object.

    The message is always prefixed with the kind, namespace, and name of the object
    so that the error can be diagnosed from the message alone.
    """

    def __init__(
        self,
        key: ObjectKey,
        message: str = "",
        reason: Optional[str] = None,
        *args,
    ) -> None:
        super().__init__(f"{key}: {message}" if message else str(key), reason, *args)
        self._key = key

    @property
    def key(self) -> ObjectKey:
        """The identity of the object the error relates to."""
        return self._key


class ObjectNotFoundError(ObjectError):
    """The object does not exist in the object store.

    Absence is an expected condition when fetching an object prior to reconciling it
    and selects the create path rather than failing the operation.
    """

    def __init__(self, key: ObjectKey, message: str = "not found", *args) -> None:
        super().__init__(key, message, "not-found", *args)


class WaitTimeoutError(ObjectError):
    """The object did not reach the expected state before the deadline elapsed.

    Raised in place of a bare `asyncio.TimeoutError` so that callers can tell an
    exhausted wait apart from a transport failure and decide whether to retry the
    whole operation or fail the deployment outright.
    """

    def __init__(
        self,
        key: ObjectKey,
        expected_state: str,
        observed_state: Any = None,
        timeout: Optional[datetime.timedelta] = None,
    ) -> None:
        within = f" within {timeout}" if timeout is not None else ""
        super().__init__(
            key,
            f"did not become {expected_state}{within} (last observed state: {observed_state})",
            "timeout",
        )
        self.expected_state = expected_state
        self.observed_state = observed_state
        self.timeout = timeout


class UnhealthyObjectError(ObjectError):
    """The object reported a terminal failure condition while being checked for health."""

    def __init__(self, key: ObjectKey, message: str, reason: str = "unhealthy") -> None:
        super().__init__(key, message, reason)
