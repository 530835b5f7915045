"""Provider interface consumed by the executor.

A provider creates, updates and deletes concrete resources. It is the only
component that talks to the outside world; the executor is the only caller.

Failures are classified so the executor knows whether to retry:
- TransientProviderError: throttling, timeouts, temporary unavailability
- PermanentProviderError: invalid configuration, permission denied, conflicts
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class ProviderError(Exception):
    """Raised when a provider call fails."""

    transient: bool = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Failure that may succeed when retried."""

    transient = True


class PermanentProviderError(ProviderError):
    """Failure that will not succeed without a configuration change."""

    transient = False


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a successful create_or_update call."""

    external_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Synchronous provider contract.

    Implementations must tolerate concurrent calls for independent
    resources; the executor calls them from worker threads.
    """

    def create_or_update(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        """Converge one resource to ``attributes``.

        Raises:
            TransientProviderError: If the call may succeed when retried.
            PermanentProviderError: If the call cannot succeed as is.
        """
        ...

    def delete(self, external_id: str) -> None:
        """Delete the resource identified by ``external_id``.

        Deleting a resource that no longer exists succeeds.

        Raises:
            TransientProviderError: If the call may succeed when retried.
            PermanentProviderError: If the call cannot succeed as is.
        """
        ...
