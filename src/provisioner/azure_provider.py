"""Azure Resource Manager provider.

Implements the provider protocol on top of the generic ARM resource API
(azure-mgmt-resource), so any ARM resource type can be declared without
type-specific code:

- Type tags map to ARM types and API versions via the declaration file's
  ``types:`` section (e.g. ``web-app -> Microsoft.Web/sites``).
- Resource groups use the resource-groups operation group; everything else
  uses ``resources.begin_create_or_update_by_id``.
- Deletes resolve the API version from the type catalog, falling back to
  the versions registered by the resource provider namespace.

Recognised attributes:
    name           resource name (required)
    resourceGroup  containing resource group (omit for subscription level)
    parent         parent resource name(s) for child types, "/"-separated
    location, tags, kind, sku, identity, properties, managedBy

SECURITY: Timeouts are enforced on every long-running ARM operation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Identity, ResourceGroup, Sku

from .config import DEFAULT_PROVIDER_TIMEOUT_SECONDS
from .models import ProviderTypeMapping
from .provider import (
    PermanentProviderError,
    ProviderError,
    ProviderResult,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

RESOURCE_GROUP_ARM_TYPE = "microsoft.resources/resourcegroups"

# Status codes worth retrying: timeout, throttling, server-side failures
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Attributes that address the resource rather than form its body
ADDRESS_ATTRIBUTES = frozenset({"name", "resourceGroup", "parent"})
BODY_ATTRIBUTES = frozenset(
    {"location", "tags", "kind", "sku", "identity", "properties", "managedBy"}
)


def classify_error(error: Exception) -> ProviderError:
    """Map an Azure SDK exception to a transient or permanent ProviderError."""
    if isinstance(error, ProviderError):
        return error

    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(f"Azure connection error: {error}")

    if isinstance(error, HttpResponseError):
        status = error.status_code
        message = f"Azure API error ({status}): {error.message or error}"
        if status is not None and status in TRANSIENT_STATUS_CODES:
            return TransientProviderError(message, status_code=status)
        return PermanentProviderError(message, status_code=status)

    if isinstance(error, AzureError):
        return PermanentProviderError(f"Azure error: {error}")

    return PermanentProviderError(f"{type(error).__name__}: {error}")


def parse_resource_type_from_id(resource_id: str) -> str:
    """Extract the full ARM type from a resource ID.

    ``/subscriptions/s/resourceGroups/rg/providers/Microsoft.Sql/servers/a/databases/b``
    yields ``Microsoft.Sql/servers/databases``; an ID without a provider
    segment is a resource group.
    """
    parts = resource_id.split("/providers/")
    if len(parts) < 2:
        return "Microsoft.Resources/resourceGroups"

    segments = [s for s in parts[-1].split("/") if s]
    if len(segments) < 3:
        raise PermanentProviderError(f"Malformed resource ID: {resource_id}")

    namespace = segments[0]
    type_segments = segments[1::2]
    return "/".join([namespace, *type_segments])


def _require_str(attributes: Mapping[str, Any], key: str) -> str:
    value = attributes.get(key)
    if not isinstance(value, str) or not value:
        raise PermanentProviderError(f"Attribute '{key}' must be a non-empty string")
    return value


class AzureResourceProvider:
    """Provider backed by Azure Resource Manager."""

    def __init__(
        self,
        subscription_id: str,
        type_catalog: Mapping[str, ProviderTypeMapping],
        credential: Any | None = None,
        client: ResourceManagementClient | None = None,
        timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the provider.

        Args:
            subscription_id: Target subscription.
            type_catalog: Type tag to ARM type/API version mapping.
            credential: Azure credential (defaults to security.get_credential()).
            client: Pre-built management client (mainly for tests).
            timeout_seconds: Upper bound for each long-running operation.
        """
        self._subscription_id = subscription_id
        self._type_catalog = dict(type_catalog)
        self._timeout_seconds = timeout_seconds

        if client is None:
            if credential is None:
                from .security import get_credential

                credential = get_credential()
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=subscription_id,
            )
        self._client = client

        # ARM type (lower case) -> API version
        self._api_versions: dict[str, str] = {
            m.provider_type.lower(): m.api_version for m in self._type_catalog.values()
        }
        self._api_versions_lock = threading.Lock()

    def _mapping_for(self, resource_type: str) -> ProviderTypeMapping:
        mapping = self._type_catalog.get(resource_type)
        if mapping is None:
            raise PermanentProviderError(
                f"No ARM type mapping for type '{resource_type}'. "
                f"Add it to the 'types' section of the declaration file."
            )
        return mapping

    def build_resource_id(self, arm_type: str, attributes: Mapping[str, Any]) -> str:
        """Compose the ARM resource ID from the addressing attributes."""
        name = _require_str(attributes, "name")
        base = f"/subscriptions/{self._subscription_id}"

        if arm_type.lower() == RESOURCE_GROUP_ARM_TYPE:
            return f"{base}/resourceGroups/{name}"

        segments = arm_type.split("/")
        namespace, type_segments = segments[0], segments[1:]

        parent = attributes.get("parent")
        names = [*parent.split("/"), name] if isinstance(parent, str) and parent else [name]
        if len(names) != len(type_segments):
            raise PermanentProviderError(
                f"Type {arm_type} needs {len(type_segments) - 1} parent name(s), "
                f"got parent={parent!r}"
            )

        resource_group = attributes.get("resourceGroup")
        if resource_group:
            base = f"{base}/resourceGroups/{resource_group}"

        path = "/".join(f"{t}/{n}" for t, n in zip(type_segments, names, strict=True))
        return f"{base}/providers/{namespace}/{path}"

    def _wait(self, poller: Any, operation_name: str) -> Any:
        """Wait for an LRO poller, bounded by the configured timeout."""
        result = poller.result(timeout=self._timeout_seconds)
        if not poller.done():
            logger.error(
                "Long-running operation timed out",
                extra={"operation": operation_name, "timeout_seconds": self._timeout_seconds},
            )
            raise TransientProviderError(
                f"{operation_name} did not finish within {self._timeout_seconds}s"
            )
        return result

    def create_or_update(self, resource_type: str, attributes: dict[str, Any]) -> ProviderResult:
        mapping = self._mapping_for(resource_type)

        unknown = sorted(set(attributes) - ADDRESS_ATTRIBUTES - BODY_ATTRIBUTES)
        if unknown:
            raise PermanentProviderError(
                f"Unsupported attributes for ARM resource: {unknown}. "
                f"Nest resource settings under 'properties'."
            )

        resource_id = self.build_resource_id(mapping.provider_type, attributes)
        logger.info(
            "Creating or updating Azure resource",
            extra={"resource_id": resource_id, "api_version": mapping.api_version},
        )

        try:
            if mapping.provider_type.lower() == RESOURCE_GROUP_ARM_TYPE:
                group = self._client.resource_groups.create_or_update(
                    _require_str(attributes, "name"),
                    ResourceGroup(
                        location=_require_str(attributes, "location"),
                        tags=attributes.get("tags"),
                        managed_by=attributes.get("managedBy"),
                    ),
                )
                return ProviderResult(external_id=group.id or resource_id, attributes=_outputs(group))

            sku = attributes.get("sku")
            identity = attributes.get("identity")
            body = GenericResource(
                location=attributes.get("location"),
                tags=attributes.get("tags"),
                kind=attributes.get("kind"),
                managed_by=attributes.get("managedBy"),
                sku=Sku.from_dict(sku) if isinstance(sku, dict) else None,
                identity=Identity.from_dict(identity) if isinstance(identity, dict) else None,
                properties=attributes.get("properties"),
            )
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, mapping.api_version, body
            )
            resource = self._wait(poller, "Create or update")
        except ProviderError:
            raise
        except AzureError as e:
            raise classify_error(e) from e

        external_id = getattr(resource, "id", None) or resource_id
        return ProviderResult(external_id=external_id, attributes=_outputs(resource))

    def _api_version_for(self, arm_type: str) -> str:
        key = arm_type.lower()
        with self._api_versions_lock:
            cached = self._api_versions.get(key)
        if cached is not None:
            return cached

        namespace, _, type_path = arm_type.partition("/")
        registered = self._client.providers.get(namespace)
        for resource_type in registered.resource_types or []:
            if (resource_type.resource_type or "").lower() != type_path.lower():
                continue
            versions = list(resource_type.api_versions or [])
            stable = [v for v in versions if "preview" not in v.lower()]
            if stable or versions:
                version = (stable or versions)[0]
                with self._api_versions_lock:
                    self._api_versions[key] = version
                return version

        raise PermanentProviderError(f"No API version registered for {arm_type}")

    def delete(self, external_id: str) -> None:
        arm_type = parse_resource_type_from_id(external_id)
        logger.info("Deleting Azure resource", extra={"resource_id": external_id})

        try:
            if arm_type.lower() == RESOURCE_GROUP_ARM_TYPE:
                name = external_id.rstrip("/").rsplit("/", 1)[-1]
                poller = self._client.resource_groups.begin_delete(name)
            else:
                api_version = self._api_version_for(arm_type)
                poller = self._client.resources.begin_delete_by_id(external_id, api_version)
            self._wait(poller, "Delete")
        except ResourceNotFoundError:
            logger.info("Azure resource already gone", extra={"resource_id": external_id})
        except ProviderError:
            raise
        except AzureError as e:
            raise classify_error(e) from e


def _outputs(resource: Any) -> dict[str, Any]:
    """Flatten an ARM resource into reference-able attributes.

    Top-level fields come first; keys of ``properties`` are lifted to the
    top level where they do not collide (e.g. ``defaultHostName``).
    """
    if resource is None:
        return {}
    data: dict[str, Any] = resource.as_dict() if hasattr(resource, "as_dict") else dict(resource)
    outputs = {k: v for k, v in data.items() if v is not None}
    properties = data.get("properties")
    if isinstance(properties, dict):
        for key, value in properties.items():
            outputs.setdefault(key, value)
    return outputs
