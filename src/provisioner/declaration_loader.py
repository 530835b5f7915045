"""Declaration file loading with validation.

SECURITY: File size is checked before reading and the number of resources
per file is bounded. Input validation is performed at the boundary.

Two layouts are accepted:

```yaml
# Flat
types:
  resource-group: {armType: Microsoft.Resources/resourceGroups, apiVersion: "2022-09-01"}
resources:
  - type: resource-group
    name: rg
    attributes: {name: rg-demo, location: westeurope}
```

```yaml
# Kubernetes-style wrapper
apiVersion: provisioner/v1
kind: Declarations
spec:
  resources: [...]
```
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES, MAX_RESOURCES_PER_DECLARATION
from .models import DeclarationDocument

logger = logging.getLogger(__name__)


class DeclarationLoadError(Exception):
    """Raised when a declaration file cannot be loaded or fails validation."""

    pass


def _format_validation_error(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_declarations(path: Path) -> DeclarationDocument:
    """Load and validate a declaration file.

    Args:
        path: YAML file holding the resource declarations.

    Returns:
        Validated DeclarationDocument (resources in file order).

    Raises:
        DeclarationLoadError: If the file is missing, too large, not valid
            YAML, or fails validation.
    """
    path = Path(path)
    if not path.is_file():
        raise DeclarationLoadError(f"Declaration file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DeclarationLoadError(f"Failed to stat declaration file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise DeclarationLoadError(
            f"Declaration file exceeds maximum size of "
            f"{MAX_DECLARATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DeclarationLoadError(f"Failed to read declaration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DeclarationLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise DeclarationLoadError(f"Declaration file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec") or {}
        if not isinstance(data, dict):
            raise DeclarationLoadError(f"Spec section must be a mapping: {path}")
    else:
        data = raw_data

    resources = data.get("resources")
    if isinstance(resources, list) and len(resources) > MAX_RESOURCES_PER_DECLARATION:
        raise DeclarationLoadError(
            f"Declaration file declares {len(resources)} resources; "
            f"the maximum is {MAX_RESOURCES_PER_DECLARATION}: {path}"
        )

    try:
        document = DeclarationDocument.model_validate(data)
    except ValidationError as e:
        raise DeclarationLoadError(_format_validation_error(path, e)) from e

    logger.info(
        "Loaded declarations",
        extra={
            "path": str(path),
            "resource_count": len(document.resources),
            "type_count": len(document.types),
        },
    )
    return document
