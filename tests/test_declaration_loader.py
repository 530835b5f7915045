"""Tests for declaration file loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from provisioner.declaration_loader import DeclarationLoadError, load_declarations

FLAT = """
types:
  resource-group:
    armType: Microsoft.Resources/resourceGroups
    apiVersion: "2022-09-01"
resources:
  - type: resource-group
    name: rg
    attributes:
      name: rg-demo
      location: westeurope
  - type: web-app
    name: app
    attributes:
      name: app-demo
      resourceGroup: ${resource-group.rg.name}
    computed: [defaultHostName]
"""

WRAPPED = """
apiVersion: provisioner/v1
kind: Declarations
metadata:
  name: demo
spec:
  resources:
    - type: resource-group
      name: rg
"""


def write(tmp_path: Path, content: str, name: str = "declarations.yaml") -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


class TestLoadDeclarations:
    """Tests for load_declarations()."""

    def test_flat_format(self, tmp_path: Path) -> None:
        """Test the flat layout keeps declaration order."""
        document = load_declarations(write(tmp_path, FLAT))

        assert [r.identifier for r in document.resources] == ["resource-group.rg", "web-app.app"]
        assert document.resources[1].attributes["resourceGroup"] == "${resource-group.rg.name}"
        assert document.resources[1].computed == ["defaultHostName"]
        mapping = document.types["resource-group"]
        assert mapping.provider_type == "Microsoft.Resources/resourceGroups"
        assert mapping.api_version == "2022-09-01"

    def test_kubernetes_style_wrapper(self, tmp_path: Path) -> None:
        """Test the apiVersion/kind/spec wrapper."""
        document = load_declarations(write(tmp_path, WRAPPED))
        assert [r.identifier for r in document.resources] == ["resource-group.rg"]

    def test_empty_file(self, tmp_path: Path) -> None:
        """Test an empty file declares nothing."""
        document = load_declarations(write(tmp_path, ""))
        assert document.resources == []

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file is reported."""
        with pytest.raises(DeclarationLoadError, match="not found"):
            load_declarations(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test YAML syntax errors are reported."""
        with pytest.raises(DeclarationLoadError, match="Invalid YAML"):
            load_declarations(write(tmp_path, "resources: [unclosed"))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test a top-level list is rejected."""
        with pytest.raises(DeclarationLoadError, match="YAML mapping"):
            load_declarations(write(tmp_path, "- a\n- b\n"))

    def test_file_size_limit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test oversized files are refused before parsing."""
        monkeypatch.setattr("provisioner.declaration_loader.MAX_DECLARATION_FILE_SIZE_BYTES", 16)
        with pytest.raises(DeclarationLoadError, match="maximum size"):
            load_declarations(write(tmp_path, FLAT))

    def test_resource_count_limit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the per-file resource limit."""
        monkeypatch.setattr("provisioner.declaration_loader.MAX_RESOURCES_PER_DECLARATION", 1)
        with pytest.raises(DeclarationLoadError, match="maximum is 1"):
            load_declarations(write(tmp_path, FLAT))

    def test_validation_errors_are_formatted(self, tmp_path: Path) -> None:
        """Test pydantic errors list the failing location."""
        content = yaml.safe_dump({"resources": [{"type": "bad type", "name": "x"}]})
        with pytest.raises(DeclarationLoadError) as exc_info:
            load_declarations(write(tmp_path, content))

        assert "resources.0.type" in str(exc_info.value)

    def test_unknown_declaration_field_rejected(self, tmp_path: Path) -> None:
        """Test typos in declaration fields are not silently ignored."""
        content = yaml.safe_dump({"resources": [{"type": "x", "name": "a", "atributes": {}}]})
        with pytest.raises(DeclarationLoadError, match="atributes"):
            load_declarations(write(tmp_path, content))

    def test_computed_and_declared_overlap_rejected(self, tmp_path: Path) -> None:
        """Test an attribute cannot be both declared and computed."""
        content = yaml.safe_dump(
            {
                "resources": [
                    {"type": "x", "name": "a", "attributes": {"host": "h"}, "computed": ["host"]}
                ]
            }
        )
        with pytest.raises(DeclarationLoadError, match="both declared and computed"):
            load_declarations(write(tmp_path, content))

    def test_yaml_scalars_take_json_form(self, tmp_path: Path) -> None:
        """Test timestamps and integer keys load as their JSON encoding."""
        content = (
            "resources:\n"
            "  - type: x\n"
            "    name: a\n"
            "    attributes:\n"
            "      expires: 2024-01-01 10:00:00\n"
            "      tags: {1: one, env: prod}\n"
        )
        document = load_declarations(write(tmp_path, content))

        attributes = document.resources[0].attributes
        assert attributes["expires"] == "2024-01-01T10:00:00"
        assert attributes["tags"] == {"1": "one", "env": "prod"}

    def test_colliding_keys_rejected(self, tmp_path: Path) -> None:
        """Test keys that only differ by type are a load error."""
        content = "resources:\n  - type: x\n    name: a\n    attributes:\n      tags: {1: a, '1': b}\n"
        with pytest.raises(DeclarationLoadError, match="duplicate key"):
            load_declarations(write(tmp_path, content))

    def test_arm_type_must_have_namespace(self, tmp_path: Path) -> None:
        """Test type mappings need Namespace/type."""
        content = yaml.safe_dump({"types": {"x": {"armType": "sites", "apiVersion": "1"}}})
        with pytest.raises(DeclarationLoadError, match="armType"):
            load_declarations(write(tmp_path, content))
