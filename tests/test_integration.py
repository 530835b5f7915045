"""End-to-end tests: declaration file to committed state.

These run the whole pipeline (loader, graph, planner, executor and the
file state store) against the mock provider.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from provider_mock import MockProvider

from provisioner.config import EngineConfig
from provisioner.declaration_loader import load_declarations
from provisioner.executor import Executor
from provisioner.graph import build
from provisioner.models import ExecutionReport, OperationKind, Plan, PlanMode
from provisioner.planner import InconsistentStateError, plan
from provisioner.provider import TransientProviderError
from provisioner.references import content_hash
from provisioner.state import FileStateStore

DECLARATIONS = """
apiVersion: provisioner/v1
kind: Declarations
spec:
  resources:
    - type: resource-group
      name: rg
      attributes:
        name: rg-shop
        location: northeurope
    - type: storage-account
      name: assets
      attributes:
        name: stshopassets
        resourceGroup: ${resource-group.rg.name}
        location: ${resource-group.rg.location}
        sku: Standard_LRS
      computed: [primaryEndpoint]
    - type: app-service-plan
      name: plan
      attributes:
        name: plan-shop
        resourceGroup: ${resource-group.rg.name}
        sku: {name: S1}
    - type: web-app
      name: app
      attributes:
        name: app-shop
        resourceGroup: ${resource-group.rg.name}
        serverFarmId: ${app-service-plan.plan.id}
        appSettings:
          ASSETS_URL: "https://${storage-account.assets.primaryEndpoint}/static"
"""


def provider() -> MockProvider:
    return MockProvider(
        computed={
            "storage-account": lambda a: {"primaryEndpoint": f"{a['name']}.blob.core.windows.net"}
        }
    )


async def converge(path: Path, store: FileStateStore, mock: MockProvider) -> ExecutionReport:
    graph = build(load_declarations(path).resources)
    executor = Executor(store, EngineConfig(retry_backoff_base_seconds=0.01))
    return await executor.execute(plan(graph, store.load()), mock)


@pytest.fixture
def declarations(tmp_path: Path) -> Path:
    path = tmp_path / "declarations.yaml"
    path.write_text(DECLARATIONS)
    return path


@pytest.fixture
def store(tmp_path: Path) -> FileStateStore:
    store = FileStateStore(tmp_path / "state")
    store.initialize()
    return store


class TestEndToEnd:
    """Tests for the complete reconcile loop."""

    @pytest.mark.asyncio
    async def test_fresh_deploy(self, declarations: Path, store: FileStateStore) -> None:
        """Test every resource is created with references resolved."""
        mock = provider()

        report = await converge(declarations, store, mock)

        assert report.success
        app = mock.resources["mock://web-app/app-shop"]
        assert app.attributes["serverFarmId"] == "mock://app-service-plan/plan-shop"
        assert app.attributes["appSettings"]["ASSETS_URL"] == (
            "https://stshopassets.blob.core.windows.net/static"
        )
        assert app.attributes["resourceGroup"] == "rg-shop"

        order = mock.call_order()
        assert order[0] == "mock://resource-group/rg-shop"
        assert order[-1] == "mock://web-app/app-shop"

    @pytest.mark.asyncio
    async def test_reapply_is_idempotent(self, declarations: Path, store: FileStateStore) -> None:
        """Test a converged system plans only noops and makes no calls."""
        mock = provider()
        await converge(declarations, store, mock)
        calls = len(mock.calls)

        graph = build(load_declarations(declarations).resources)
        second = plan(graph, store.load())
        assert {op.kind for op in second.operations} == {OperationKind.NOOP}

        report = await converge(declarations, store, mock)
        assert report.success
        assert len(mock.calls) == calls

    @pytest.mark.asyncio
    async def test_change_propagates(self, declarations: Path, store: FileStateStore) -> None:
        """Test changing one attribute updates only that resource."""
        mock = provider()
        await converge(declarations, store, mock)
        declarations.write_text(DECLARATIONS.replace("sku: {name: S1}", "sku: {name: P1v3}"))

        graph = build(load_declarations(declarations).resources)
        changed = plan(graph, store.load())
        kinds = {op.identifier: op.kind for op in changed.operations}
        assert kinds["app-service-plan.plan"] == OperationKind.UPDATE
        assert kinds["resource-group.rg"] == OperationKind.NOOP

        report = await converge(declarations, store, mock)
        assert report.success
        assert mock.resources["mock://app-service-plan/plan-shop"].attributes["sku"] == {
            "name": "P1v3"
        }

    @pytest.mark.asyncio
    async def test_resume_after_failure(self, declarations: Path, store: FileStateStore) -> None:
        """Test a failed run leaves state that the next run completes."""
        mock = provider()
        mock.inject_error("app-service-plan", TransientProviderError("busy", status_code=503))

        first = await converge(declarations, store, mock)
        assert not first.success
        assert set(store.load()) == {"resource-group.rg", "storage-account.assets"}

        healed = provider()
        healed.resources = dict(mock.resources)
        second = await converge(declarations, store, healed)

        assert second.success
        assert set(store.load()) == {
            "resource-group.rg",
            "storage-account.assets",
            "app-service-plan.plan",
            "web-app.app",
        }
        assert healed.calls_for("resource-group") == 0

    @pytest.mark.asyncio
    async def test_removed_declaration_is_orphaned(
        self, declarations: Path, store: FileStateStore
    ) -> None:
        """Test state without a declaration is reported, not silently deleted."""
        mock = provider()
        await converge(declarations, store, mock)
        trimmed = DECLARATIONS.split("    - type: web-app")[0]
        declarations.write_text(trimmed)

        graph = build(load_declarations(declarations).resources)
        with pytest.raises(InconsistentStateError, match="web-app.app"):
            plan(graph, store.load())

    @pytest.mark.asyncio
    async def test_destroy(self, declarations: Path, store: FileStateStore) -> None:
        """Test destroy removes everything, dependents first."""
        mock = provider()
        await converge(declarations, store, mock)

        graph = build(load_declarations(declarations).resources)
        executor = Executor(store, EngineConfig())
        report = await executor.execute(plan(graph, store.load(), PlanMode.DESTROY), mock)

        assert report.success
        assert store.load() == {}
        assert mock.resources == {}
        deletes = mock.call_order("delete")
        assert deletes[-1] == "mock://resource-group/rg-shop"
        assert deletes.index("mock://web-app/app-shop") < deletes.index(
            "mock://app-service-plan/plan-shop"
        )


TIMESTAMPS = """
resources:
  - type: x
    name: a
    attributes:
      name: a
      expires: 2024-01-01 10:00:00
      tags: {1: one, env: prod}
  - type: x
    name: b
    attributes:
      name: b
      expires: ${x.a.expires}
      tags: ${x.a.tags}
"""


class TestStateRoundTrip:
    """Tests for hashes surviving the trip through the file store."""

    @pytest.mark.asyncio
    async def test_committed_hash_matches_plan(
        self, declarations: Path, store: FileStateStore, tmp_path: Path
    ) -> None:
        """Test every committed content_hash equals the planned desired_hash."""
        graph = build(load_declarations(declarations).resources)
        planned = plan(graph, store.load())

        report = await Executor(store, EngineConfig()).execute(planned, provider())
        assert report.success

        reread = FileStateStore(tmp_path / "state").load()
        for op in planned.operations:
            record = reread[op.identifier]
            if op.desired_hash is not None:
                assert record.content_hash == op.desired_hash, op.identifier
            assert record.content_hash == content_hash(record.applied), op.identifier

    @pytest.mark.asyncio
    async def test_yaml_timestamps_and_integer_keys(
        self, tmp_path: Path, store: FileStateStore
    ) -> None:
        """Test YAML scalars without a JSON type converge and stay converged."""
        path = tmp_path / "timestamps.yaml"
        path.write_text(TIMESTAMPS)

        report = await converge(path, store, provider())

        assert report.success, [(r.identifier, r.error) for r in report.results]
        assert store.get("x.b").applied["expires"] == "2024-01-01T10:00:00"
        assert store.get("x.b").applied["tags"] == {"1": "one", "env": "prod"}

        graph = build(load_declarations(path).resources)
        assert plan(graph, store.load()).is_empty

    @pytest.mark.asyncio
    async def test_saved_plan_round_trip(self, tmp_path: Path, store: FileStateStore) -> None:
        """Test a plan reloaded from JSON executes like the original."""
        path = tmp_path / "timestamps.yaml"
        path.write_text(TIMESTAMPS)
        graph = build(load_declarations(path).resources)
        saved = Plan.model_validate_json(plan(graph, store.load()).model_dump_json())

        report = await Executor(store, EngineConfig()).execute(saved, provider())

        assert report.success, [(r.identifier, r.error) for r in report.results]
