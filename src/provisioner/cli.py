"""Provisioner CLI.

Usage:
    provisioner init                      # Create the state directory
    provisioner validate                  # Load declarations and build the graph
    provisioner plan [--destroy] [--out]  # Show (or save) the operations to run
    provisioner apply [--plan FILE]       # Execute a fresh or saved plan
    provisioner destroy                   # Delete every recorded resource
    provisioner state list                # List state records
    provisioner state show ID             # Show one state record

Reports are printed as JSON on stdout; logs go to stderr.

Exit codes:
    0  success
    1  partial failure or cancelled run
    2  invalid declarations, configuration, guardrail violation or stale plan
    3  state is locked by another run
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import click
from pydantic import ValidationError

from . import graph as graph_builder
from . import planner
from .audit import RunAudit, get_audit_logger
from .azure_provider import AzureResourceProvider
from .config import ConfigurationError, EngineConfig
from .declaration_loader import DeclarationLoadError, load_declarations
from .graph import GraphError, ResourceGraph
from .guardrails import GuardrailEnforcer, GuardrailsConfig, GuardrailViolation
from .main import execute_plan, setup_logging
from .models import DeclarationDocument, ExecutionReport, OperationKind, Plan, PlanMode
from .planner import PlanError
from .provider import Provider
from .security import CredentialPolicyError
from .state import FileStateStore, StateLockError, StateStoreError

VERSION = "0.1.0"
DEFAULT_DECLARATIONS_FILE = "declarations.yaml"

EXIT_SUCCESS = 0
EXIT_INCOMPLETE = 1
EXIT_INVALID = 2
EXIT_LOCKED = 3


@dataclass
class CliContext:
    """Shared state for all commands."""

    config: EngineConfig
    declaration_file: Path

    @property
    def store(self) -> FileStateStore:
        return FileStateStore(self.config.state_dir)


def exit_code_for(error: Exception) -> int:
    """Map an aborting error to the process exit code."""
    match error:
        case StateLockError():
            return EXIT_LOCKED
        case (
            DeclarationLoadError()
            | GraphError()
            | PlanError()
            | ConfigurationError()
            | GuardrailViolation()
            | CredentialPolicyError()
            | StateStoreError()
        ):
            return EXIT_INVALID
        case _:
            return EXIT_INCOMPLETE


def _fail(ctx: click.Context, error: Exception, audit: RunAudit | None = None) -> NoReturn:
    if audit is not None:
        audit_logger = get_audit_logger()
        audit_logger.record_error(audit, error)
        audit_logger.log_audit(audit)
    click.echo(f"Error: {error}", err=True)
    ctx.exit(exit_code_for(error))
    raise AssertionError("unreachable")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _load(obj: CliContext) -> tuple[DeclarationDocument, ResourceGraph]:
    document = load_declarations(obj.declaration_file)
    return document, graph_builder.build(document.resources)


def build_provider(config: EngineConfig, document: DeclarationDocument) -> Provider:
    """Construct the provider used by apply and destroy."""
    return AzureResourceProvider(
        subscription_id=config.require_subscription_id(),
        type_catalog=document.types,
        timeout_seconds=config.provider_timeout_seconds,
    )


def check_type_catalog(plan: Plan, document: DeclarationDocument) -> None:
    """Fail before execution when a created or updated type has no mapping.

    Raises:
        ConfigurationError: If any type tag is missing from ``types``.
    """
    missing = sorted(
        {
            op.resource_type
            for op in plan.operations
            if op.kind in (OperationKind.CREATE, OperationKind.UPDATE)
            and op.resource_type not in document.types
        }
    )
    if missing:
        raise ConfigurationError(f"Types missing from the 'types' section: {missing}")


def _execute(
    obj: CliContext,
    store: FileStateStore,
    plan: Plan,
    document: DeclarationDocument,
) -> ExecutionReport:
    GuardrailEnforcer(GuardrailsConfig.from_env()).check_plan(plan)
    check_type_catalog(plan, document)
    provider = build_provider(obj.config, document)
    return asyncio.run(execute_plan(plan, store, provider, obj.config))


def _finish(ctx: click.Context, audit: RunAudit, report: ExecutionReport) -> NoReturn:
    audit_logger = get_audit_logger()
    audit_logger.record_report(audit, report)
    audit_logger.log_audit(audit)
    click.echo(report.model_dump_json(indent=2))
    ctx.exit(EXIT_SUCCESS if report.success else EXIT_INCOMPLETE)
    raise AssertionError("unreachable")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="provisioner")
@click.option(
    "--file",
    "-f",
    "declaration_file",
    envvar="DECLARATIONS_FILE",
    default=DEFAULT_DECLARATIONS_FILE,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Declaration file (YAML)",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory (overrides STATE_DIR)",
)
@click.pass_context
def cli(ctx: click.Context, declaration_file: Path, state_dir: Path | None) -> None:
    """Declarative infrastructure provisioner.

    Reconciles the resources declared in a YAML file with the recorded
    state, in dependency order.

    \b
    Quick Start:
        provisioner init
        provisioner plan
        provisioner apply
    """
    try:
        config = EngineConfig.from_env()
        if state_dir is not None:
            config = dataclasses.replace(config, state_dir=state_dir)
    except ConfigurationError as e:
        _fail(ctx, e)

    setup_logging(config)
    ctx.obj = CliContext(config=config, declaration_file=declaration_file)


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the state directory."""
    obj: CliContext = ctx.obj
    try:
        created = obj.store.initialize()
    except StateStoreError as e:
        _fail(ctx, e)

    _echo_json({"state_dir": str(obj.config.state_dir), "created": created})


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate declarations: schema, references and cycles."""
    obj: CliContext = ctx.obj
    try:
        document, graph = _load(obj)
    except (DeclarationLoadError, GraphError) as e:
        _fail(ctx, e)

    order = graph.topological_order() or []
    _echo_json(
        {
            "valid": True,
            "resource_count": len(graph),
            "order": order,
            "untyped": sorted({r.type for r in graph.resources} - set(document.types)),
        }
    )


@cli.command()
@click.option("--destroy", is_flag=True, help="Plan deletion of every recorded resource")
@click.option(
    "--out",
    "out_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Save the plan for a later 'apply --plan'",
)
@click.pass_context
def plan(ctx: click.Context, destroy: bool, out_file: Path | None) -> None:
    """Compute the operations that converge state to the declarations."""
    obj: CliContext = ctx.obj
    audit = get_audit_logger().create_audit("plan", obj.declaration_file)
    mode = PlanMode.DESTROY if destroy else PlanMode.APPLY

    try:
        _, graph = _load(obj)
        result = planner.plan(graph, obj.store.load(), mode)
    except (DeclarationLoadError, GraphError, PlanError, StateStoreError) as e:
        _fail(ctx, e, audit)

    get_audit_logger().record_plan(audit, result)
    get_audit_logger().log_audit(audit)

    if out_file is None:
        click.echo(result.model_dump_json(indent=2))
        return

    out_file.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    _echo_json(
        {
            "plan_file": str(out_file),
            "mode": result.mode.value,
            "create": result.count(OperationKind.CREATE),
            "update": result.count(OperationKind.UPDATE),
            "delete": result.count(OperationKind.DELETE),
            "noop": result.count(OperationKind.NOOP),
        }
    )


@cli.command()
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Execute a plan saved with 'plan --out'",
)
@click.pass_context
def apply(ctx: click.Context, plan_file: Path | None) -> None:
    """Execute a plan (computed now, or saved earlier)."""
    obj: CliContext = ctx.obj
    audit = get_audit_logger().create_audit("apply", obj.declaration_file)
    store = obj.store

    try:
        document, graph = _load(obj)
        saved: Plan | None = None
        if plan_file is not None:
            try:
                saved = Plan.model_validate_json(plan_file.read_text(encoding="utf-8"))
            except ValidationError as e:
                raise DeclarationLoadError(f"Invalid plan file {plan_file}: {e}") from e

        with store.lock():
            # A saved plan is checked against current state by the executor
            result = saved if saved is not None else planner.plan(graph, store.load())
            get_audit_logger().record_plan(audit, result)
            report = _execute(obj, store, result, document)
    except (
        DeclarationLoadError,
        GraphError,
        PlanError,
        StateStoreError,
        ConfigurationError,
        GuardrailViolation,
        CredentialPolicyError,
    ) as e:
        _fail(ctx, e, audit)

    _finish(ctx, audit, report)


@cli.command()
@click.pass_context
def destroy(ctx: click.Context) -> None:
    """Delete every recorded resource, dependents first."""
    obj: CliContext = ctx.obj
    audit = get_audit_logger().create_audit("destroy", obj.declaration_file)
    store = obj.store

    try:
        document, graph = _load(obj)
        with store.lock():
            result = planner.plan(graph, store.load(), PlanMode.DESTROY)
            get_audit_logger().record_plan(audit, result)
            report = _execute(obj, store, result, document)
    except (
        DeclarationLoadError,
        GraphError,
        PlanError,
        StateStoreError,
        ConfigurationError,
        GuardrailViolation,
        CredentialPolicyError,
    ) as e:
        _fail(ctx, e, audit)

    _finish(ctx, audit, report)


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect recorded state."""
    pass


@state.command("list")
@click.pass_context
def state_list(ctx: click.Context) -> None:
    """List state records."""
    obj: CliContext = ctx.obj
    try:
        records = obj.store.load()
    except StateStoreError as e:
        _fail(ctx, e)

    _echo_json(
        [
            {
                "identifier": record.identifier,
                "resource_type": record.resource_type,
                "external_id": record.external_id,
                "updated_at": record.updated_at.isoformat(),
            }
            for record in records.values()
        ]
    )


@state.command("show")
@click.argument("identifier")
@click.pass_context
def state_show(ctx: click.Context, identifier: str) -> None:
    """Show the state record of IDENTIFIER (<type>.<name>)."""
    obj: CliContext = ctx.obj
    try:
        record = obj.store.get(identifier)
    except StateStoreError as e:
        _fail(ctx, e)

    if record is None:
        click.echo(f"Error: no state record for {identifier}", err=True)
        ctx.exit(EXIT_INVALID)
    click.echo(record.model_dump_json(indent=2))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
