"""Plan execution against a provider.

Every operation runs as its own asyncio task:

    pending -> in_flight -> succeeded | failed
    pending -> skipped                 (a prerequisite did not succeed, or cancelled)

- An operation waits on the completion events of the operations listed in
  its ``wait_for`` (dependencies when applying, dependents when destroying).
  No polling: waiting is an asyncio.Event per operation.
- Independent branches run concurrently, bounded by a semaphore of
  ``max_parallelism``. Provider calls are synchronous and run in the default
  thread pool executor.
- Transient provider errors are retried with exponential backoff and jitter;
  permanent errors fail the operation immediately.
- A failed operation marks every transitive dependent as skipped; unrelated
  branches still complete.
- A state record is committed before the operation's completion event is
  set, so dependents always observe their dependency's commit.

The executor is the only writer of the state store and the only caller of
the provider.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from .config import EngineConfig
from .models import (
    ExecutionReport,
    ExecutionStatus,
    Operation,
    OperationKind,
    OperationResult,
    OperationStatus,
    Plan,
    Reference,
    StateRecord,
)
from .planner import PlanError, StalePlanError
from .provider import Provider, ProviderError, ProviderResult
from .references import Resolution, content_hash, resolve_attributes
from .state import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_REASON = "cancelled before start"


class Executor:
    """Applies (or destroys) a plan, recording state as operations complete."""

    def __init__(
        self,
        store: StateStore,
        config: EngineConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            store: State store; the executor is its only writer.
            config: Engine configuration (parallelism, retries, run timeout).
            sleep: Coroutine used for retry backoff.
        """
        self._store = store
        self._config = config or EngineConfig()
        self._sleep = sleep
        self._cancel_event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight calls run to completion."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested, no new operations will start")
        self._cancel_event.set()

    def _on_run_timeout(self) -> None:
        logger.error(
            "Run timeout reached",
            extra={"run_timeout_seconds": self._config.run_timeout_seconds},
        )
        self.cancel()

    def _validate(self, plan: Plan) -> None:
        """Refuse plans that cannot be executed exactly as listed.

        Raises:
            StalePlanError: If state changed since the plan was computed.
            PlanError: If an operation waits on an operation not in the plan.
        """
        current = self._store.fingerprint()
        if current != plan.state_fingerprint:
            raise StalePlanError(
                "State changed since the plan was computed; run plan again"
            )

        identifiers = {op.identifier for op in plan.operations}
        if len(identifiers) != len(plan.operations):
            raise PlanError("Plan lists more than one operation for a resource")
        for op in plan.operations:
            missing = [dep for dep in op.wait_for if dep not in identifiers]
            if missing:
                raise PlanError(f"Operation {op.identifier} waits on unknown operations: {missing}")

    async def execute(self, plan: Plan, provider: Provider) -> ExecutionReport:
        """Execute every operation of ``plan``.

        Args:
            plan: Plan computed from the current state of this executor's store.
            provider: Provider to call.

        Returns:
            ExecutionReport with every operation's final status.

        Raises:
            StalePlanError: If the store changed since the plan was computed.
            PlanError: If the plan is internally inconsistent.
        """
        self._validate(plan)
        start_time = datetime.now(UTC)

        results = {
            op.identifier: OperationResult(identifier=op.identifier, kind=op.kind)
            for op in plan.operations
        }
        done = {op.identifier: asyncio.Event() for op in plan.operations}
        semaphore = asyncio.Semaphore(self._config.max_parallelism)

        logger.info(
            "Executing plan",
            extra={
                "mode": plan.mode.value,
                "operation_count": len(plan.operations),
                "change_count": plan.change_count,
                "max_parallelism": self._config.max_parallelism,
            },
        )

        loop = asyncio.get_running_loop()
        timeout_handle = None
        if self._config.run_timeout_seconds is not None:
            timeout_handle = loop.call_later(self._config.run_timeout_seconds, self._on_run_timeout)

        try:
            await asyncio.gather(
                *(
                    self._run_operation(op, provider, results, done, semaphore)
                    for op in plan.operations
                )
            )
        finally:
            if timeout_handle is not None:
                timeout_handle.cancel()

        ordered = [results[op.identifier] for op in plan.operations]
        all_succeeded = all(r.status == OperationStatus.SUCCEEDED for r in ordered)
        if all_succeeded:
            status = ExecutionStatus.SUCCESS
        elif self.cancelled:
            status = ExecutionStatus.CANCELLED
        else:
            status = ExecutionStatus.PARTIAL_FAILURE

        report = ExecutionReport(
            mode=plan.mode,
            status=status,
            results=ordered,
            start_time=start_time,
            end_time=datetime.now(UTC),
        )
        self._log_report(report)
        return report

    async def _run_operation(
        self,
        op: Operation,
        provider: Provider,
        results: dict[str, OperationResult],
        done: dict[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
    ) -> None:
        result = results[op.identifier]
        try:
            for dep in op.wait_for:
                await done[dep].wait()

            blocking = [dep for dep in op.wait_for if results[dep].status != OperationStatus.SUCCEEDED]
            if blocking:
                self._skip(result, f"prerequisite {blocking[0]} {results[blocking[0]].status.value}")
                return

            if op.kind == OperationKind.NOOP and not op.is_deferred:
                result.status = OperationStatus.SUCCEEDED
                return

            if self.cancelled:
                self._skip(result, CANCELLED_REASON)
                return

            async with semaphore:
                if self.cancelled:
                    self._skip(result, CANCELLED_REASON)
                    return

                result.status = OperationStatus.IN_FLIGHT
                started = time.monotonic()
                try:
                    await self._dispatch(op, provider, result)
                    result.status = OperationStatus.SUCCEEDED
                    logger.info(
                        "Operation succeeded",
                        extra={
                            "identifier": op.identifier,
                            "kind": op.kind.value,
                            "attempts": result.attempts,
                        },
                    )
                except Exception as e:
                    result.status = OperationStatus.FAILED
                    result.error = str(e)
                    result.error_type = type(e).__name__
                    logger.error(
                        "Operation failed",
                        extra={
                            "identifier": op.identifier,
                            "kind": op.kind.value,
                            "attempts": result.attempts,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                finally:
                    result.duration_seconds = time.monotonic() - started
        finally:
            # Releases dependents; the record is already committed at this point
            done[op.identifier].set()

    def _skip(self, result: OperationResult, reason: str) -> None:
        result.status = OperationStatus.SKIPPED
        result.error = reason
        logger.warning(
            "Operation skipped",
            extra={"identifier": result.identifier, "kind": result.kind.value, "reason": reason},
        )

    async def _dispatch(self, op: Operation, provider: Provider, result: OperationResult) -> None:
        match op.kind:
            case OperationKind.CREATE | OperationKind.UPDATE:
                await self._create_or_update(op, provider, result)
            case OperationKind.NOOP:
                self._verify_deferred_noop(op)
            case OperationKind.DELETE:
                await self._delete(op, provider, result)
            case _:
                raise ValueError(f"Unsupported operation kind: {op.kind}")

    def _resolve(self, op: Operation) -> Resolution:
        """Resolve the resource's attributes against committed state."""
        if op.resource is None:
            raise PlanError(f"Operation {op.identifier} carries no resource")

        def lookup(ref: Reference) -> Any:
            record = self._store.get(ref.resource)
            if record is None:
                raise StalePlanError(
                    f"{op.identifier} references {ref.resource}, which has no state record"
                )
            try:
                return record.value_of(ref.attribute)
            except KeyError as e:
                raise StalePlanError(
                    f"{ref.resource} did not report attribute '{ref.attribute}' "
                    f"referenced by {op.identifier}"
                ) from e

        return resolve_attributes(op.resource.attributes, lookup)

    async def _create_or_update(
        self, op: Operation, provider: Provider, result: OperationResult
    ) -> None:
        resolution = self._resolve(op)
        desired_hash = content_hash(resolution.values)
        if op.desired_hash is not None and desired_hash != op.desired_hash:
            raise StalePlanError(
                f"Desired attributes of {op.identifier} differ from the plan; run plan again"
            )

        attributes = resolution.values
        outcome: ProviderResult = await self._call_with_retry(
            op,
            result,
            lambda: provider.create_or_update(op.resource_type, attributes),
        )

        record = StateRecord(
            identifier=op.identifier,
            resource_type=op.resource_type,
            external_id=outcome.external_id,
            applied=attributes,
            outputs=outcome.attributes,
            content_hash=desired_hash,
        )
        # File stores fsync; keep that off the event loop
        await asyncio.get_running_loop().run_in_executor(
            None, self._store.commit, op.identifier, record
        )
        result.record = record

    def _verify_deferred_noop(self, op: Operation) -> None:
        """Confirm a noop whose values were unknown at plan time is still a noop."""
        record = self._store.get(op.identifier)
        if record is None:
            raise StalePlanError(f"{op.identifier} has no state record")

        resolution = self._resolve(op)
        if content_hash(resolution.values) != record.content_hash:
            raise StalePlanError(
                f"Deferred values of {op.identifier} changed after its dependencies "
                f"were applied; run plan again to update it"
            )

    async def _delete(self, op: Operation, provider: Provider, result: OperationResult) -> None:
        record = self._store.get(op.identifier)
        if record is None:
            raise StalePlanError(f"{op.identifier} has no state record to delete")

        external_id = record.external_id
        await self._call_with_retry(op, result, lambda: provider.delete(external_id))
        await asyncio.get_running_loop().run_in_executor(None, self._store.remove, op.identifier)
        result.removed = True

    async def _call_with_retry(
        self,
        op: Operation,
        result: OperationResult,
        call: Callable[[], T],
    ) -> T:
        """Run a provider call in a worker thread with exponential backoff.

        Raises:
            ProviderError: If the error is permanent or attempts are exhausted.
        """
        loop = asyncio.get_running_loop()
        max_attempts = self._config.max_provider_attempts

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            try:
                return await loop.run_in_executor(None, call)
            except ProviderError as e:
                if not e.transient or attempt >= max_attempts or self.cancelled:
                    raise

                # Exponential backoff with jitter
                backoff = min(
                    self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                    self._config.retry_backoff_max_seconds,
                )
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "identifier": op.identifier,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await self._sleep(wait_time)

        # SAFETY: the loop returns or raises on its last attempt
        raise AssertionError("Retry loop completed without a result")

    def _log_report(self, report: ExecutionReport) -> None:
        extra: dict[str, Any] = {
            "mode": report.mode.value,
            "status": report.status.value,
            "duration_seconds": report.duration_seconds,
            "succeeded": report.count(OperationStatus.SUCCEEDED),
            "failed": report.count(OperationStatus.FAILED),
            "skipped": report.count(OperationStatus.SKIPPED),
        }
        if report.success:
            logger.info("Execution complete", extra=extra)
        else:
            logger.error("Execution incomplete", extra=extra)
