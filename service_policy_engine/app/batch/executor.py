"""
Bulk batch executor.

Applies one operation to many target ids. Every item resolves to exactly
one status and no item failure aborts the batch. Items run sequentially
by default; with ``max_concurrency > 1`` a bounded worker pool is used and
results are still reported in input order.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from shared.errors import (
    BatchItemError, ErrorResponse, NotFoundError, PermissionDeniedError,
    PolicyEngineException, ValidationError
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..actors import ActorContext
from ..audit.recorder import AuditRecorder


class BatchItemStatus(str, Enum):
    """Outcome of one item."""
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    OPERATION_ERROR = "operation_error"
    SKIPPED = "skipped"


FAILED_STATUSES = frozenset({
    BatchItemStatus.NOT_FOUND,
    BatchItemStatus.PERMISSION_DENIED,
    BatchItemStatus.OPERATION_ERROR,
})


@dataclass
class BatchOperation:
    """Operation requested by a caller for a list of targets."""
    type: str
    target_ids: List[str]
    reason: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BatchItemResult:
    target_id: str
    status: BatchItemStatus
    error: Optional[ErrorResponse] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == BatchItemStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "status": self.status.value,
            "success": self.success,
            "error": self.error.model_dump() if self.error else None,
            "result": self.result,
        }


@dataclass
class BatchSummary:
    operation: str
    total: int
    successful: int
    failed: int
    skipped: int
    results: List[BatchItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.successful > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


BatchHandler = Callable[[str, BatchOperation, ActorContext], Union[Optional[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]]


class BatchExecutor:
    """Runs registered operations over lists of ids with per-item isolation."""

    def __init__(self, hard_max: int = 100, max_concurrency: int = 1,
                 audit_recorder: Optional[AuditRecorder] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.hard_max = hard_max
        self.max_concurrency = max(1, max_concurrency)
        self.audit_recorder = audit_recorder
        self.metrics = metrics
        self._handlers: Dict[str, BatchHandler] = {}
        self.logger = get_logger("policy_engine.batch")

    def register(self, operation_type: str, handler: BatchHandler):
        """Register a sync or async handler for an operation type."""
        self._handlers[operation_type] = handler

    def operations(self) -> List[str]:
        return sorted(self._handlers)

    async def run_batch(self, operation: BatchOperation, actor: ActorContext) -> BatchSummary:
        """Run an operation over its target ids.

        Raises ValidationError for an unknown operation or an id count
        outside 1..hard_max; item failures are reported, never raised.
        """
        handler = self._handlers.get(operation.type)
        if handler is None:
            raise ValidationError(
                f"Unknown batch operation '{operation.type}'",
                {"operation": operation.type, "allowed": self.operations()}
            )

        count = len(operation.target_ids)
        if count == 0:
            raise ValidationError("At least one target id is required", {"operation": operation.type})
        if count > self.hard_max:
            raise ValidationError(
                f"Batch exceeds the maximum of {self.hard_max} items",
                {"operation": operation.type, "count": count, "max": self.hard_max}
            )

        # Repeated ids are processed once; later repeats are skipped
        unique_ids: List[str] = []
        seen = set()
        for target_id in operation.target_ids:
            if target_id not in seen:
                seen.add(target_id)
                unique_ids.append(target_id)

        if self.max_concurrency == 1:
            outcomes = [await self._run_item(handler, target_id, operation, actor) for target_id in unique_ids]
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def bounded(target_id: str) -> BatchItemResult:
                async with semaphore:
                    return await self._run_item(handler, target_id, operation, actor)

            outcomes = await asyncio.gather(*(bounded(target_id) for target_id in unique_ids))

        by_id = {item.target_id: item for item in outcomes}
        results: List[BatchItemResult] = []
        emitted = set()
        for target_id in operation.target_ids:
            if target_id in emitted:
                results.append(BatchItemResult(target_id=target_id, status=BatchItemStatus.SKIPPED))
            else:
                emitted.add(target_id)
                results.append(by_id[target_id])

        for item in results:
            if self.metrics:
                self.metrics.record_batch_item(item.status.value)
            if item.success and self.audit_recorder is not None:
                await self.audit_recorder.record_change(
                    entity_type="batch",
                    entity_id=item.target_id,
                    action=f"batch.{operation.type}",
                    actor_id=actor.actor_id,
                    details={
                        "reason": operation.reason,
                        "parameters": operation.parameters,
                        "result": item.result,
                    }
                )

        summary = BatchSummary(
            operation=operation.type,
            total=len(results),
            successful=sum(1 for r in results if r.status == BatchItemStatus.SUCCESS),
            failed=sum(1 for r in results if r.status in FAILED_STATUSES),
            skipped=sum(1 for r in results if r.status == BatchItemStatus.SKIPPED),
            results=results
        )

        self.logger.info(
            "Batch completed",
            operation=operation.type,
            actor_id=actor.actor_id,
            total=summary.total,
            successful=summary.successful,
            failed=summary.failed,
            skipped=summary.skipped
        )

        return summary

    async def _run_item(self, handler: BatchHandler, target_id: str,
                        operation: BatchOperation, actor: ActorContext) -> BatchItemResult:
        try:
            outcome = handler(target_id, operation, actor)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return BatchItemResult(target_id=target_id, status=BatchItemStatus.SUCCESS, result=outcome)

        except NotFoundError as e:
            return BatchItemResult(target_id=target_id, status=BatchItemStatus.NOT_FOUND, error=e.to_response())

        except PermissionDeniedError as e:
            return BatchItemResult(
                target_id=target_id, status=BatchItemStatus.PERMISSION_DENIED, error=e.to_response()
            )

        except PolicyEngineException as e:
            error = BatchItemError(target_id, e.message, {"cause": e.code, **e.details})
            return BatchItemResult(
                target_id=target_id, status=BatchItemStatus.OPERATION_ERROR, error=error.to_response()
            )

        except Exception as e:
            self.logger.error(
                "Batch item failed",
                operation=operation.type,
                target_id=target_id,
                error=str(e)
            )
            return BatchItemResult(
                target_id=target_id,
                status=BatchItemStatus.OPERATION_ERROR,
                error=BatchItemError(target_id, str(e)).to_response()
            )
