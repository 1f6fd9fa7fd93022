"""
Append-only audit recording for verdicts, violations and definition changes.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.logging import get_logger
from ..features.models import FeatureEvaluation
from ..rules.models import Verdict


def _dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


@dataclass(frozen=True)
class AuditRecord:
    """Immutable audit entry.

    Snapshots are stored as JSON text so a record cannot be changed through
    a reference to the dict it was built from.
    """
    entity_type: str
    entity_id: str
    action: str
    actor_id: Optional[str] = None
    before: Optional[str] = None
    after: Optional[str] = None
    details: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def before_snapshot(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.before) if self.before else None

    def after_snapshot(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.after) if self.after else None

    def details_dict(self) -> Dict[str, Any]:
        return json.loads(self.details) if self.details else {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "before": self.before_snapshot(),
            "after": self.after_snapshot(),
            "details": self.details_dict(),
        }


class InMemoryAuditSink:
    """Append-only in-process audit store. Records are never updated or removed."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: AuditRecord):
        async with self._lock:
            self._records.append(record)

    async def query(self, entity_id: Optional[str] = None, entity_type: Optional[str] = None,
                    action: Optional[str] = None, limit: Optional[int] = None) -> List[AuditRecord]:
        """Matching records, oldest first."""
        async with self._lock:
            records = [
                r for r in self._records
                if (entity_id is None or r.entity_id == entity_id)
                and (entity_type is None or r.entity_type == entity_type)
                and (action is None or r.action == action)
            ]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def __len__(self) -> int:
        return len(self._records)


class AuditRecorder:
    """Builds audit records and writes them to a sink."""

    def __init__(self, sink: Optional[InMemoryAuditSink] = None):
        self.sink = sink or InMemoryAuditSink()
        self.logger = get_logger("policy_engine.audit")

    async def record_change(self, entity_type: str, entity_id: str, action: str,
                            actor_id: Optional[str] = None,
                            before: Optional[Dict[str, Any]] = None,
                            after: Optional[Dict[str, Any]] = None,
                            details: Optional[Dict[str, Any]] = None) -> Optional[AuditRecord]:
        """Record a definition change with before/after snapshots."""
        record = AuditRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            before=_dump(before),
            after=_dump(after),
            details=_dump(details)
        )
        return await self._write(record)

    async def record_verdict(self, verdict: Verdict, actor_id: Optional[str] = None) -> List[AuditRecord]:
        """Record a policy verdict, plus a violation record when it triggered."""
        written: List[AuditRecord] = []

        record = await self._write(AuditRecord(
            entity_type="policy",
            entity_id=verdict.policy_id,
            action="policy.evaluated",
            actor_id=actor_id,
            details=_dump(verdict.to_dict())
        ))
        if record is not None:
            written.append(record)

        if verdict.triggered:
            record = await self._write(AuditRecord(
                entity_type="policy",
                entity_id=verdict.policy_id,
                action="policy.violation",
                actor_id=actor_id,
                details=_dump({
                    "policy_version": verdict.policy_version,
                    "matched_rules": list(verdict.matched_rules),
                    "violations": list(verdict.violations),
                    "actions": [a.action_id for a in verdict.executed_actions],
                })
            ))
            if record is not None:
                written.append(record)

        return written

    async def record_feature_evaluation(self, evaluation: FeatureEvaluation,
                                        actor_id: Optional[str] = None) -> Optional[AuditRecord]:
        return await self._write(AuditRecord(
            entity_type="feature",
            entity_id=evaluation.feature_key,
            action="feature.evaluated",
            actor_id=actor_id,
            details=_dump(evaluation.to_dict())
        ))

    async def history(self, entity_id: Optional[str] = None, entity_type: Optional[str] = None,
                      action: Optional[str] = None, limit: Optional[int] = None) -> List[AuditRecord]:
        return await self.sink.query(entity_id=entity_id, entity_type=entity_type, action=action, limit=limit)

    async def _write(self, record: AuditRecord) -> Optional[AuditRecord]:
        try:
            await self.sink.append(record)
            self.logger.debug(
                "Audit record written",
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                action=record.action
            )
            return record
        except Exception as e:
            self.logger.error(
                "Failed to write audit record",
                entity_id=record.entity_id,
                action=record.action,
                error=str(e)
            )
            return None
