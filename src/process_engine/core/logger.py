"""
Execution logger: append-only audit trail of instance transitions
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from ..models.instance import LogEntry, LogKind
from ..storage.repository import UnitOfWork, WorkflowStore


logger = logging.getLogger(__name__)


class ExecutionLogger:
    """Builds log entries and writes them to the store

    Entries produced during a transition are staged into the transition's
    unit of work so they commit or roll back with it. Errors are appended
    directly because the transition that raised them was discarded.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    def entry(
        self,
        instance_id: str,
        kind: LogKind,
        node_id: Optional[str] = None,
        token_id: Optional[str] = None,
        details: Dict[str, Any] = None
    ) -> LogEntry:
        return LogEntry(
            instance_id=instance_id,
            kind=kind,
            node_id=node_id,
            token_id=token_id,
            details=dict(details or {}),
        )

    async def stage(self, uow: UnitOfWork, entries: Iterable[LogEntry]):
        for entry in entries:
            await uow.append_log(entry)

    async def append(self, instance_id: str, entry: LogEntry):
        """Write one entry outside of a transition"""
        if entry.instance_id != instance_id:
            raise ValueError(f"Log entry belongs to instance {entry.instance_id}, not {instance_id}")
        await self.store.append_log(entry)
        self.emit([entry])

    async def error(self, instance_id: str, error: Exception, node_id: Optional[str] = None) -> LogEntry:
        """Record an error for an instance"""
        details = error.to_dict() if hasattr(error, "to_dict") else {"message": str(error)}
        details.setdefault("type", type(error).__name__)
        entry = self.entry(
            instance_id,
            LogKind.ERROR,
            node_id=node_id or getattr(error, "node_id", None),
            details=details,
        )
        await self.append(instance_id, entry)
        return entry

    def emit(self, entries: List[LogEntry]):
        """Mirror committed entries to the application log"""
        for entry in entries:
            level = logging.ERROR if entry.kind == LogKind.ERROR else logging.INFO
            logger.log(
                level,
                f"[instance={entry.instance_id}] {entry.kind.value} "
                f"node={entry.node_id} token={entry.token_id} {entry.details}"
            )
