from __future__ import annotations


class KanbanError(Exception):
    pass


class ValidationError(KanbanError):
    pass


class NotFoundError(KanbanError):
    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class ConsistencyError(KanbanError):
    """Raised when a reconciliation report shows membership violations."""

    def __init__(self, report: dict) -> None:
        self.report = report
        counts = {k: len(v) for k, v in report.items() if isinstance(v, list) and v}
        super().__init__(f"board membership is inconsistent: {counts}")


class StoreUnavailableError(KanbanError):
    """Raised when DynamoDB keeps deferring a request past the retry budget."""
