"""
Ledger ingestion: Horizon records to canonical records, one cursor per task.
"""

from stellar_insights.ingestion.coordinator import (
    TASKS,
    BatchResult,
    IngestionCoordinator,
    IngestionTask,
    LedgerSource,
)

__all__ = ["TASKS", "BatchResult", "IngestionCoordinator", "IngestionTask", "LedgerSource"]
