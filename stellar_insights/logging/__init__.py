"""
Structured logging for Stellar Insights.

JSON logs with timestamp, event_type and component context (task, anchor_id, epoch).
Use get_logger() in all modules for aggregation-friendly output.
"""

from stellar_insights.logging.logger import bind_task, get_logger

__all__ = ["bind_task", "get_logger"]
