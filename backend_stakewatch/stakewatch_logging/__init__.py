"""
Structured logging for Backend Stakewatch.

JSON logs with timestamp, actor, event_type and reconciliation context.
Use get_logger() in all modules for aggregation-friendly output.
"""

from backend_stakewatch.stakewatch_logging.logger import bind_actor, configure_structlog, get_logger, run_context

__all__ = ["bind_actor", "configure_structlog", "get_logger", "run_context"]
