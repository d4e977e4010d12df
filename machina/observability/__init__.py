"""
Observability: structured logging with execution context propagation.

- Execution context carried in a ContextVar across asyncio tasks
- Structured JSON logging for production
- Human-readable logging for development
"""

from machina.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
