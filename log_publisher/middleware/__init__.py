"""HTTP request instrumentation."""
from .instrumentor import RequestInstrumentor, current_request_context

__all__ = ["RequestInstrumentor", "current_request_context"]
