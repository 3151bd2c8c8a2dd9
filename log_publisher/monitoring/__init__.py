"""Monitoring and observability package."""
from . import metrics
from .logging import setup_logging

__all__ = ["metrics", "setup_logging"]
