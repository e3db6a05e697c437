"""Logging, metrics and usage accounting."""

from .observability import PipelineMetrics, TimedSection, configure_logging, get_logger
from .usage import UsageMeter

__all__ = ["PipelineMetrics", "TimedSection", "UsageMeter", "configure_logging", "get_logger"]
