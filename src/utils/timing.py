"""
Timing utilities for startup and job reporting.
"""

import time
from contextlib import asynccontextmanager
from typing import Dict

import structlog

logger = structlog.get_logger().bind(component="timing")


@asynccontextmanager
async def timed_async_operation(operation_name: str, log_level: str = "info"):
    """
    Async context manager for timing asynchronous operations.

    Usage:
        async with timed_async_operation("Config store initialization"):
            await config_store.initialize()
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        log_func = getattr(logger, log_level, logger.info)
        log_func(
            operation_name,
            duration_ms=round(duration * 1000, 2),
            duration_seconds=round(duration, 2)
        )


class StartupTimer:
    """
    Track startup performance across the lifespan's initialization steps.

    Usage:
        timer = StartupTimer()
        timer.start("Encoder")
        # ... encoder initialization ...
        timer.end("Encoder")

        timer.report()
    """

    def __init__(self):
        self.operations: Dict[str, float] = {}
        self.start_times: Dict[str, float] = {}
        self.total_start_time = time.perf_counter()

    def start(self, operation_name: str):
        """Start timing an operation."""
        self.start_times[operation_name] = time.perf_counter()

    def end(self, operation_name: str):
        """End timing an operation."""
        if operation_name not in self.start_times:
            logger.warning("No start time found for operation", operation=operation_name)
            return

        duration = time.perf_counter() - self.start_times[operation_name]
        self.operations[operation_name] = duration

        logger.debug(
            operation_name,
            duration_ms=round(duration * 1000, 2),
            duration_seconds=round(duration, 2)
        )

    def report(self):
        """Log the startup performance report, slowest step first."""
        total_duration = self.get_total_duration()

        sorted_ops = sorted(self.operations.items(), key=lambda x: x[1], reverse=True)
        for operation_name, duration in sorted_ops:
            percentage = (duration / total_duration) * 100 if total_duration > 0 else 0
            logger.info(
                "Startup step",
                operation=operation_name,
                duration_ms=round(duration * 1000, 2),
                percentage=round(percentage, 1)
            )

        logger.info(
            "Total startup time",
            total_ms=round(total_duration * 1000, 2),
            total_seconds=round(total_duration, 2)
        )

    def get_total_duration(self) -> float:
        """Get total duration since timer was created."""
        return time.perf_counter() - self.total_start_time
