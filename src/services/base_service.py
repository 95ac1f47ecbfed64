"""
Base service class for common service patterns.

Provides standardized initialization and lifecycle management.
"""

from abc import ABC

import structlog

logger = structlog.get_logger().bind(component="BaseService")


class BaseService(ABC):
    """
    Base class for long-lived services.

    Usage:
        class MyService(BaseService):
            async def initialize(self):
                await super().initialize()  # Marks as initialized
                await self._prepare_directories()

            async def shutdown(self):
                await self._stop_helpers()
                await super().shutdown()  # Marks as not initialized
    """

    def __init__(self):
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize service.

        Always call super().initialize() to mark service as initialized.
        """
        if self._initialized:
            logger.debug("Service already initialized", service=self.__class__.__name__)
            return

        self._initialized = True
        logger.debug("Service initialized", service=self.__class__.__name__)

    async def shutdown(self) -> None:
        """
        Shutdown service and cleanup resources.

        Always call super().shutdown() to mark service as not initialized.
        """
        if not self._initialized:
            logger.debug("Service already shutdown", service=self.__class__.__name__)
            return

        self._initialized = False
        logger.debug("Service shutdown", service=self.__class__.__name__)

    @property
    def is_initialized(self) -> bool:
        """Check if service is initialized."""
        return self._initialized
