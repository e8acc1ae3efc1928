# apishield/core/service_base.py
"""
Base service class for backing services (currently Redis).

Services inherit from BaseService to get consistent:
- Lazy initialization
- Error handling
- Health checks
- Resource cleanup
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
import logging

from apishield.core.exceptions import ServiceError, PolicyConfigError

# Type variable for service configuration
ConfigType = TypeVar('ConfigType')


class ServiceConfig:
    """Base configuration class for services"""
    pass


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base class for backing services.

    Provides:
    - Lazy initialization pattern
    - Consistent error handling
    - Health check interface
    - Resource management
    """

    def __init__(
        self,
        config: Optional[ConfigType] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the service.

        Args:
            config: Service-specific configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._client = None

        self.service_name = self.__class__.__name__

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Create and connect the underlying client.

        Raises:
            PolicyConfigError: If configuration is invalid
            ServiceError: If initialization fails
        """
        pass

    async def initialize(self) -> None:
        """
        Initialize the service (lazy loading pattern).

        This method is idempotent - multiple calls are safe.
        """
        if self._initialized:
            self.logger.debug(f"{self.service_name} already initialized")
            return

        try:
            self.logger.info(f"Initializing {self.service_name}...")

            self._validate_config()
            self._client = await self._initialize_client()
            self._initialized = True

            self.logger.info(f"{self.service_name} initialized successfully")

        except (PolicyConfigError, ServiceError):
            # Already carry their context
            raise
        except Exception as e:
            error_msg = f"Failed to initialize {self.service_name}"
            self.logger.error(error_msg, exc_info=True)
            raise ServiceError(
                error_msg,
                service_name=self.service_name,
                operation="initialize",
                details={'original_error': str(e), 'error_type': type(e).__name__}
            ) from e

    def _validate_config(self) -> None:
        """
        Validate service configuration.

        Override this method to add service-specific validation.
        """
        if self.config is None:
            self.logger.debug(f"No configuration provided for {self.service_name}")

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the service.

        Returns:
            Dict containing:
            - healthy: bool indicating if service is healthy
            - status: string status message
            - details: optional additional information
        """
        pass

    @property
    def is_initialized(self) -> bool:
        """Check if the service is initialized"""
        return self._initialized

    @property
    def client(self) -> Any:
        """
        Get the underlying client.

        Raises:
            ServiceError: If service is not initialized or has no connection
        """
        if not self._initialized or self._client is None:
            raise ServiceError(
                f"{self.service_name} is not available. Call initialize() first.",
                service_name=self.service_name
            )
        return self._client

    async def shutdown(self) -> None:
        """
        Gracefully shutdown the service and cleanup resources.

        Errors during cleanup are logged, not raised, so shutdown of the
        remaining components continues.
        """
        if not self._initialized:
            return

        try:
            self.logger.info(f"Shutting down {self.service_name}...")
            await self._cleanup()
            self.logger.info(f"{self.service_name} shut down successfully")
        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
        finally:
            self._client = None
            self._initialized = False

    async def _cleanup(self) -> None:
        """
        Service-specific cleanup logic.

        Override this method to add cleanup for your service.
        """
        pass

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "initialized": self._initialized,
        }
