"""
Standardized error handling for the time-lapse appliance.

Every failure raised by the services derives from TimelapseError and carries a
``kind`` from a small closed taxonomy. The same exceptions drive the REST error
responses, the WebSocket error notifications and the encoder's terminal events.

Error Response Format:
    {
        "status": "error",
        "message": "User-friendly error message",
        "error_code": "SECURITY",
        "kind": "security",
        "details": {
            "path": "/etc"
        },
        "timestamp": "2025-06-25T13:43:41.407000"
    }

Success Response Format:
    {
        "status": "success",
        "data": { ... },
        "message": "Optional success message"
    }

Kinds:
    validation  caller-supplied value out of range or of the wrong type
    security    path outside an allowed root or a forbidden filename
    resource    disk, memory, image count, duration or size limit exceeded
    process     helper exited non-zero, failed to spawn, timed out or was cancelled
    filesystem  I/O failure on captures, videos or the temp directory
    state       request does not apply to the current state (informational)
"""

import re
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = structlog.get_logger().bind(component="errors")


# =============================================================================
# Base Exception Class
# =============================================================================

class TimelapseError(Exception):
    """
    Base exception for all appliance errors.

    Attributes:
        message: User-friendly error message
        status_code: HTTP status code for the error
        error_code: Machine-readable error code for frontend handling
        details: Additional context as dictionary
        kind: Taxonomy tag (validation, security, resource, process, filesystem, state)
    """

    kind = "internal"

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self._generate_error_code()
        self.details = details or {}
        super().__init__(message)

    def _generate_error_code(self) -> str:
        """
        Generate error code from class name.

        Example: EncodeCancelledError -> ENCODE_CANCELLED
        """
        name = self.__class__.__name__
        if name.endswith('Error'):
            name = name[:-5]
        s1 = re.sub('(.)([A-Z][a-z]+)', r'\1_\2', name)
        return re.sub('([a-z0-9])([A-Z])', r'\1_\2', s1).upper()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary format."""
        return {
            "status": "error",
            "message": self.message,
            "error_code": self.error_code,
            "kind": self.kind,
            "details": self.details,
            "timestamp": datetime.now().isoformat()
        }


# =============================================================================
# Taxonomy
# =============================================================================

class ValidationError(TimelapseError):
    """Input validation failed."""

    kind = "validation"

    def __init__(self, field: str, error: str, value: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        """
        Initialize ValidationError.

        Args:
            field: Field that failed validation
            error: Validation error message
            value: Offending value, if it is safe to echo back
            details: Additional context
        """
        error_details = {"field": field, "error": error}
        if value is not None:
            error_details["value"] = value
        if details:
            error_details.update(details)

        self.field = field
        super().__init__(
            message=f"Validation failed for '{field}': {error}",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=error_details
        )


class SecurityError(TimelapseError):
    """Path outside an allowed root, unsafe characters or forbidden filename."""

    kind = "security"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        error_details = {"reason": reason}
        if details:
            error_details.update(details)

        super().__init__(
            message=f"Security violation: {reason}",
            status_code=status.HTTP_403_FORBIDDEN,
            details=error_details
        )


class ResourceError(TimelapseError):
    """A disk, memory, image-count, duration or size limit was exceeded."""

    kind = "resource"

    def __init__(self, resource: str, reason: str, limit: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        """
        Initialize ResourceError.

        Args:
            resource: Name of the limited resource (disk, memory, images, ...)
            reason: Human readable description
            limit: The configured limit that was hit
            details: Additional context
        """
        error_details = {"resource": resource, "reason": reason}
        if limit is not None:
            error_details["limit"] = limit
        if details:
            error_details.update(details)

        self.resource = resource
        super().__init__(
            message=reason,
            status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
            details=error_details
        )


class ProcessError(TimelapseError):
    """A helper process could not spawn, exited non-zero or timed out."""

    kind = "process"

    def __init__(self, message: str, exit_code: Optional[int] = None,
                 signal: Optional[str] = None, stderr: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        error_details: Dict[str, Any] = {}
        if exit_code is not None:
            error_details["exit_code"] = exit_code
        if signal:
            error_details["signal"] = signal
        if stderr:
            # Only the tail is useful and the full buffer can be large
            error_details["stderr"] = stderr[-500:]
        if details:
            error_details.update(details)

        self.exit_code = exit_code
        self.signal = signal
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=error_details
        )


class EncodeCancelledError(ProcessError):
    """The encoder was terminated on user request."""

    def __init__(self, correlation_id: Optional[str] = None):
        super().__init__(
            message="Video generation was cancelled",
            details={"correlation_id": correlation_id} if correlation_id else None
        )


class FilesystemError(TimelapseError):
    """I/O failure on the captures, videos or temp directory."""

    kind = "filesystem"

    def __init__(self, operation: str, path: str, reason: str,
                 details: Optional[Dict[str, Any]] = None):
        error_details = {"operation": operation, "path": path, "reason": reason}
        if details:
            error_details.update(details)

        super().__init__(
            message=f"Filesystem {operation} failed for '{path}': {reason}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=error_details
        )


class StateError(TimelapseError):
    """The requested action does not apply in the current state."""

    kind = "state"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details
        )


class NotFoundError(TimelapseError):
    """Generic resource not found error."""

    kind = "filesystem"

    def __init__(self, resource_type: str, resource_id: str, details: Optional[Dict[str, Any]] = None):
        error_details = {
            "resource_type": resource_type,
            "resource_id": resource_id
        }
        if details:
            error_details.update(details)

        super().__init__(
            message=f"{resource_type.capitalize()} not found: {resource_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            details=error_details
        )


# =============================================================================
# Response Helper Functions
# =============================================================================

def success_response(
    data: Any,
    status_code: int = status.HTTP_200_OK,
    message: Optional[str] = None
) -> JSONResponse:
    """
    Create a standardized success response.

    Args:
        data: Response data (dict, list, or Pydantic model)
        status_code: HTTP status code (default: 200)
        message: Optional success message
    """
    if hasattr(data, 'model_dump'):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if hasattr(item, 'model_dump') else item
                for item in data]

    content = {
        "status": "success",
        "data": data
    }

    if message:
        content["message"] = message

    return JSONResponse(status_code=status_code, content=content)


# =============================================================================
# Exception Handlers
# =============================================================================

async def timelapse_exception_handler(request: Request, exc: TimelapseError) -> JSONResponse:
    """Global exception handler for TimelapseError and subclasses."""
    log = logger.error if exc.kind == "security" else logger.warning
    log(
        "Request failed",
        error_code=exc.error_code,
        kind=exc.kind,
        status_code=exc.status_code,
        message=exc.message,
        details=exc.details,
        path=request.url.path,
        http_method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unexpected errors.

    Returns a standardized error response without exposing internal details.
    """
    logger.error(
        "Unhandled exception",
        error_type=type(exc).__name__,
        error=str(exc),
        path=request.url.path,
        http_method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": "error",
            "message": "An unexpected error occurred. Please try again later.",
            "error_code": "INTERNAL_SERVER_ERROR",
            "kind": "internal",
            "details": {},
            "timestamp": datetime.now().isoformat()
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert FastAPI's HTTPException to the standardized format."""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
        http_method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": "error",
            "message": exc.detail,
            "error_code": f"HTTP_{exc.status_code}",
            "details": {},
            "timestamp": datetime.now().isoformat()
        }
    )
