"""
Shared dependencies and helpers for the API routers.
"""
from fastapi import HTTPException

from leadflow.domain.imports.errors import (
    FileParseError,
    FileTooLargeError,
    ImportJobNotFoundError,
    ImportPipelineError,
    InvalidConfigurationError,
    InvalidJobStateError,
    UnsupportedFileError,
)
from leadflow.integrations.storage import StorageError


def to_http_exception(exc: Exception) -> HTTPException:
    """
    Translate a pipeline or storage error into the HTTP error it surfaces as.

    Parameters:
    - exc: Exception raised by a service call

    Returns:
    - HTTPException carrying the status code and a readable detail
    """
    if isinstance(exc, ImportJobNotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, InvalidJobStateError):
        return HTTPException(
            status_code=409,
            detail={
                "message": exc.message,
                "current_status": exc.current_status,
                "allowed_statuses": exc.allowed,
            },
        )
    if isinstance(exc, FileTooLargeError):
        return HTTPException(status_code=413, detail=exc.message)
    if isinstance(exc, UnsupportedFileError):
        return HTTPException(status_code=415, detail=exc.message)
    if isinstance(exc, (InvalidConfigurationError, FileParseError)):
        return HTTPException(status_code=422, detail=exc.message)
    if isinstance(exc, ImportPipelineError):
        return HTTPException(status_code=400, detail=exc.message)
    if isinstance(exc, StorageError):
        return HTTPException(status_code=502, detail=f"Storage error: {str(exc)}")
    return HTTPException(status_code=500, detail=str(exc))
