"""
Exceptions raised by the import pipeline.

Routers translate these into HTTP responses; workers translate anything that
escapes a phase into a ``failed`` job.
"""
from typing import Iterable, Optional


class ImportPipelineError(Exception):
    """Base exception for import pipeline failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ImportJobNotFoundError(ImportPipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} not found")


class InvalidJobStateError(ImportPipelineError):
    """Raised when an operation is not permitted from the job's current status."""

    def __init__(
        self,
        job_id: str,
        current_status: Optional[str],
        allowed: Iterable[str],
        operation: str,
    ):
        self.job_id = job_id
        self.current_status = current_status
        self.allowed = sorted(allowed)
        self.operation = operation
        super().__init__(
            f"Cannot {operation} import job {job_id} while it is '{current_status}' "
            f"(allowed: {', '.join(self.allowed)})"
        )


class InvalidConfigurationError(ImportPipelineError):
    """Raised when mapping, assignment or duplicate options are incomplete or inconsistent."""


class UnsupportedFileError(ImportPipelineError):
    """Raised for uploads that are not CSV/XLSX."""


class FileTooLargeError(UnsupportedFileError):
    """Raised for uploads above ``upload_max_file_size_mb``."""


class FileParseError(ImportPipelineError):
    """Raised when a stored file cannot be read as a spreadsheet."""


class JobCancelled(Exception):
    """Signal used by workers to unwind after observing a cancellation."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} was cancelled")
