from typing import Optional, Dict, Any


class CostLensException(Exception):
    """Base exception for all CostLens errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationError(CostLensException):
    """Raised when application configuration is invalid or missing."""
    pass


class UserRequiredError(CostLensException):
    """Raised when an operation has no resolvable owning user."""
    def __init__(self, message: str = "User ID is required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="user_required", details=details)


class ResourceNotFoundError(CostLensException):
    """Raised when a requested record (job, anomaly, recommendation) is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class JobNotFoundError(ResourceNotFoundError):
    """Raised when an ingestion job id does not resolve."""
    def __init__(self, job_id: Any):
        super().__init__(
            "Ingestion job not found",
            code="job_not_found",
            details={"job_id": str(job_id)}
        )


class IngestionError(CostLensException):
    """Raised when a CSV stream fails at the file or parser level. The job is marked failed."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="ingestion_failed", details=details)
