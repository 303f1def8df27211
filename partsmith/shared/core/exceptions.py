from typing import Optional, Dict, Any

class PartsmithException(Exception):
    """Base exception for all partsmith errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

class ConfigurationError(PartsmithException):
    """Raised when application or partition-set configuration is invalid."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)

class ConfigurationMissingError(PartsmithException):
    """Raised when an operation targets a parent table with no partition-set configuration."""
    def __init__(self, message: str, code: str = "configuration_missing", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)

class InvalidPartitionConfigError(PartsmithException):
    """Raised when a partition-set configuration is rejected at write time."""
    def __init__(self, message: str, code: str = "invalid_partition_config", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)

class InvalidPartitionTypeError(InvalidPartitionConfigError):
    """Raised for an unknown partitioning mode."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_partition_type", details=details)

class InvalidIntervalError(InvalidPartitionConfigError):
    """Raised for an interval that cannot drive the configured mode."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_interval", details=details)

class InvalidIdentifierError(InvalidPartitionConfigError):
    """Raised when a table, schema or column name is not a plain SQL identifier."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_identifier", details=details)

class SubPartitionTemplateMismatchError(PartsmithException):
    """Raised when sibling sub-parents would carry different templates."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="subpartition_template_mismatch", status_code=409, details=details)

class InheritanceCycleError(PartsmithException):
    """Raised when an inheritance walk exceeds the depth cap or revisits a table."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="inheritance_cycle", status_code=500, details=details)

class MultiLevelUndoBlockedError(PartsmithException):
    """Raised when undo targets a parent whose children are partition sets themselves."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="multi_level_undo_blocked", status_code=409, details=details)

class LockNotAvailableError(PartsmithException):
    """Raised when a NOWAIT row or table lock cannot be taken."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="lock_not_available", status_code=423, details=details)

class DateTimeRangeOverflowError(PartsmithException):
    """Raised when boundary arithmetic leaves the representable timestamp range."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="datetime_range_overflow", status_code=400, details=details)

class InconsistentPartitionDataError(PartsmithException):
    """Raised when stored data runs past the newest child of an id partition set."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="inconsistent_partition_data", status_code=409, details=details)

class CustomRangeNotFoundError(PartsmithException):
    """Raised when no custom interval range covers a timestamp."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="custom_range_not_found", status_code=404, details=details)
