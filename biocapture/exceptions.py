"""
Error Handling System

Errors raised across the capture layers. Each error carries a stable
error_code and a details dict so callers (UI, logs) get consistent output.

Recoverability:
    NoValidCropError      - recoverable, the frame is dropped silently
    DetectorFailureError  - recoverable, surfaces as a validation warning
    CaptureDeviceError    - fatal for the current attempt (Error state)
    StorageError          - propagated to the caller, state does not advance
"""
import logging

logger = logging.getLogger(__name__)


class BiocaptureError(Exception):
    """Base exception for capture errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class NoValidCropError(BiocaptureError):
    """Mapped crop rectangle is empty after clamping"""
    def __init__(self, rect=None):
        super().__init__(
            message="Capture window does not map to a valid sensor region",
            error_code="NO_VALID_CROP",
            details={"rect": rect},
        )


class DetectorFailureError(BiocaptureError):
    """A landmark detector or quality checker failed on a frame"""
    def __init__(self, component, reason=None):
        super().__init__(
            message=f"{component} failed to process the frame",
            error_code="DETECTOR_FAILURE",
            details={"component": component, "reason": reason},
        )


class CaptureDeviceError(BiocaptureError):
    """Camera disconnected or sensor error"""
    def __init__(self, reason=None):
        super().__init__(
            message=f"Camera capture failed: {reason}" if reason else "Camera capture failed",
            error_code="CAPTURE_DEVICE_FAILURE",
            details={
                "reason": reason,
                "suggestion": "Check the camera connection and restart the capture",
            },
        )


class StorageError(BiocaptureError):
    """Writing, reading or deleting a stored frame or session failed"""
    def __init__(self, operation, path=None, reason=None):
        super().__init__(
            message=f"Storage {operation} failed" + (f" for {path}" if path else ""),
            error_code="STORAGE_FAILURE",
            details={"operation": operation, "path": str(path) if path else None, "reason": reason},
        )


class ConfigurationError(BiocaptureError):
    """Invalid configuration value"""
    def __init__(self, key, value=None, reason=None):
        super().__init__(
            message=f"Invalid configuration for '{key}': {value!r}",
            error_code="INVALID_CONFIG",
            details={"key": key, "value": value, "reason": reason},
        )


def log_error(error, level=logging.ERROR):
    """Log a BiocaptureError with its code and details"""
    logger.log(level, f"[{error.error_code}] {error.message} | details={error.details}")
