"""Domain errors, each with a stable ``code`` and an HTTP status."""


class StorageError(Exception):
    code = "STORAGE_ERROR"
    status_code = 500
    default_message = "Storage operation failed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class InvalidRequest(StorageError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid request"


class NotFound(StorageError):
    # Absent and not-owned are reported identically.
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class QuotaExceeded(StorageError):
    code = "QUOTA_EXCEEDED"
    status_code = 413
    default_message = "Storage quota exceeded"


class NameConflict(StorageError):
    code = "NAME_CONFLICT"
    status_code = 409
    default_message = "An item with this name already exists in this location"


class CyclicMove(StorageError):
    code = "CYCLIC_MOVE"
    status_code = 409
    default_message = "Cannot move a folder into itself or one of its descendants"


class Expired(StorageError):
    code = "EXPIRED"
    status_code = 410
    default_message = "Share has expired"


class LimitReached(StorageError):
    code = "LIMIT_REACHED"
    status_code = 403
    default_message = "Download limit reached"


class AccessDenied(StorageError):
    code = "ACCESS_DENIED"
    status_code = 403
    default_message = "Access denied"


class ScanPending(StorageError):
    code = "SCAN_PENDING"
    status_code = 409
    default_message = "File has not been verified by the malware scanner yet"


class ScanFailed(StorageError):
    code = "SCAN_FAILED"
    status_code = 502
    default_message = "Malware scan could not be completed"


class UpstreamUnavailable(StorageError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
    default_message = "Storage backend unavailable"


class TreeDepthExceeded(StorageError):
    code = "TREE_DEPTH_EXCEEDED"
    status_code = 500
    default_message = "Folder hierarchy is deeper than allowed"


# Failures the scan queue retries with backoff
RETRYABLE_SCAN_ERRORS = (UpstreamUnavailable, ScanFailed)
