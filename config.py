import os

GIB = 1024 * 1024 * 1024


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///cloudvault.db")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Shared secret for the internal (worker/admin) endpoints
    API_SECRET = os.getenv("API_SECRET", "")

    # Object store (S3 / MinIO)
    S3_ENDPOINT = os.getenv("S3_ENDPOINT")
    S3_REGION = os.getenv("S3_REGION", "us-east-1")
    S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")
    S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")
    S3_BUCKET = os.getenv("S3_BUCKET", "userfiles")
    S3_FORCE_PATH_STYLE = os.getenv("S3_FORCE_PATH_STYLE", "true").lower() == "true"
    PRESIGN_TTL_SECONDS = int(os.getenv("PRESIGN_TTL_SECONDS", "3600"))

    # Quota and uploads
    MAX_FILE_SIZE_BYTES = int(os.getenv("MAX_FILE_SIZE_BYTES", str(5 * GIB)))
    FREE_TIER_QUOTA_BYTES = int(os.getenv("FREE_TIER_QUOTA_BYTES", str(15 * GIB)))
    PRO_TIER_QUOTA_BYTES = int(os.getenv("PRO_TIER_QUOTA_BYTES", str(100 * GIB)))
    UPLOAD_SESSION_TTL_SECONDS = int(os.getenv("UPLOAD_SESSION_TTL_SECONDS", str(24 * 3600)))
    TRASH_RETENTION_DAYS = int(os.getenv("TRASH_RETENTION_DAYS", "30"))

    # Malware scanning
    CLAMAV_HOST = os.getenv("CLAMAV_HOST", "localhost")
    CLAMAV_PORT = int(os.getenv("CLAMAV_PORT", "3310"))
    CLAMAV_TIMEOUT_SECONDS = float(os.getenv("CLAMAV_TIMEOUT_SECONDS", "30"))
    SCAN_DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("SCAN_DOWNLOAD_TIMEOUT_SECONDS", "60"))
    SCAN_CONCURRENCY = int(os.getenv("SCAN_CONCURRENCY", "5"))
    SCAN_MAX_ATTEMPTS = int(os.getenv("SCAN_MAX_ATTEMPTS", "5"))
    SCAN_RETRY_BASE_SECONDS = int(os.getenv("SCAN_RETRY_BASE_SECONDS", "30"))
    SCAN_RETRY_MAX_SECONDS = int(os.getenv("SCAN_RETRY_MAX_SECONDS", "3600"))
    SCAN_VISIBILITY_TIMEOUT_SECONDS = int(os.getenv("SCAN_VISIBILITY_TIMEOUT_SECONDS", "600"))
    SCAN_POLL_INTERVAL_SECONDS = float(os.getenv("SCAN_POLL_INTERVAL_SECONDS", "2"))
