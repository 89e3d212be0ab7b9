import enum
from datetime import datetime, timezone

from flask_login import UserMixin
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Plan(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"


class ScanStatus(str, enum.Enum):
    PENDING = "pending"
    CLEAN = "clean"
    INFECTED = "infected"


class UploadState(str, enum.Enum):
    # COMPLETED and ABORTED are terminal; the session row is deleted on entry.
    INITIATED = "initiated"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ScanJobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DEAD = "dead"


class Account(UserMixin, Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=True)
    password_hash = Column(String(255), nullable=False)
    plan = Column(Enum(Plan, native_enum=False, length=16), default=Plan.FREE, nullable=False)
    used_bytes = Column(BigInteger, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    files = relationship("File", back_populates="account", cascade="all, delete-orphan")
    folders = relationship("Folder", back_populates="account", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "displayName": self.display_name,
            "plan": self.plan.value,
            "usedBytes": self.used_bytes,
            "createdAt": _iso(self.created_at),
        }


class Folder(Base):
    __tablename__ = "folders"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("folders.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True, index=True)

    account = relationship("Account", back_populates="folders")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "parentId": self.parent_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "deletedAt": _iso(self.deleted_at),
        }


class File(Base):
    __tablename__ = "files"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    # Weak reference: folder purges re-home files instead of cascading.
    folder_id = Column(Integer, ForeignKey("folders.id"), nullable=True, index=True)
    name = Column(String(512), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    mime = Column(String(255), nullable=False, default="application/octet-stream")
    object_key = Column(String(1024), unique=True, nullable=False)
    etag = Column(String(255), nullable=True)
    version = Column(Integer, default=1, nullable=False)
    scan_status = Column(
        Enum(ScanStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=ScanStatus.PENDING,
        nullable=False,
    )
    virus_name = Column(String(255), nullable=True)
    scan_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    trashed_at = Column(DateTime, nullable=True, index=True)

    account = relationship("Account", back_populates="files")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "folderId": self.folder_id,
            "sizeBytes": self.size_bytes,
            "mime": self.mime,
            "etag": self.etag,
            "version": self.version,
            "scanStatus": self.scan_status.value,
            "virusName": self.virus_name,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "trashedAt": _iso(self.trashed_at),
        }


class UploadSession(Base):
    __tablename__ = "upload_sessions"
    # Multipart upload id issued by the object store
    id = Column(String(1024), primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    folder_id = Column(Integer, ForeignKey("folders.id"), nullable=True)
    name = Column(String(512), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    mime = Column(String(255), nullable=False)
    object_key = Column(String(1024), unique=True, nullable=False)
    part_size = Column(BigInteger, nullable=False)
    part_count = Column(Integer, nullable=False)
    state = Column(
        Enum(UploadState, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=UploadState.INITIATED,
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class Share(Base):
    __tablename__ = "shares"
    # Capability token handed out in share links
    id = Column(String(64), primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    file_id = Column(Integer, ForeignKey("files.id"), nullable=True, index=True)
    folder_id = Column(Integer, ForeignKey("folders.id"), nullable=True, index=True)
    password_hash = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    max_downloads = Column(Integer, nullable=True)
    download_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        # password_hash is never exposed
        return {
            "id": self.id,
            "fileId": self.file_id,
            "folderId": self.folder_id,
            "requiresPassword": self.password_hash is not None,
            "expiresAt": _iso(self.expires_at),
            "maxDownloads": self.max_downloads,
            "downloadCount": self.download_count,
            "createdAt": _iso(self.created_at),
        }


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(64), nullable=False)
    target_type = Column(String(32), nullable=True)
    target_id = Column(String(64), nullable=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "targetType": self.target_type,
            "targetId": self.target_id,
            "detail": self.detail,
            "createdAt": _iso(self.created_at),
        }


class ScanJob(Base):
    __tablename__ = "scan_jobs"
    id = Column(Integer, primary_key=True)
    file_id = Column(Integer, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    object_key = Column(String(1024), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    status = Column(
        Enum(ScanJobStatus, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=ScanJobStatus.QUEUED,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    available_at = Column(DateTime, default=utcnow, nullable=False)
    locked_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_scan_jobs_status_available", "status", "available_at"),)


def _iso(value):
    return value.isoformat() if value is not None else None
