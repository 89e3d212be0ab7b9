import enum

from sqlalchemy import func, select

from models import AuditLog


class AuditAction(str, enum.Enum):
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    USER_REGISTER = "USER_REGISTER"
    USER_UPDATE = "USER_UPDATE"

    FILE_UPLOAD = "FILE_UPLOAD"
    FILE_DOWNLOAD = "FILE_DOWNLOAD"
    FILE_DELETE = "FILE_DELETE"
    FILE_RESTORE = "FILE_RESTORE"
    FILE_UPDATE = "FILE_UPDATE"
    FILE_VIRUS_DETECTED = "FILE_VIRUS_DETECTED"

    FOLDER_CREATE = "FOLDER_CREATE"
    FOLDER_DELETE = "FOLDER_DELETE"
    FOLDER_RESTORE = "FOLDER_RESTORE"
    FOLDER_UPDATE = "FOLDER_UPDATE"

    SHARE_CREATE = "SHARE_CREATE"
    SHARE_DELETE = "SHARE_DELETE"
    SHARE_ACCESS = "SHARE_ACCESS"

    TRASH_EMPTY = "TRASH_EMPTY"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


def record(session, account_id, action, target_type=None, target_id=None, detail=None):
    """Append an audit entry to the caller's transaction."""
    entry = AuditLog(
        account_id=account_id,
        action=AuditAction(action).value,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        detail=detail,
    )
    session.add(entry)
    return entry


def list_for_account(session, account_id, page=1, limit=50):
    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    query = select(AuditLog).where(AuditLog.account_id == account_id)
    total = session.execute(
        select(func.count()).select_from(query.subquery())
    ).scalar_one()
    logs = session.execute(
        query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        "logs": [log.to_dict() for log in logs],
        "total": total,
        "page": page,
        "limit": limit,
        "hasMore": (page - 1) * limit + len(logs) < total,
    }
