import logging

from sqlalchemy import func, select

import audit
from audit import AuditAction
from errors import NotFound
from folders import ensure_name_available, get_active_folder, validate_name
from models import File

logger = logging.getLogger(__name__)

_UNSET = object()


def get_active_file(session, account_id, file_id):
    file = session.execute(
        select(File).where(
            File.id == file_id,
            File.account_id == account_id,
            File.trashed_at.is_(None),
        )
    ).scalar_one_or_none()
    if file is None:
        raise NotFound("File not found")
    return file


class FileService:
    def __init__(self, session_factory, store):
        self.Session = session_factory
        self.store = store

    def get(self, account_id, file_id):
        with self.Session() as session:
            return get_active_file(session, account_id, file_id)

    def list_files(self, account_id, folder_id=None, page=1, limit=20):
        page = max(page, 1)
        limit = min(max(limit, 1), 200)
        with self.Session() as session:
            if folder_id is not None:
                get_active_folder(session, account_id, folder_id)
            query = select(File).where(
                File.account_id == account_id,
                File.folder_id.is_(None) if folder_id is None else File.folder_id == folder_id,
                File.trashed_at.is_(None),
            )
            total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
            skip = (page - 1) * limit
            files = session.execute(
                query.order_by(File.created_at.desc(), File.id.desc()).offset(skip).limit(limit)
            ).scalars().all()
            return {
                "items": [f.to_dict() for f in files],
                "total": total,
                "page": page,
                "limit": limit,
                "hasMore": skip + limit < total,
            }

    def update(self, account_id, file_id, name=None, folder_id=_UNSET):
        """Rename and/or move a file. ``folder_id=None`` moves it to the root."""
        with self.Session() as session:
            file = get_active_file(session, account_id, file_id)
            new_name = validate_name(name) if name is not None else file.name
            new_folder = file.folder_id if folder_id is _UNSET else folder_id

            if new_name == file.name and new_folder == file.folder_id:
                return file
            if new_folder is not None and new_folder != file.folder_id:
                get_active_folder(session, account_id, new_folder)
            ensure_name_available(session, account_id, new_folder, new_name, exclude_file_id=file.id)

            file.name = new_name
            file.folder_id = new_folder
            audit.record(session, account_id, AuditAction.FILE_UPDATE, "file", file.id,
                         {"name": new_name, "folderId": new_folder})
            session.commit()
            return file

    def download_url(self, account_id, file_id):
        """Owners may download files the scanner has not cleared yet; the status is reported."""
        with self.Session() as session:
            file = get_active_file(session, account_id, file_id)
            url = self.store.presign_download_url(file.object_key, filename=file.name)
            audit.record(session, account_id, AuditAction.FILE_DOWNLOAD, "file", file.id)
            session.commit()
            return {
                "downloadUrl": url,
                "fileName": file.name,
                "contentType": file.mime,
                "scanStatus": file.scan_status.value,
            }
