"""Soft-delete, restore and hard-purge. Quota is released once, when a file is trashed."""

import logging
from collections import deque
from datetime import timedelta

from sqlalchemy import delete, select, update

import audit
from audit import AuditAction
from errors import NotFound, UpstreamUnavailable
from files import get_active_file
from folders import (
    MAX_TREE_DEPTH,
    available_name,
    ensure_name_available,
    get_active_folder,
    soft_delete_subtree,
)
from models import File, Folder, ScanJob, ScanStatus, Share, UploadSession, utcnow

logger = logging.getLogger(__name__)


class TrashLifecycle:
    def __init__(self, session_factory, store, ledger, retention_days=30):
        self.Session = session_factory
        self.store = store
        self.ledger = ledger
        self.retention_days = retention_days

    def trash_file(self, account_id, file_id):
        with self.Session() as session:
            file = get_active_file(session, account_id, file_id)
            if not self._stamp_trashed(session, file.id, utcnow()):
                raise NotFound("File not found")
            self.ledger.release(session, account_id, file.size_bytes)
            audit.record(session, account_id, AuditAction.FILE_DELETE, "file", file.id,
                         {"name": file.name, "sizeBytes": file.size_bytes})
            session.commit()
            session.refresh(file)
            return file

    def restore_file(self, account_id, file_id):
        with self.Session() as session:
            file = session.execute(
                select(File).where(
                    File.id == file_id,
                    File.account_id == account_id,
                    File.trashed_at.is_not(None),
                )
            ).scalar_one_or_none()
            # Quarantined files stay in the trash until purged.
            if file is None or file.scan_status == ScanStatus.INFECTED:
                raise NotFound("File not found in trash")

            folder_id = self._restore_target(session, account_id, file.folder_id)
            ensure_name_available(session, account_id, folder_id, file.name, exclude_file_id=file.id)

            # Raises QuotaExceeded; the file then stays trashed.
            self.ledger.reserve(session, account_id, file.size_bytes)
            restored = session.execute(
                update(File)
                .where(File.id == file.id, File.trashed_at.is_not(None))
                .values(trashed_at=None, folder_id=folder_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not restored:
                raise NotFound("File not found in trash")

            audit.record(session, account_id, AuditAction.FILE_RESTORE, "file", file.id,
                         {"folderId": folder_id})
            session.commit()
            session.refresh(file)
            return file

    def trash_folder(self, account_id, folder_id):
        """Soft-delete a folder subtree and trash every active file inside it."""
        with self.Session() as session:
            folder = get_active_folder(session, account_id, folder_id)
            folder_ids = soft_delete_subtree(session, folder)

            files = session.execute(
                select(File).where(
                    File.account_id == account_id,
                    File.folder_id.in_(folder_ids),
                    File.trashed_at.is_(None),
                )
            ).scalars().all()
            released = 0
            trashed = 0
            for file in files:
                if self._stamp_trashed(session, file.id, utcnow()):
                    released += file.size_bytes
                    trashed += 1
            self.ledger.release(session, account_id, released)

            audit.record(session, account_id, AuditAction.FOLDER_DELETE, "folder", folder.id,
                         {"folders": len(folder_ids), "files": trashed, "releasedBytes": released})
            session.commit()

        logger.info(
            "Trashed folder %s: %d folders, %d files, %d bytes released",
            folder_id, len(folder_ids), trashed, released,
        )
        return {"folders": len(folder_ids), "files": trashed, "releasedBytes": released}

    def restore_folder(self, account_id, folder_id):
        """Restore a folder with the descendants and files trashed alongside it."""
        with self.Session() as session:
            folder = session.execute(
                select(Folder).where(
                    Folder.id == folder_id,
                    Folder.account_id == account_id,
                    Folder.deleted_at.is_not(None),
                )
            ).scalar_one_or_none()
            if folder is None:
                raise NotFound("Folder not found in trash")

            cutoff = folder.deleted_at
            parent_id = self._restore_target(session, account_id, folder.parent_id)
            ensure_name_available(session, account_id, parent_id, folder.name,
                                  exclude_folder_id=folder.id)

            folders = [folder] + self._deleted_with(session, folder.id, cutoff)
            folder_ids = [f.id for f in folders]
            files = session.execute(
                select(File).where(
                    File.account_id == account_id,
                    File.folder_id.in_(folder_ids),
                    File.trashed_at.is_not(None),
                    File.trashed_at >= cutoff,
                    File.scan_status != ScanStatus.INFECTED,
                )
            ).scalars().all()
            for file in files:
                ensure_name_available(session, account_id, file.folder_id, file.name,
                                      exclude_file_id=file.id)

            total = sum(file.size_bytes for file in files)
            self.ledger.reserve(session, account_id, total)

            folder.parent_id = parent_id
            for item in folders:
                item.deleted_at = None
            for file in files:
                file.trashed_at = None

            audit.record(session, account_id, AuditAction.FOLDER_RESTORE, "folder", folder.id,
                         {"folders": len(folders), "files": len(files), "reservedBytes": total})
            session.commit()
            return {"folders": len(folders), "files": len(files), "reservedBytes": total}

    def list_trash(self, account_id):
        with self.Session() as session:
            files = session.execute(
                select(File)
                .where(File.account_id == account_id, File.trashed_at.is_not(None))
                .order_by(File.trashed_at.desc())
            ).scalars().all()
            folders = session.execute(
                select(Folder)
                .where(Folder.account_id == account_id, Folder.deleted_at.is_not(None))
                .order_by(Folder.deleted_at.desc())
            ).scalars().all()
            return {
                "files": [f.to_dict() for f in files],
                "folders": [f.to_dict() for f in folders],
                "total": len(files) + len(folders),
            }

    def empty_trash(self, account_id):
        with self.Session() as session:
            files = session.execute(
                select(File).where(File.account_id == account_id, File.trashed_at.is_not(None))
            ).scalars().all()
            folder_ids = session.execute(
                select(Folder.id).where(Folder.account_id == account_id, Folder.deleted_at.is_not(None))
            ).scalars().all()

            deleted = self._hard_delete(session, files, folder_ids)
            freed = sum(file.size_bytes for file in deleted)
            audit.record(session, account_id, AuditAction.TRASH_EMPTY, None, None,
                         {"files": len(deleted), "folders": len(folder_ids), "freedBytes": freed})
            session.commit()

        self._delete_blobs(file.object_key for file in deleted)
        logger.info("Emptied trash for account %s: %d files, %d folders", account_id,
                    len(deleted), len(folder_ids))
        return {"deletedFiles": len(deleted), "deletedFolders": len(folder_ids), "freedBytes": freed}

    def purge_expired(self, now=None):
        """Hard-delete everything trashed longer than the retention window."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.retention_days)
        with self.Session() as session:
            files = session.execute(
                select(File).where(File.trashed_at.is_not(None), File.trashed_at < cutoff)
            ).scalars().all()
            folder_ids = session.execute(
                select(Folder.id).where(Folder.deleted_at.is_not(None), Folder.deleted_at < cutoff)
            ).scalars().all()
            deleted = self._hard_delete(session, files, folder_ids)
            session.commit()

        self._delete_blobs(file.object_key for file in deleted)
        if deleted or folder_ids:
            logger.info("Purged %d files and %d folders from trash", len(deleted), len(folder_ids))
        return {"deletedFiles": len(deleted), "deletedFolders": len(folder_ids)}

    @staticmethod
    def _stamp_trashed(session, file_id, when):
        return session.execute(
            update(File)
            .where(File.id == file_id, File.trashed_at.is_(None))
            .values(trashed_at=when)
            .execution_options(synchronize_session=False)
        ).rowcount == 1

    @staticmethod
    def _restore_target(session, account_id, folder_id):
        """The original folder if it is still active, otherwise the root."""
        if folder_id is None:
            return None
        try:
            return get_active_folder(session, account_id, folder_id).id
        except NotFound:
            return None

    @staticmethod
    def _deleted_with(session, folder_id, cutoff):
        found = []
        queue = deque([(folder_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= MAX_TREE_DEPTH:
                break
            children = session.execute(
                select(Folder).where(
                    Folder.parent_id == current,
                    Folder.deleted_at.is_not(None),
                    Folder.deleted_at >= cutoff,
                )
            ).scalars().all()
            for child in children:
                found.append(child)
                queue.append((child.id, depth + 1))
        return found

    @staticmethod
    def _hard_delete(session, files, folder_ids):
        """Delete trashed file rows and deleted folder rows; returns the files removed."""
        deleted = []
        for file in files:
            session.execute(delete(Share).where(Share.file_id == file.id))
            session.execute(delete(ScanJob).where(ScanJob.file_id == file.id))
            removed = session.execute(
                delete(File).where(File.id == file.id, File.trashed_at.is_not(None))
            ).rowcount
            if removed:
                deleted.append(file)

        if folder_ids:
            # Survivors of a purged folder land in the root under a free name.
            orphans = session.execute(
                select(File).where(File.folder_id.in_(folder_ids))
            ).scalars().all()
            for file in orphans:
                if file.trashed_at is None:
                    name = available_name(session, file.account_id, None, file.name,
                                          exclude_file_id=file.id)
                    if name != file.name:
                        logger.warning("File %s renamed to %r when moved to the root", file.id, name)
                    file.name = name
                file.folder_id = None
                session.flush()
            children = session.execute(
                select(Folder).where(Folder.parent_id.in_(folder_ids), Folder.id.not_in(folder_ids))
            ).scalars().all()
            for child in children:
                if child.deleted_at is None:
                    name = available_name(session, child.account_id, None, child.name,
                                          exclude_folder_id=child.id)
                    if name != child.name:
                        logger.warning("Folder %s renamed to %r when moved to the root", child.id, name)
                    child.name = name
                child.parent_id = None
                session.flush()
            session.execute(
                update(UploadSession)
                .where(UploadSession.folder_id.in_(folder_ids))
                .values(folder_id=None)
                .execution_options(synchronize_session=False)
            )
            session.execute(delete(Share).where(Share.folder_id.in_(folder_ids)))
            session.execute(
                update(Folder)
                .where(Folder.id.in_(folder_ids))
                .values(parent_id=None)
                .execution_options(synchronize_session=False)
            )
            session.execute(delete(Folder).where(Folder.id.in_(folder_ids)))
        return deleted

    def _delete_blobs(self, keys):
        for key in keys:
            try:
                self.store.delete_object(key)
            except UpstreamUnavailable as e:
                logger.warning("Could not delete object %s: %s", key, e)
