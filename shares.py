"""Public share links; the download ceiling may be overshot slightly under concurrency."""

import logging
import secrets

from sqlalchemy import delete, select, update
from werkzeug.security import check_password_hash, generate_password_hash

import audit
from audit import AuditAction
from errors import AccessDenied, Expired, InvalidRequest, LimitReached, NotFound, ScanPending
from files import get_active_file
from folders import get_active_folder
from models import File, Folder, ScanStatus, Share, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


class ShareGate:
    def __init__(self, session_factory, store):
        self.Session = session_factory
        self.store = store

    def create(self, account_id, file_id=None, folder_id=None, password=None,
               expires_at=None, max_downloads=None):
        if (file_id is None) == (folder_id is None):
            raise InvalidRequest("Exactly one of fileId or folderId is required")
        if expires_at is not None and expires_at <= utcnow():
            raise InvalidRequest("Expiry must be in the future")
        if max_downloads is not None and max_downloads < 1:
            raise InvalidRequest("maxDownloads must be at least 1")

        with self.Session() as session:
            if file_id is not None:
                get_active_file(session, account_id, file_id)
            else:
                get_active_folder(session, account_id, folder_id)

            share = Share(
                id=secrets.token_urlsafe(TOKEN_BYTES),
                account_id=account_id,
                file_id=file_id,
                folder_id=folder_id,
                password_hash=generate_password_hash(password) if password else None,
                expires_at=expires_at,
                max_downloads=max_downloads,
                download_count=0,
            )
            session.add(share)
            audit.record(session, account_id, AuditAction.SHARE_CREATE, "share", share.id,
                         {"fileId": file_id, "folderId": folder_id,
                          "hasPassword": share.password_hash is not None})
            session.commit()
            return share

    def resolve(self, share_id):
        """Public metadata of a usable share: the target and whether a password is needed."""
        with self.Session() as session:
            share = self._usable(session, share_id)
            if share.file_id is not None:
                target = session.get(File, share.file_id)
                if target is None or target.trashed_at is not None:
                    raise NotFound("Share not found")
                item = {"type": "file", "name": target.name, "sizeBytes": target.size_bytes,
                        "mime": target.mime, "scanStatus": target.scan_status.value}
            else:
                target = session.get(Folder, share.folder_id)
                if target is None or target.deleted_at is not None:
                    raise NotFound("Share not found")
                item = {"type": "folder", "name": target.name}
            return {
                "id": share.id,
                "requiresPassword": share.password_hash is not None,
                "expiresAt": share.to_dict()["expiresAt"],
                "item": item,
            }

    def validate_password(self, share_id, candidate):
        with self.Session() as session:
            share = session.get(Share, share_id)
            if share is None:
                return False
            if share.password_hash is None:
                return True
            if not candidate:
                return False
            return check_password_hash(share.password_hash, candidate)

    def record_download(self, share_id):
        with self.Session() as session:
            updated = session.execute(
                update(Share)
                .where(Share.id == share_id)
                .values(download_count=Share.download_count + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not updated:
                raise NotFound("Share not found")
            session.commit()

    def download(self, share_id, password=None):
        """Check the share and hand out a short-lived URL for its file."""
        self.resolve(share_id)
        if not self.validate_password(share_id, password):
            raise AccessDenied("Invalid share password")

        with self.Session() as session:
            share = session.get(Share, share_id)
            if share is None or share.file_id is None:
                raise InvalidRequest("Only file shares can be downloaded directly")
            file = session.get(File, share.file_id)
            if file is None or file.trashed_at is not None:
                raise NotFound("Share not found")
            if file.scan_status != ScanStatus.CLEAN:
                raise ScanPending()
            url = self.store.presign_download_url(file.object_key, filename=file.name)
            audit.record(session, share.account_id, AuditAction.SHARE_ACCESS, "share", share.id,
                         {"fileId": file.id})
            session.commit()

        self.record_download(share_id)
        return {"downloadUrl": url, "fileName": file.name, "contentType": file.mime}

    def list_shares(self, account_id):
        with self.Session() as session:
            shares = session.execute(
                select(Share)
                .where(Share.account_id == account_id)
                .order_by(Share.created_at.desc())
            ).scalars().all()
            return [share.to_dict() for share in shares]

    def delete_share(self, account_id, share_id):
        with self.Session() as session:
            deleted = session.execute(
                delete(Share).where(Share.id == share_id, Share.account_id == account_id)
            ).rowcount
            if not deleted:
                raise NotFound("Share not found")
            audit.record(session, account_id, AuditAction.SHARE_DELETE, "share", share_id)
            session.commit()

    def purge_expired(self, now=None):
        now = now or utcnow()
        with self.Session() as session:
            deleted = session.execute(
                delete(Share).where(Share.expires_at.is_not(None), Share.expires_at < now)
            ).rowcount
            session.commit()
        if deleted:
            logger.info("Deleted %d expired shares", deleted)
        return deleted

    @staticmethod
    def _usable(session, share_id):
        share = session.get(Share, share_id)
        if share is None:
            raise NotFound("Share not found")
        if share.expires_at is not None and share.expires_at <= utcnow():
            raise Expired()
        if share.max_downloads is not None and share.download_count >= share.max_downloads:
            raise LimitReached()
        return share
