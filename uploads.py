"""Multipart upload sessions.

State machine::

    INITIATED --complete--> COMPLETING --store ok--> COMPLETED
        |                        |
        +--abort / reaper--------+--store failure--> ABORTED
"""

import logging
from datetime import timedelta

from sqlalchemy import delete, select, update

import audit
from audit import AuditAction
from errors import InvalidRequest, NotFound, StorageError, UpstreamUnavailable
from folders import ensure_name_available, get_active_folder, validate_name
from models import File, UploadSession, UploadState, utcnow
from scanning import ScanQueue
from storage import generate_object_key, plan_parts

logger = logging.getLogger(__name__)

DEFAULT_MIME = "application/octet-stream"


class UploadSessionManager:
    def __init__(self, session_factory, store, ledger, max_file_size, session_ttl_seconds=24 * 3600):
        self.Session = session_factory
        self.store = store
        self.ledger = ledger
        self.max_file_size = max_file_size
        self.session_ttl_seconds = session_ttl_seconds

    def initiate(self, account_id, folder_id, name, size, mime=None):
        name = validate_name(name)
        mime = mime or DEFAULT_MIME
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise InvalidRequest("Size must be a non-negative integer")
        if size > self.max_file_size:
            raise InvalidRequest(f"File exceeds the maximum size of {self.max_file_size} bytes")

        if size == 0:
            return self._store_empty(account_id, folder_id, name, mime)

        parts = plan_parts(size)
        key = generate_object_key(account_id, name)

        # Reserve and commit before the store sees anything.
        with self.Session() as session:
            if folder_id is not None:
                get_active_folder(session, account_id, folder_id)
            ensure_name_available(session, account_id, folder_id, name)
            self.ledger.reserve(session, account_id, size)
            session.commit()

        try:
            upload_id = self.store.create_multipart(key, mime)
        except StorageError:
            self._release(account_id, size)
            raise

        try:
            urls = [
                dict(part, url=self.store.presign_part_url(key, upload_id, part["partNumber"]))
                for part in parts
            ]
            with self.Session() as session:
                session.add(UploadSession(
                    id=upload_id,
                    account_id=account_id,
                    folder_id=folder_id,
                    name=name,
                    size_bytes=size,
                    mime=mime,
                    object_key=key,
                    part_size=parts[0]["end"] - parts[0]["start"] + 1,
                    part_count=len(parts),
                    state=UploadState.INITIATED,
                ))
                session.commit()
        except Exception:
            self._release(account_id, size)
            self._abort_in_store(key, upload_id)
            raise

        logger.info(
            "Upload %s initiated for account %s: %s (%d bytes, %d parts)",
            upload_id, account_id, name, size, len(parts),
        )
        return {
            "uploadId": upload_id,
            "objectKey": key,
            "partSize": parts[0]["end"] - parts[0]["start"] + 1,
            "parts": urls,
        }

    def complete(self, account_id, session_id, parts):
        """Finish an upload. ``parts`` is a list of {"partNumber", "etag"} dicts."""
        upload = self._claim(account_id, session_id)

        expected = set(range(1, upload.part_count + 1))
        try:
            received = {int(part["partNumber"]) for part in parts}
            if len(received) != len(parts) or any(not part.get("etag") for part in parts):
                raise ValueError
        except (KeyError, TypeError, ValueError):
            self._unclaim(session_id)
            raise InvalidRequest("Each part needs a unique partNumber and an etag")
        if received != expected:
            self._unclaim(session_id)
            raise InvalidRequest(f"Expected parts 1..{upload.part_count}")

        # Another item may have taken the name while bytes were in flight.
        with self.Session() as session:
            try:
                if upload.folder_id is not None:
                    get_active_folder(session, account_id, upload.folder_id)
                ensure_name_available(session, account_id, upload.folder_id, upload.name)
            except StorageError:
                session.rollback()
                self._discard(upload, UploadState.COMPLETING, abort_in_store=True)
                raise

        try:
            etag = self.store.complete_multipart(upload.object_key, upload.id, parts)
            stored = self.store.head_object(upload.object_key)
        except StorageError:
            logger.warning("Store failed to complete upload %s; releasing reservation", upload.id)
            self._discard(upload, UploadState.COMPLETING, abort_in_store=True)
            raise

        if stored is None or stored["size"] != upload.size_bytes:
            logger.warning(
                "Upload %s stored %s bytes but declared %d; discarding",
                upload.id, stored and stored["size"], upload.size_bytes,
            )
            self._discard(upload, UploadState.COMPLETING, abort_in_store=False)
            self._delete_in_store(upload.object_key)
            raise InvalidRequest("Uploaded size does not match the declared size")

        with self.Session() as session:
            # The reservation made at initiate now belongs to the file. If the
            # reaper got here first the session and its reservation are gone.
            consumed = session.execute(
                delete(UploadSession).where(UploadSession.id == upload.id)
            ).rowcount
            if consumed != 1:
                session.rollback()
                logger.warning("Upload %s was reaped during completion; deleting object", upload.id)
                self._delete_in_store(upload.object_key)
                raise NotFound("Upload session expired")

            file = File(
                account_id=account_id,
                folder_id=upload.folder_id,
                name=upload.name,
                size_bytes=upload.size_bytes,
                mime=upload.mime,
                object_key=upload.object_key,
                etag=etag or stored.get("etag"),
                version=1,
            )
            session.add(file)
            session.flush()
            ScanQueue.enqueue(session, file)
            audit.record(session, account_id, AuditAction.FILE_UPLOAD, "file", file.id,
                         {"name": file.name, "sizeBytes": file.size_bytes})
            session.commit()

        logger.info("Upload %s completed as file %s", upload.id, file.id)
        return file

    def abort(self, session_id, account_id=None):
        """Abort an open session and release its reservation. Returns True if aborted."""
        with self.Session() as session:
            query = select(UploadSession).where(UploadSession.id == session_id)
            if account_id is not None:
                query = query.where(UploadSession.account_id == account_id)
            upload = session.execute(query).scalar_one_or_none()
            if upload is None:
                raise NotFound("Upload session not found")
            if account_id is not None and upload.state != UploadState.INITIATED:
                raise NotFound("Upload session not found")

        if not self._discard(upload, upload.state, abort_in_store=True):
            raise NotFound("Upload session not found")
        logger.info("Upload %s aborted", session_id)
        return True

    def reap_stale(self, now=None):
        """Abort sessions idle longer than the session TTL."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.session_ttl_seconds)
        with self.Session() as session:
            stale = session.execute(
                select(UploadSession).where(UploadSession.updated_at < cutoff)
            ).scalars().all()

        reaped = 0
        for upload in stale:
            completing = upload.state == UploadState.COMPLETING
            if self._discard(upload, upload.state, abort_in_store=True):
                reaped += 1
                if completing:
                    # Completion may have reached the store before the crash.
                    self._delete_in_store(upload.object_key)
        if reaped:
            logger.info("Reaped %d stale upload sessions", reaped)
        return reaped

    def _store_empty(self, account_id, folder_id, name, mime):
        key = generate_object_key(account_id, name)
        with self.Session() as session:
            if folder_id is not None:
                get_active_folder(session, account_id, folder_id)
            ensure_name_available(session, account_id, folder_id, name)

        etag = self.store.put_object(key, b"", mime)
        with self.Session() as session:
            file = File(
                account_id=account_id,
                folder_id=folder_id,
                name=name,
                size_bytes=0,
                mime=mime,
                object_key=key,
                etag=etag,
                version=1,
            )
            session.add(file)
            session.flush()
            ScanQueue.enqueue(session, file)
            audit.record(session, account_id, AuditAction.FILE_UPLOAD, "file", file.id,
                         {"name": name, "sizeBytes": 0})
            session.commit()
        return {"file": file.to_dict()}

    def _claim(self, account_id, session_id):
        with self.Session() as session:
            result = session.execute(
                update(UploadSession)
                .where(
                    UploadSession.id == session_id,
                    UploadSession.account_id == account_id,
                    UploadSession.state == UploadState.INITIATED,
                )
                .values(state=UploadState.COMPLETING, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFound("Upload session not found")
            session.commit()
            return session.get(UploadSession, session_id)

    def _unclaim(self, session_id):
        with self.Session() as session:
            session.execute(
                update(UploadSession)
                .where(UploadSession.id == session_id, UploadSession.state == UploadState.COMPLETING)
                .values(state=UploadState.INITIATED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()

    def _discard(self, upload, state, abort_in_store):
        """Delete the session row (if still in ``state``) and release its bytes in one transaction."""
        with self.Session() as session:
            deleted = session.execute(
                delete(UploadSession).where(
                    UploadSession.id == upload.id, UploadSession.state == state
                )
            ).rowcount
            if deleted != 1:
                return False
            self.ledger.release(session, upload.account_id, upload.size_bytes)
            session.commit()
        if abort_in_store:
            self._abort_in_store(upload.object_key, upload.id)
        return True

    def _release(self, account_id, size):
        with self.Session() as session:
            self.ledger.release(session, account_id, size)
            session.commit()

    def _abort_in_store(self, key, upload_id):
        try:
            self.store.abort_multipart(key, upload_id)
        except UpstreamUnavailable as e:
            logger.warning("Could not abort multipart upload %s: %s", upload_id, e)

    def _delete_in_store(self, key):
        try:
            self.store.delete_object(key)
        except UpstreamUnavailable as e:
            logger.warning("Could not delete object %s: %s", key, e)
