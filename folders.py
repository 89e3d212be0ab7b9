import logging
import os
from collections import deque

from sqlalchemy import func, select

import audit
from audit import AuditAction
from errors import CyclicMove, InvalidRequest, NameConflict, NotFound, TreeDepthExceeded
from models import File, Folder, utcnow

logger = logging.getLogger(__name__)

# Every walk up or down the tree is bounded so a corrupted chain terminates.
MAX_TREE_DEPTH = 256
MAX_NAME_LENGTH = 255

_UNSET = object()


def validate_name(name):
    name = (name or "").strip()
    if not name:
        raise InvalidRequest("Name must not be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise InvalidRequest(f"Name must be at most {MAX_NAME_LENGTH} characters")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise InvalidRequest("Name contains invalid characters")
    return name


def get_active_folder(session, account_id, folder_id):
    folder = session.execute(
        select(Folder).where(
            Folder.id == folder_id,
            Folder.account_id == account_id,
            Folder.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if folder is None:
        raise NotFound("Folder not found")
    return folder


def ensure_name_available(session, account_id, parent_id, name,
                          exclude_file_id=None, exclude_folder_id=None):
    """Files and folders share one namespace among active siblings."""
    folder_query = select(Folder.id).where(
        Folder.account_id == account_id,
        Folder.parent_id.is_(None) if parent_id is None else Folder.parent_id == parent_id,
        Folder.name == name,
        Folder.deleted_at.is_(None),
    )
    if exclude_folder_id is not None:
        folder_query = folder_query.where(Folder.id != exclude_folder_id)

    file_query = select(File.id).where(
        File.account_id == account_id,
        File.folder_id.is_(None) if parent_id is None else File.folder_id == parent_id,
        File.name == name,
        File.trashed_at.is_(None),
    )
    if exclude_file_id is not None:
        file_query = file_query.where(File.id != exclude_file_id)

    if session.execute(folder_query.limit(1)).first() or session.execute(file_query.limit(1)).first():
        raise NameConflict()


def available_name(session, account_id, parent_id, name,
                   exclude_file_id=None, exclude_folder_id=None):
    """``name``, or the first free ``name (n)`` variant among the siblings."""
    stem, extension = os.path.splitext(name)
    candidate = name
    suffix = 0
    while True:
        try:
            ensure_name_available(session, account_id, parent_id, candidate,
                                  exclude_file_id=exclude_file_id,
                                  exclude_folder_id=exclude_folder_id)
            return candidate
        except NameConflict:
            suffix += 1
            candidate = f"{stem} ({suffix}){extension}"


def descendant_ids(session, folder_id, include_deleted=False):
    """Breadth-first ids of every folder below ``folder_id`` (excluding itself)."""
    found = []
    seen = {folder_id}
    queue = deque([(folder_id, 0)])
    while queue:
        current, depth = queue.popleft()
        if depth >= MAX_TREE_DEPTH:
            logger.error("Folder %s exceeds maximum tree depth", folder_id)
            raise TreeDepthExceeded()
        query = select(Folder.id).where(Folder.parent_id == current)
        if not include_deleted:
            query = query.where(Folder.deleted_at.is_(None))
        for child_id in session.execute(query).scalars():
            if child_id in seen:
                logger.error("Cycle detected below folder %s at %s", folder_id, child_id)
                continue
            seen.add(child_id)
            found.append(child_id)
            queue.append((child_id, depth + 1))
    return found


def soft_delete_subtree(session, folder):
    """Stamp ``deleted_at`` on ``folder`` and every active descendant folder.

    The root is stamped first, so every descendant carries a timestamp no
    earlier than its root's; restore relies on that ordering.
    """
    ids = descendant_ids(session, folder.id)
    folder.deleted_at = utcnow()
    if ids:
        children = {
            child.id: child
            for child in session.execute(select(Folder).where(Folder.id.in_(ids))).scalars()
        }
        for child_id in ids:
            children[child_id].deleted_at = utcnow()
    return [folder.id] + ids


class FolderTree:
    def __init__(self, session_factory):
        self.Session = session_factory

    def create(self, account_id, name, parent_id=None):
        name = validate_name(name)
        with self.Session() as session:
            if parent_id is not None:
                get_active_folder(session, account_id, parent_id)
            ensure_name_available(session, account_id, parent_id, name)

            folder = Folder(account_id=account_id, parent_id=parent_id, name=name)
            session.add(folder)
            session.flush()
            audit.record(session, account_id, AuditAction.FOLDER_CREATE, "folder", folder.id,
                         {"name": name, "parentId": parent_id})
            session.commit()
            return folder

    def get(self, account_id, folder_id):
        with self.Session() as session:
            return get_active_folder(session, account_id, folder_id)

    def rename(self, account_id, folder_id, name):
        return self.update(account_id, folder_id, name=name)

    def move(self, account_id, folder_id, new_parent_id):
        """Re-parent a folder; ``new_parent_id=None`` moves it to the root."""
        return self.update(account_id, folder_id, parent_id=new_parent_id)

    def update(self, account_id, folder_id, name=None, parent_id=_UNSET):
        """Rename and/or move in one transaction; the final (parent, name) pair is checked once."""
        new_name = validate_name(name) if name is not None else None
        with self.Session() as session:
            folder = get_active_folder(session, account_id, folder_id)
            new_name = new_name or folder.name
            new_parent = folder.parent_id if parent_id is _UNSET else parent_id
            if new_name == folder.name and new_parent == folder.parent_id:
                return folder

            if new_parent != folder.parent_id and new_parent is not None:
                if new_parent == folder_id:
                    raise CyclicMove()
                self._check_ancestry(session, account_id, folder_id, new_parent)

            ensure_name_available(session, account_id, new_parent, new_name,
                                  exclude_folder_id=folder.id)
            folder.name = new_name
            folder.parent_id = new_parent
            audit.record(session, account_id, AuditAction.FOLDER_UPDATE, "folder", folder.id,
                         {"name": new_name, "parentId": new_parent})
            session.commit()
            return folder

    def remove(self, account_id, folder_id):
        """Soft-delete a folder and all its descendant folders. Files are left alone."""
        with self.Session() as session:
            folder = get_active_folder(session, account_id, folder_id)
            removed = soft_delete_subtree(session, folder)
            audit.record(session, account_id, AuditAction.FOLDER_DELETE, "folder", folder.id,
                         {"folders": len(removed)})
            session.commit()
            logger.info("Soft-deleted folder %s and %d descendants", folder_id, len(removed) - 1)
            return removed

    def breadcrumbs(self, account_id, folder_id):
        """Folders from the root down to ``folder_id``."""
        with self.Session() as session:
            trail = []
            current = get_active_folder(session, account_id, folder_id)
            while current is not None:
                if len(trail) >= MAX_TREE_DEPTH:
                    logger.error("Breadcrumb walk from folder %s exceeded maximum depth", folder_id)
                    raise TreeDepthExceeded()
                trail.append(current)
                if current.parent_id is None:
                    break
                current = get_active_folder(session, account_id, current.parent_id)
            trail.reverse()
            return trail

    def list_children(self, account_id, folder_id=None, page=1, limit=50):
        page = max(page, 1)
        limit = min(max(limit, 1), 200)
        with self.Session() as session:
            if folder_id is not None:
                get_active_folder(session, account_id, folder_id)

            folder_query = select(Folder).where(
                Folder.account_id == account_id,
                Folder.parent_id.is_(None) if folder_id is None else Folder.parent_id == folder_id,
                Folder.deleted_at.is_(None),
            )
            file_query = select(File).where(
                File.account_id == account_id,
                File.folder_id.is_(None) if folder_id is None else File.folder_id == folder_id,
                File.trashed_at.is_(None),
            )
            folder_total, file_total = (
                session.execute(select(func.count()).select_from(q.subquery())).scalar_one()
                for q in (folder_query, file_query)
            )
            # One page window over folders followed by files.
            offset = (page - 1) * limit
            folders = session.execute(
                folder_query.order_by(Folder.name, Folder.id).offset(offset).limit(limit)
            ).scalars().all()
            files = []
            remaining = limit - len(folders)
            if remaining > 0:
                files = session.execute(
                    file_query.order_by(File.name, File.id)
                    .offset(max(0, offset - folder_total)).limit(remaining)
                ).scalars().all()
            total = folder_total + file_total
            return {
                "folders": [f.to_dict() for f in folders],
                "files": [f.to_dict() for f in files],
                "total": total,
                "page": page,
                "limit": limit,
                "hasMore": offset + limit < total,
            }

    @staticmethod
    def _check_ancestry(session, account_id, folder_id, new_parent_id):
        # Walk upward from the destination. Meeting the moved folder means the
        # destination lies inside its subtree. A deleted or foreign ancestor
        # fails closed as NotFound.
        current_id = new_parent_id
        for _ in range(MAX_TREE_DEPTH):
            if current_id is None:
                return
            if current_id == folder_id:
                raise CyclicMove()
            current_id = get_active_folder(session, account_id, current_id).parent_id
        logger.error("Ancestry walk from folder %s exceeded maximum depth", new_parent_id)
        raise TreeDepthExceeded()
