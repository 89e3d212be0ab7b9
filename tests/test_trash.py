from datetime import timedelta

import pytest
from sqlalchemy import select

from errors import NameConflict, NotFound, QuotaExceeded
from models import File, Folder, Share, utcnow

MIB = 1024 * 1024


def _shrink_quota(services, size):
    services.ledger.plan_quotas = {plan: size for plan in services.ledger.plan_quotas}


def test_trash_releases_bytes(services, account_id, upload, used_bytes):
    file = upload(account_id, "a.bin", 10 * MIB)
    assert used_bytes(account_id) == 10 * MIB

    trashed = services.trash.trash_file(account_id, file.id)

    assert trashed.trashed_at is not None
    assert used_bytes(account_id) == 0
    with pytest.raises(NotFound):
        services.files.get(account_id, file.id)


def test_trash_twice_is_not_found(services, account_id, upload, used_bytes):
    file = upload(account_id, "a.bin", MIB)
    services.trash.trash_file(account_id, file.id)
    with pytest.raises(NotFound):
        services.trash.trash_file(account_id, file.id)
    assert used_bytes(account_id) == 0


def test_restore_with_enough_headroom(services, account_id, upload, used_bytes):
    _shrink_quota(services, 20 * MIB)
    file = upload(account_id, "a.bin", 10 * MIB)
    upload(account_id, "b.bin", 10 * MIB)
    services.trash.trash_file(account_id, file.id)

    restored = services.trash.restore_file(account_id, file.id)

    assert restored.trashed_at is None
    assert used_bytes(account_id) == 20 * MIB


def test_restore_without_headroom_stays_trashed(services, account_id, upload, used_bytes):
    _shrink_quota(services, 20 * MIB)
    file = upload(account_id, "a.bin", 10 * MIB)
    services.trash.trash_file(account_id, file.id)
    upload(account_id, "b.bin", 15 * MIB)

    with pytest.raises(QuotaExceeded):
        services.trash.restore_file(account_id, file.id)

    assert used_bytes(account_id) == 15 * MIB
    with services.Session() as session:
        assert session.get(File, file.id).trashed_at is not None


def test_restore_blocked_by_name_conflict(services, account_id, upload, used_bytes):
    file = upload(account_id, "same.txt", MIB)
    services.trash.trash_file(account_id, file.id)
    upload(account_id, "same.txt", MIB)

    with pytest.raises(NameConflict):
        services.trash.restore_file(account_id, file.id)
    assert used_bytes(account_id) == MIB


def test_restore_into_deleted_folder_goes_to_root(services, account_id, upload):
    folder = services.folders.create(account_id, "gone")
    file = upload(account_id, "a.txt", MIB, folder_id=folder.id)
    services.trash.trash_file(account_id, file.id)
    services.folders.remove(account_id, folder.id)

    assert services.trash.restore_file(account_id, file.id).folder_id is None


def test_empty_trash_deletes_rows_and_blobs(services, store, account_id, upload, used_bytes):
    keep = upload(account_id, "keep.bin", 2 * MIB)
    gone = upload(account_id, "gone.bin", 3 * MIB)
    services.trash.trash_file(account_id, gone.id)

    result = services.trash.empty_trash(account_id)

    assert result == {"deletedFiles": 1, "deletedFolders": 0, "freedBytes": 3 * MIB}
    assert gone.object_key not in store.objects
    assert keep.object_key in store.objects
    assert used_bytes(account_id) == 2 * MIB
    with services.Session() as session:
        assert session.get(File, gone.id) is None


def test_purge_is_idempotent_and_respects_retention(services, store, account_id, upload, used_bytes):
    old = upload(account_id, "old.bin", MIB)
    recent = upload(account_id, "recent.bin", MIB)
    kept = upload(account_id, "kept.bin", 2 * MIB)
    services.trash.trash_file(account_id, old.id)
    services.trash.trash_file(account_id, recent.id)
    with services.Session() as session:
        session.get(File, old.id).trashed_at = utcnow() - timedelta(days=31)
        session.commit()
    assert used_bytes(account_id) == 2 * MIB

    assert services.trash.purge_expired()["deletedFiles"] == 1
    assert used_bytes(account_id) == 2 * MIB
    assert services.trash.purge_expired()["deletedFiles"] == 0
    assert used_bytes(account_id) == 2 * MIB
    assert old.object_key not in store.objects
    assert recent.object_key in store.objects
    assert kept.object_key in store.objects


def test_purge_removes_shares_of_deleted_files(services, account_id, upload):
    file = upload(account_id, "shared.bin", MIB)
    share = services.shares.create(account_id, file_id=file.id)
    services.trash.trash_file(account_id, file.id)

    services.trash.empty_trash(account_id)

    with services.Session() as session:
        assert session.get(Share, share.id) is None


def test_trash_folder_trashes_files_in_subtree(services, account_id, upload, used_bytes):
    root = services.folders.create(account_id, "root")
    child = services.folders.create(account_id, "child", parent_id=root.id)
    upload(account_id, "a.bin", 2 * MIB, folder_id=root.id)
    upload(account_id, "b.bin", 3 * MIB, folder_id=child.id)
    upload(account_id, "outside.bin", MIB)

    result = services.trash.trash_folder(account_id, root.id)

    assert result == {"folders": 2, "files": 2, "releasedBytes": 5 * MIB}
    assert used_bytes(account_id) == MIB
    listing = services.trash.list_trash(account_id)
    assert {f["name"] for f in listing["files"]} == {"a.bin", "b.bin"}
    assert {f["name"] for f in listing["folders"]} == {"root", "child"}


def test_restore_folder_brings_back_subtree(services, account_id, upload, used_bytes):
    root = services.folders.create(account_id, "root")
    child = services.folders.create(account_id, "child", parent_id=root.id)
    upload(account_id, "a.bin", 2 * MIB, folder_id=child.id)
    services.trash.trash_folder(account_id, root.id)

    result = services.trash.restore_folder(account_id, root.id)

    assert result == {"folders": 2, "files": 1, "reservedBytes": 2 * MIB}
    assert used_bytes(account_id) == 2 * MIB
    assert services.folders.get(account_id, child.id).parent_id == root.id


def test_restore_folder_keeps_earlier_trashed_files_in_trash(services, account_id, upload):
    folder = services.folders.create(account_id, "f")
    earlier = upload(account_id, "earlier.bin", MIB, folder_id=folder.id)
    services.trash.trash_file(account_id, earlier.id)
    with services.Session() as session:
        session.get(File, earlier.id).trashed_at = utcnow() - timedelta(hours=1)
        session.commit()
    services.trash.trash_folder(account_id, folder.id)

    services.trash.restore_folder(account_id, folder.id)

    with services.Session() as session:
        assert session.get(File, earlier.id).trashed_at is not None


def test_empty_trash_removes_deleted_folders(services, account_id):
    folder = services.folders.create(account_id, "old")
    services.folders.create(account_id, "sub", parent_id=folder.id)
    services.trash.trash_folder(account_id, folder.id)

    assert services.trash.empty_trash(account_id)["deletedFolders"] == 2
    with services.Session() as session:
        assert session.execute(select(Folder)).scalars().all() == []


def test_purged_folder_contents_move_to_root_under_free_names(services, account_id, upload, used_bytes):
    docs = services.folders.create(account_id, "docs")
    inner = upload(account_id, "report.pdf", MIB, folder_id=docs.id)
    nested = services.folders.create(account_id, "photos", parent_id=docs.id)
    upload(account_id, "report.pdf", MIB)
    services.folders.create(account_id, "photos")
    # Folder removal leaves files active, so they outlive the folder row.
    services.folders.remove(account_id, docs.id)
    with services.Session() as session:
        session.get(Folder, nested.id).deleted_at = None
        session.commit()

    assert services.trash.empty_trash(account_id)["deletedFolders"] == 1

    listing = services.folders.list_children(account_id)
    assert {f["name"] for f in listing["files"]} == {"report.pdf", "report (1).pdf"}
    assert {f["name"] for f in listing["folders"]} == {"photos", "photos (1)"}
    assert services.files.get(account_id, inner.id).name == "report (1).pdf"
    assert used_bytes(account_id) == 2 * MIB
