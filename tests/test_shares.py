from datetime import timedelta

import pytest
from sqlalchemy import select

from errors import AccessDenied, Expired, InvalidRequest, LimitReached, NotFound, ScanPending
from models import Share, utcnow

MIB = 1024 * 1024


@pytest.fixture
def clean_file(services, account_id, upload):
    file = upload(account_id, "report.pdf", MIB)
    services.pipeline.apply_verdict(file.id, False)
    return file


def test_single_download_share(services, account_id, clean_file):
    share = services.shares.create(account_id, file_id=clean_file.id, max_downloads=1)

    resolved = services.shares.resolve(share.id)
    assert resolved["item"]["name"] == "report.pdf"
    assert resolved["requiresPassword"] is False

    result = services.shares.download(share.id)
    assert result["downloadUrl"].startswith("https://store.test/")

    with pytest.raises(LimitReached) as exc:
        services.shares.resolve(share.id)
    assert exc.value.code == "LIMIT_REACHED"
    with pytest.raises(LimitReached):
        services.shares.download(share.id)


def test_password_is_hashed_and_checked(services, account_id, clean_file):
    share = services.shares.create(account_id, file_id=clean_file.id, password="s3cret")

    with services.Session() as session:
        stored = session.get(Share, share.id)
    assert stored.password_hash != "s3cret"
    assert "passwordHash" not in share.to_dict()
    assert share.to_dict()["requiresPassword"] is True

    assert services.shares.validate_password(share.id, "s3cret") is True
    assert services.shares.validate_password(share.id, "wrong") is False
    assert services.shares.validate_password(share.id, None) is False

    with pytest.raises(AccessDenied):
        services.shares.download(share.id, "wrong")
    assert services.shares.download(share.id, "s3cret")["fileName"] == "report.pdf"


def test_expired_share(services, account_id, clean_file):
    share = services.shares.create(account_id, file_id=clean_file.id,
                                   expires_at=utcnow() + timedelta(hours=1))
    with services.Session() as session:
        session.get(Share, share.id).expires_at = utcnow() - timedelta(seconds=1)
        session.commit()

    with pytest.raises(Expired):
        services.shares.resolve(share.id)


def test_exactly_one_target(services, account_id, clean_file):
    folder = services.folders.create(account_id, "docs")
    with pytest.raises(InvalidRequest):
        services.shares.create(account_id)
    with pytest.raises(InvalidRequest):
        services.shares.create(account_id, file_id=clean_file.id, folder_id=folder.id)


def test_create_validation(services, account_id, clean_file):
    with pytest.raises(InvalidRequest):
        services.shares.create(account_id, file_id=clean_file.id,
                               expires_at=utcnow() - timedelta(minutes=1))
    with pytest.raises(InvalidRequest):
        services.shares.create(account_id, file_id=clean_file.id, max_downloads=0)
    with pytest.raises(NotFound):
        services.shares.create(account_id + 1, file_id=clean_file.id)


def test_pending_file_cannot_be_downloaded(services, account_id, upload):
    file = upload(account_id, "fresh.bin", MIB)
    share = services.shares.create(account_id, file_id=file.id)

    assert services.shares.resolve(share.id)["item"]["scanStatus"] == "pending"
    with pytest.raises(ScanPending):
        services.shares.download(share.id)


def test_share_of_trashed_file_is_not_found(services, account_id, clean_file):
    share = services.shares.create(account_id, file_id=clean_file.id)
    services.trash.trash_file(account_id, clean_file.id)
    with pytest.raises(NotFound):
        services.shares.resolve(share.id)


def test_folder_share_resolves_but_does_not_download(services, account_id):
    folder = services.folders.create(account_id, "album")
    share = services.shares.create(account_id, folder_id=folder.id)

    assert services.shares.resolve(share.id)["item"] == {"type": "folder", "name": "album"}
    with pytest.raises(InvalidRequest):
        services.shares.download(share.id)


def test_unknown_share(services):
    with pytest.raises(NotFound):
        services.shares.resolve("nope")
    assert services.shares.validate_password("nope", "x") is False


def test_list_and_delete(services, account_id, clean_file):
    share = services.shares.create(account_id, file_id=clean_file.id)
    assert [s["id"] for s in services.shares.list_shares(account_id)] == [share.id]

    with pytest.raises(NotFound):
        services.shares.delete_share(account_id + 1, share.id)
    services.shares.delete_share(account_id, share.id)
    assert services.shares.list_shares(account_id) == []


def test_purge_expired(services, account_id, clean_file):
    old = services.shares.create(account_id, file_id=clean_file.id)
    keep = services.shares.create(account_id, file_id=clean_file.id)
    with services.Session() as session:
        session.get(Share, old.id).expires_at = utcnow() - timedelta(days=1)
        session.commit()

    assert services.shares.purge_expired() == 1
    assert services.shares.purge_expired() == 0
    with services.Session() as session:
        remaining = session.execute(select(Share.id)).scalars().all()
    assert remaining == [keep.id]
