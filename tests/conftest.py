"""Pytest fixtures: a SQLite database per test plus in-memory store and scanner doubles."""

import itertools
from contextlib import contextmanager

import pytest
import requests

from config import Config
from errors import UpstreamUnavailable
from models import Account, Plan
from scanner import ScanVerdict
from services import Services, config_dict

MIB = 1024 * 1024

EICAR = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class FakeObjectStore:
    """In-memory object store with the S3ObjectStore interface."""

    def __init__(self):
        self.objects = {}
        self.multipart = {}
        self.calls = []
        self.fail_on = set()
        self._ids = itertools.count(1)

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail_on:
            raise UpstreamUnavailable(f"{name} failed")

    def create_multipart(self, key, content_type):
        self._call("create_multipart", key)
        upload_id = f"upload-{next(self._ids)}"
        self.multipart[upload_id] = {"key": key, "parts": {}}
        return upload_id

    def presign_part_url(self, key, upload_id, part_number, ttl=None):
        self._call("presign_part_url", key, upload_id, part_number)
        return f"https://store.test/{key}?uploadId={upload_id}&partNumber={part_number}"

    def upload_part(self, upload_id, part_number, size):
        """What a client does with a presigned part URL."""
        self.multipart[upload_id]["parts"][part_number] = size
        return f'"etag-{upload_id}-{part_number}"'

    def complete_multipart(self, key, upload_id, parts):
        self._call("complete_multipart", key, upload_id)
        upload = self.multipart.pop(upload_id)
        self.objects[key] = {"size": sum(upload["parts"].values()), "body": b""}
        return f'"etag-{key}"'

    def abort_multipart(self, key, upload_id):
        self._call("abort_multipart", key, upload_id)
        self.multipart.pop(upload_id, None)

    def presign_download_url(self, key, ttl=None, filename=None):
        self._call("presign_download_url", key)
        return f"https://store.test/{key}"

    def put_object(self, key, body, content_type):
        self._call("put_object", key)
        self.objects[key] = {"size": len(body), "body": body}
        return f'"etag-{key}"'

    def head_object(self, key):
        self._call("head_object", key)
        stored = self.objects.get(key)
        if stored is None:
            return None
        return {"size": stored["size"], "etag": f'"etag-{key}"'}

    def delete_object(self, key):
        self._call("delete_object", key)
        self.objects.pop(key, None)

    def touched(self):
        return [call[0] for call in self.calls]


class FakeScanner:
    """Flags any stream containing the EICAR test string."""

    def __init__(self):
        self.alive = True
        self.error = None
        self.scanned = []

    def scan_stream(self, chunks):
        data = b"".join(chunks)
        self.scanned.append(data)
        if self.error is not None:
            raise self.error
        if EICAR in data:
            return ScanVerdict(True, "Eicar-Test-Signature", 12)
        return ScanVerdict(False, None, 7)

    def ping(self):
        return self.alive


class FakeResponse:
    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        for offset in range(0, len(self.body), chunk_size):
            yield self.body[offset:offset + chunk_size]


class FakeHttp:
    """Serves presigned store URLs straight out of a FakeObjectStore."""

    def __init__(self, store):
        self.store = store

    @contextmanager
    def get(self, url, stream=False, timeout=None):
        key = url.split("https://store.test/", 1)[1]
        stored = self.store.objects.get(key)
        if stored is None:
            yield FakeResponse(b"", status_code=404)
        else:
            yield FakeResponse(stored["body"])


@pytest.fixture
def config(tmp_path):
    values = config_dict(Config)
    values.update(
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'test.db'}",
        API_SECRET="test-secret",
        SECRET_KEY="test-key",
        TESTING=True,
        SCAN_CONCURRENCY=2,
        SCAN_MAX_ATTEMPTS=3,
        SCAN_RETRY_BASE_SECONDS=10,
        SCAN_RETRY_MAX_SECONDS=60,
    )
    return values


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
def services(config, store, scanner):
    return Services(config, object_store=store, scanner=scanner, http=FakeHttp(store))


@pytest.fixture
def account_id(services):
    with services.Session() as session:
        account = Account(email="owner@example.com", password_hash="x", plan=Plan.FREE, used_bytes=0)
        session.add(account)
        session.commit()
        return account.id


@pytest.fixture
def used_bytes(services):
    def read(account_id):
        with services.Session() as session:
            return session.get(Account, account_id).used_bytes
    return read


@pytest.fixture
def upload(services, store):
    """Run a whole upload the way a client would and return the File."""

    def run(account_id, name, size, folder_id=None, body=None):
        session = services.uploads.initiate(account_id, folder_id, name, size)
        if "file" in session:
            return services.files.get(account_id, session["file"]["id"])
        parts = [
            {
                "partNumber": part["partNumber"],
                "etag": store.upload_part(session["uploadId"], part["partNumber"],
                                          part["end"] - part["start"] + 1),
            }
            for part in session["parts"]
        ]
        file = services.uploads.complete(account_id, session["uploadId"], parts)
        if body is not None:
            store.objects[file.object_key]["body"] = body
        return file

    return run
