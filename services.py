"""Wires the database and every service together from one config mapping."""

import logging

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from config import Config
from files import FileService
from folders import FolderTree
from models import Base
from quota import QuotaLedger
from scanner import ClamdScanner
from scanning import ScanPipeline, ScanQueue
from shares import ShareGate
from storage import S3ObjectStore
from trash import TrashLifecycle
from uploads import UploadSessionManager

logger = logging.getLogger(__name__)


def config_dict(config_object=Config):
    return {key: getattr(config_object, key) for key in dir(config_object) if key.isupper()}


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_session_factory(database_uri):
    connect_args = {}
    if database_uri.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(database_uri, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_pragmas)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Services:
    """Every service built over one session factory, store and scanner."""

    def __init__(self, config, session_factory=None, object_store=None, scanner=None, http=None):
        self.config = config
        self.Session = session_factory or create_session_factory(config["SQLALCHEMY_DATABASE_URI"])
        self.store = object_store or S3ObjectStore.from_config(config)
        self.scanner = scanner or ClamdScanner.from_config(config)

        self.ledger = QuotaLedger.from_config(config)
        self.queue = ScanQueue.from_config(self.Session, config)
        self.pipeline = ScanPipeline(
            self.Session, self.store, self.scanner, self.ledger, self.queue,
            concurrency=config["SCAN_CONCURRENCY"],
            download_timeout=config["SCAN_DOWNLOAD_TIMEOUT_SECONDS"],
            http=http,
        )
        self.uploads = UploadSessionManager(
            self.Session, self.store, self.ledger,
            max_file_size=config["MAX_FILE_SIZE_BYTES"],
            session_ttl_seconds=config["UPLOAD_SESSION_TTL_SECONDS"],
        )
        self.folders = FolderTree(self.Session)
        self.files = FileService(self.Session, self.store)
        self.trash = TrashLifecycle(
            self.Session, self.store, self.ledger,
            retention_days=config["TRASH_RETENTION_DAYS"],
        )
        self.shares = ShareGate(self.Session, self.store)
