"""Durable scan queue and verdict pipeline. Delivery is at-least-once."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import requests
from sqlalchemy import delete, select, update

import audit
from audit import AuditAction
from errors import RETRYABLE_SCAN_ERRORS
from models import File, ScanJob, ScanJobStatus, ScanStatus, utcnow
from scanner import CHUNK_SIZE

logger = logging.getLogger(__name__)


class ScanQueue:
    def __init__(self, session_factory, max_attempts=5, retry_base_seconds=30,
                 retry_max_seconds=3600, visibility_timeout_seconds=600):
        self.Session = session_factory
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.visibility_timeout_seconds = visibility_timeout_seconds

    @classmethod
    def from_config(cls, session_factory, config):
        return cls(
            session_factory,
            max_attempts=config["SCAN_MAX_ATTEMPTS"],
            retry_base_seconds=config["SCAN_RETRY_BASE_SECONDS"],
            retry_max_seconds=config["SCAN_RETRY_MAX_SECONDS"],
            visibility_timeout_seconds=config["SCAN_VISIBILITY_TIMEOUT_SECONDS"],
        )

    @staticmethod
    def enqueue(session, file):
        """Add a job for ``file`` to the caller's transaction."""
        job = ScanJob(
            file_id=file.id,
            account_id=file.account_id,
            object_key=file.object_key,
            size_bytes=file.size_bytes,
        )
        session.add(job)
        return job

    def claim(self, limit, now=None):
        now = now or utcnow()
        with self.Session() as session:
            candidates = session.execute(
                select(ScanJob.id)
                .where(ScanJob.status == ScanJobStatus.QUEUED, ScanJob.available_at <= now)
                .order_by(ScanJob.available_at, ScanJob.id)
                .limit(limit)
            ).scalars().all()

            claimed = []
            for job_id in candidates:
                result = session.execute(
                    update(ScanJob)
                    .where(ScanJob.id == job_id, ScanJob.status == ScanJobStatus.QUEUED)
                    .values(status=ScanJobStatus.RUNNING, locked_at=now,
                            attempts=ScanJob.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(job_id)
            session.commit()

            if not claimed:
                return []
            return session.execute(
                select(ScanJob).where(ScanJob.id.in_(claimed)).order_by(ScanJob.id)
            ).scalars().all()

    def ack(self, job_id):
        with self.Session() as session:
            session.execute(delete(ScanJob).where(ScanJob.id == job_id))
            session.commit()

    def backoff_seconds(self, attempts):
        return min(self.retry_base_seconds * 2 ** max(attempts - 1, 0), self.retry_max_seconds)

    def retry(self, job_id, error, now=None):
        """Reschedule a failed job. Returns False once it has been dead-lettered."""
        now = now or utcnow()
        with self.Session() as session:
            job = session.get(ScanJob, job_id)
            if job is None:
                return False
            job.last_error = str(error)[:2000]
            job.locked_at = None
            if job.attempts >= self.max_attempts:
                job.status = ScanJobStatus.DEAD
                session.commit()
                logger.error(
                    "Scan job %s for file %s dead-lettered after %d attempts: %s",
                    job.id, job.file_id, job.attempts, error,
                )
                return False
            delay = self.backoff_seconds(job.attempts)
            job.status = ScanJobStatus.QUEUED
            job.available_at = now + timedelta(seconds=delay)
            session.commit()
            logger.warning(
                "Scan job %s for file %s failed (attempt %d), retrying in %ds: %s",
                job.id, job.file_id, job.attempts, delay, error,
            )
            return True

    def requeue_stalled(self, now=None):
        """Hand out again jobs whose consumer stopped responding."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.visibility_timeout_seconds)
        with self.Session() as session:
            result = session.execute(
                update(ScanJob)
                .where(ScanJob.status == ScanJobStatus.RUNNING, ScanJob.locked_at < cutoff)
                .values(status=ScanJobStatus.QUEUED, locked_at=None, available_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount:
                logger.warning("Requeued %d stalled scan jobs", result.rowcount)
            return result.rowcount

    def requeue_dead(self, job_id=None, now=None):
        """Manual intervention: give dead jobs a fresh set of attempts."""
        now = now or utcnow()
        with self.Session() as session:
            stmt = update(ScanJob).where(ScanJob.status == ScanJobStatus.DEAD)
            if job_id is not None:
                stmt = stmt.where(ScanJob.id == job_id)
            result = session.execute(
                stmt.values(status=ScanJobStatus.QUEUED, attempts=0, available_at=now)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount

    def dead_letters(self):
        with self.Session() as session:
            return session.execute(
                select(ScanJob).where(ScanJob.status == ScanJobStatus.DEAD).order_by(ScanJob.id)
            ).scalars().all()


class ScanPipeline:
    def __init__(self, session_factory, store, scanner, ledger, queue,
                 concurrency=5, download_timeout=60, http=None):
        self.Session = session_factory
        self.store = store
        self.scanner = scanner
        self.ledger = ledger
        self.queue = queue
        self.concurrency = max(concurrency, 1)
        self.download_timeout = download_timeout
        self.http = http or requests

    def process(self, job):
        """Scan one claimed job. Returns the verdict, or None if it was rescheduled."""
        logger.info("Starting virus scan for file %s (%s)", job.file_id, job.object_key)
        try:
            url = self.store.presign_download_url(job.object_key, ttl=max(int(self.download_timeout) * 2, 60))
            with self.http.get(url, stream=True, timeout=self.download_timeout) as response:
                response.raise_for_status()
                verdict = self.scanner.scan_stream(response.iter_content(chunk_size=CHUNK_SIZE))
        except RETRYABLE_SCAN_ERRORS + (requests.RequestException,) as e:
            self.queue.retry(job.id, e)
            return None

        logger.info(
            "Scan completed for file %s: %s (%dms)",
            job.file_id, "INFECTED" if verdict.infected else "CLEAN", verdict.elapsed_ms,
        )
        self.apply_verdict(job.file_id, verdict.infected, verdict.signature, verdict.elapsed_ms)
        self.queue.ack(job.id)
        return verdict

    def apply_verdict(self, file_id, infected, signature=None, elapsed_ms=0):
        """Record a scan result; infected files are trashed and their bytes released.

        Returns the resulting scan status, or None when the file no longer exists.
        Re-delivered verdicts for an already scanned file change nothing.
        """
        status = ScanStatus.INFECTED if infected else ScanStatus.CLEAN
        with self.Session() as session:
            file = session.get(File, file_id)
            if file is None:
                logger.info("Dropping scan verdict for missing file %s", file_id)
                return None

            updated = session.execute(
                update(File)
                .where(File.id == file_id, File.scan_status == ScanStatus.PENDING)
                .values(
                    scan_status=status,
                    virus_name=(signature or "Unknown") if infected else None,
                    scan_time_ms=elapsed_ms,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not updated:
                logger.info("File %s already scanned; ignoring duplicate verdict", file_id)
                return file.scan_status

            if infected:
                trashed = session.execute(
                    update(File)
                    .where(File.id == file_id, File.trashed_at.is_(None))
                    .values(trashed_at=utcnow())
                    .execution_options(synchronize_session=False)
                ).rowcount
                if trashed:
                    self.ledger.release(session, file.account_id, file.size_bytes)
                audit.record(
                    session, file.account_id, AuditAction.FILE_VIRUS_DETECTED, "file", file.id,
                    {
                        "virusName": signature or "Unknown",
                        "fileName": file.name,
                        "fileSize": str(file.size_bytes),
                    },
                )
                logger.warning(
                    "File %s of account %s is infected with %s; quarantined",
                    file_id, file.account_id, signature,
                )
            session.commit()
            return status

    def _safe_process(self, job):
        try:
            return self.process(job)
        except Exception as e:
            logger.exception("Virus scan failed for file %s", job.file_id)
            self.queue.retry(job.id, e)
            return None

    def run_once(self):
        jobs = self.queue.claim(self.concurrency)
        if not jobs:
            return 0
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="scan") as pool:
            list(pool.map(self._safe_process, jobs))
        return len(jobs)

    def run_forever(self, stop_event, poll_interval=2.0):
        logger.info("Scan pipeline started with concurrency %d", self.concurrency)
        while not stop_event.is_set():
            if not self.run_once():
                stop_event.wait(poll_interval)
        logger.info("Scan pipeline stopped")
