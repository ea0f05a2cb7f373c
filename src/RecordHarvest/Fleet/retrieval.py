# === NAVMAP v1 ===
# {
#   "module": "RecordHarvest.Fleet.retrieval",
#   "purpose": "httpx-backed document retrieval service with asynchronous jobs",
#   "sections": [
#     {"id": "downloadjob", "name": "DownloadJob", "anchor": "class-downloadjob", "kind": "dataclass"},
#     {"id": "httpdocumentretrieval", "name": "HttpDocumentRetrieval", "anchor": "class-httpdocumentretrieval", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""
Document retrieval over HTTP.

Workers hand a locator (an absolute URL) and a destination path to
:class:`HttpDocumentRetrieval`; the download runs on a small thread pool and
the worker polls its status. Each job streams to its own
``<destination>.<job>.part`` file and promotes it with ``os.replace`` under the
artifact lock, so a visible artifact is always complete. A zero-byte body counts
as an interrupted download. ``delete_artifact`` cancels a job: a running
download stops at the next chunk and never promotes its partial file.

Transport errors and 5xx responses are retried with the tenacity policy from
:mod:`RecordHarvest.Fleet.retries`; 4xx responses fail the job immediately.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import httpx

from .config.models import HttpClientConfig
from .errors import FetchFailure
from .locks import artifact_lock
from .models import FetchStatus
from .output import PART_SUFFIX
from .retries import http_policy

__all__ = ["HttpDocumentRetrieval", "DownloadJob"]

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 16


@dataclass
class DownloadJob:
    job_id: str
    locator: str
    destination: Path
    future: Future
    cancelled: threading.Event = field(default_factory=threading.Event)


def _part_path(destination: Path, job_id: str) -> Path:
    return destination.with_name(f"{destination.name}.{job_id[:12]}{PART_SUFFIX}")


class HttpDocumentRetrieval:
    """Asynchronous artifact downloads on a shared ``httpx.Client``.

    Args:
        config: Client timeouts, retry attempts, and pool size
        client: Pre-built client (tests pass one wired to ``httpx.MockTransport``)
    """

    def __init__(
        self,
        config: Optional[HttpClientConfig] = None,
        *,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config or HttpClientConfig()
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(self.config.timeout_read_s, connect=self.config.timeout_connect_s),
            headers={"User-Agent": self.config.user_agent},
            verify=self.config.verify_tls,
            follow_redirects=True,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_downloads,
            thread_name_prefix="harvest-download",
        )
        self._jobs: Dict[str, DownloadJob] = {}
        self._lock = threading.Lock()

    def submit_download(self, locator: str, destination: Path) -> str:
        try:
            url = httpx.URL(locator)
        except (httpx.InvalidURL, TypeError) as exc:
            raise FetchFailure(f"invalid locator: {exc}", locator=locator) from exc
        if url.scheme not in ("http", "https"):
            raise FetchFailure(f"unsupported locator scheme {url.scheme!r}", locator=locator)

        destination = Path(destination)
        job_id = uuid.uuid4().hex
        cancelled = threading.Event()
        try:
            future = self._executor.submit(self._download, job_id, url, destination, cancelled)
        except RuntimeError as exc:
            raise FetchFailure(f"retrieval service closed: {exc}", locator=locator) from exc
        with self._lock:
            self._jobs[job_id] = DownloadJob(job_id, locator, destination, future, cancelled)
        logger.debug(f"Submitted job {job_id} for {locator} → {destination}")
        return job_id

    def poll_status(self, job_id: str) -> FetchStatus:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            # Jobs do not survive a restart; the worker re-checks the artifact.
            return FetchStatus.INTERRUPTED
        if not job.future.done():
            return FetchStatus.PENDING
        error = job.future.exception()
        if error is not None:
            logger.warning(f"Download {job_id} from {job.locator} failed: {error}")
            return FetchStatus.INTERRUPTED
        return FetchStatus.COMPLETE if job.future.result() > 0 else FetchStatus.INTERRUPTED

    def delete_artifact(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is None:
            return
        job.cancelled.set()
        job.future.cancel()
        with artifact_lock(job.destination):
            for path in (job.destination, _part_path(job.destination, job_id)):
                path.unlink(missing_ok=True)
        logger.debug(f"Cancelled job {job_id} for {job.locator}")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "HttpDocumentRetrieval":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── Download body ───────────────────────────────────────────────────────

    def _download(
        self, job_id: str, url: httpx.URL, destination: Path, cancelled: threading.Event
    ) -> int:
        for attempt in http_policy(max_attempts=self.config.max_attempts):
            with attempt:
                return self._stream_once(job_id, url, destination, cancelled)
        return 0

    def _stream_once(
        self, job_id: str, url: httpx.URL, destination: Path, cancelled: threading.Event
    ) -> int:
        if cancelled.is_set():
            raise FetchFailure("download cancelled", job_id=job_id)
        destination.parent.mkdir(parents=True, exist_ok=True)
        part = _part_path(destination, job_id)
        written = 0
        try:
            with self.client.stream("GET", url) as response:
                response.raise_for_status()
                with part.open("wb") as handle:
                    for chunk in response.iter_bytes(chunk_size=_CHUNK_SIZE):
                        if cancelled.is_set():
                            raise FetchFailure("download cancelled", job_id=job_id)
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
                    handle.flush()
                    os.fsync(handle.fileno())
        except BaseException:
            part.unlink(missing_ok=True)
            raise

        if written == 0:
            part.unlink(missing_ok=True)
            logger.warning(f"Empty body from {url}; treating download as interrupted")
            return 0
        with artifact_lock(destination):
            if cancelled.is_set():
                part.unlink(missing_ok=True)
                raise FetchFailure("download cancelled", job_id=job_id)
            os.replace(part, destination)
        return written
