from __future__ import annotations

import concurrent.futures as _fut
import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception

from .chunker import iter_parts
from .config import RetryPolicy, UploadConfig
from .errors import (
    ChecksumMismatchError,
    PartUploadError,
    ReadError,
    ServiceError,
    UploadCancelled,
    UploadError,
)
from .models import Part, PartResult, PartStatus, UploadResult, UploadSession, UploadState, to_hex
from .storage import StorageClient
from .treehash import combine, leaf_hashes


logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ServiceError) and exc.retryable


class PartUploadTask:
    """Hash one part and upload it, retrying retryable service errors.

    The returned PartResult carries the tree hash that was actually sent;
    the archive-level hash is built from these values.
    """

    def __init__(
        self,
        storage: StorageClient,
        upload_id: str,
        vault_name: str,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_hashed: Optional[Callable[[PartResult], None]] = None,
    ):
        self.storage = storage
        self.upload_id = upload_id
        self.vault_name = vault_name
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.on_hashed = on_hashed

    def run(self, part: Part) -> PartResult:
        result = PartResult(index=part.index, byte_range=part.byte_range)
        result.tree_hash = combine(leaf_hashes(part.data))
        result.status = PartStatus.HASHED
        if self.on_hashed is not None:
            self.on_hashed(result)
        checksum = result.tree_hash_hex

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Part %d (%s) attempt %d/%d failed, retrying in %.2fs: %s",
                part.index, part.byte_range, retry_state.attempt_number, self.retry.max_attempts,
                retry_state.next_action.sleep, retry_state.outcome.exception(),
            )

        retrying = Retrying(
            stop=self.retry.stop(),
            wait=self.retry.wait(),
            retry=retry_if_exception(_is_retryable),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    result.attempts = attempt.retry_state.attempt_number
                    returned = self.storage.upload_part(self.upload_id, self.vault_name, part.byte_range, checksum, part.data)
        except ServiceError as exc:
            raise PartUploadError(part.byte_range, exc, result.attempts) from exc
        if returned and returned.lower() != checksum:
            raise ChecksumMismatchError(checksum, returned, part.byte_range)
        result.status = PartStatus.UPLOADED
        logger.debug("Uploaded part %d (%s) tree hash %s", part.index, part.byte_range, checksum)
        return result


class ArchiveUploader:
    """Drives one archive through initiate, part uploads, combine and complete.

    ``config.concurrency`` bounds the number of parts in flight; 1 uploads
    strictly in byte order. Any fatal error stops dispatching new parts,
    lets in-flight uploads finish, aborts the upload on the service and is
    raised as UploadError.
    """

    def __init__(
        self,
        storage: StorageClient,
        config: Optional[UploadConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_part: Optional[Callable[[PartResult], None]] = None,
    ):
        self.storage = storage
        self.config = config or UploadConfig()
        self.sleep = sleep
        self.on_part = on_part
        self.session: Optional[UploadSession] = None

    def _set_state(self, session: UploadSession, state: str) -> None:
        logger.debug("Upload %s: %s -> %s", session.upload_id, session.state, state)
        session.state = state

    def upload(self, archive_path, vault_name: str, cancel: Optional[threading.Event] = None) -> UploadResult:
        cfg = self.config.validate()
        try:
            archive_length = os.path.getsize(archive_path)
        except OSError as exc:
            raise UploadError(f"cannot read archive {archive_path}: {exc}", cause=ReadError(0, exc)) from exc
        if archive_length == 0:
            raise ValueError(f"archive {archive_path} is empty; nothing to upload")

        try:
            upload_id = self.storage.initiate_upload(vault_name, cfg.part_size)
        except ServiceError as exc:
            raise UploadError(f"initiating upload to vault {vault_name} failed: {exc}", cause=exc) from exc

        session = UploadSession(
            upload_id=upload_id,
            vault_name=vault_name,
            part_size=cfg.part_size,
            archive_length=archive_length,
        )
        self.session = session
        logger.info(
            "Uploading %s (%d bytes, %d parts of %d) to vault %s as %s",
            archive_path, archive_length, session.expected_part_count(), cfg.part_size, vault_name, upload_id,
        )
        self._set_state(session, UploadState.UPLOADING)

        try:
            self._upload_parts(session, archive_path, cancel)
            self._set_state(session, UploadState.COMBINING)
            session.archive_tree_hash = combine(session.ordered_tree_hashes())
        except Exception as exc:
            raise self._fail(session, exc, abort=True) from exc

        return self._complete(session)

    def _upload_parts(self, session: UploadSession, source, cancel: Optional[threading.Event]) -> None:
        cfg = self.config
        task = PartUploadTask(
            self.storage, session.upload_id, session.vault_name, cfg.retry, sleep=self.sleep, on_hashed=session.mark_hashed,
        )
        parts = iter_parts(source, session.part_size, session.archive_length)
        inflight: Dict[_fut.Future, PartResult] = {}
        first_error: Optional[BaseException] = None
        with _fut.ThreadPoolExecutor(max_workers=cfg.concurrency, thread_name_prefix="glacierup-part") as ex:
            try:
                while first_error is None:
                    if cancel is not None and cancel.is_set():
                        first_error = UploadCancelled(f"upload {session.upload_id} cancelled")
                        break
                    if len(inflight) >= cfg.concurrency:
                        first_error = self._collect(session, inflight, _fut.FIRST_COMPLETED)
                        continue
                    try:
                        part = next(parts)
                    except StopIteration:
                        break
                    except ReadError as exc:
                        first_error = exc
                        break
                    pending = PartResult(index=part.index, byte_range=part.byte_range)
                    session.record(pending)
                    inflight[ex.submit(task.run, part)] = pending
            finally:
                err = self._collect(session, inflight, _fut.ALL_COMPLETED)
                parts.close()
        if first_error is None:
            first_error = err
        if first_error is not None:
            raise first_error

    def _collect(self, session: UploadSession, inflight: Dict[_fut.Future, PartResult], return_when) -> Optional[BaseException]:
        """Record finished futures on the session; return the first failure."""
        if not inflight:
            return None
        done, _ = _fut.wait(list(inflight), return_when=return_when)
        error: Optional[BaseException] = None
        for fut in sorted(done, key=lambda f: inflight[f].index):
            pending = inflight.pop(fut)
            try:
                result = fut.result()
            except Exception as exc:
                pending.status = PartStatus.FAILED
                pending.error = exc
                pending.attempts = getattr(exc, "attempts", pending.attempts)
                session.record(pending)
                logger.error("Part %d (%s) failed: %s", pending.index, pending.byte_range, exc)
                if error is None:
                    error = exc
                continue
            session.record(result)
            if self.on_part is not None:
                self.on_part(result)
        return error

    def _abort(self, session: UploadSession) -> None:
        self._set_state(session, UploadState.ABORTING)
        try:
            self.storage.abort_upload(session.upload_id, session.vault_name)
        except Exception as exc:
            logger.warning("Abort of upload %s failed (ignored): %s", session.upload_id, exc)
            return
        self._set_state(session, UploadState.ABORTED)

    def _fail(self, session: UploadSession, cause: BaseException, *, abort: bool) -> UploadError:
        logger.error("Upload %s failed in state %s: %s", session.upload_id, session.state, cause)
        failed_in = session.state
        if abort:
            self._abort(session)
        self._set_state(session, UploadState.FAILED)
        return UploadError(
            f"upload {session.upload_id} to vault {session.vault_name} failed while {failed_in}: {cause}",
            cause=cause,
            state=failed_in,
            upload_id=session.upload_id,
        )

    def _complete(self, session: UploadSession) -> UploadResult:
        self._set_state(session, UploadState.COMPLETING)
        expected = to_hex(session.archive_tree_hash)
        try:
            result = self.storage.complete_upload(session.upload_id, session.vault_name, expected, session.archive_length)
        except ServiceError as exc:
            raise self._fail(session, exc, abort=True) from exc
        if result.checksum and result.checksum.lower() != expected:
            # The archive exists server-side at this point; there is nothing to abort.
            mismatch = ChecksumMismatchError(expected, result.checksum)
            raise self._fail(session, mismatch, abort=False) from mismatch
        result.upload_id = session.upload_id
        result.archive_length = session.archive_length
        result.part_count = len(session.parts)
        self._set_state(session, UploadState.COMPLETED)
        logger.info("Archive %s stored in vault %s (checksum %s)", result.archive_id, session.vault_name, result.checksum)
        return result


def upload_archive(
    archive_path,
    vault_name: str,
    part_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    *,
    storage: StorageClient,
    retry: Optional[RetryPolicy] = None,
    cancel: Optional[threading.Event] = None,
    on_part: Optional[Callable[[PartResult], None]] = None,
) -> UploadResult:
    """Upload ``archive_path`` to ``vault_name``; raises UploadError on failure."""
    cfg = UploadConfig()
    if part_size is not None:
        cfg.part_size = part_size
    if concurrency is not None:
        cfg.concurrency = concurrency
    if retry is not None:
        cfg.retry = retry
    return ArchiveUploader(storage, cfg, on_part=on_part).upload(archive_path, vault_name, cancel=cancel)
