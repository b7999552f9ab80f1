from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .constants import DIGEST_SIZE
from .errors import ChecksumMismatchError, ServiceError
from .models import ByteRange, UploadResult, to_hex
from .treehash import combine, leaf_hashes, tree_hash


logger = logging.getLogger(__name__)


class StorageClient:
    """Operations the uploader needs from a vault service.

    Every method raises ServiceError on failure; ``retryable`` tells the
    uploader whether the same call may be attempted again. A part whose
    body does not match the sent tree hash raises ChecksumMismatchError.
    """

    def initiate_upload(self, vault_name: str, part_size: int) -> str:
        raise NotImplementedError

    def upload_part(self, upload_id: str, vault_name: str, byte_range: ByteRange, tree_hash_hex: str, data: bytes) -> str:
        """Upload one part; returns the checksum the service computed."""
        raise NotImplementedError

    def complete_upload(self, upload_id: str, vault_name: str, archive_tree_hash_hex: str, archive_length: int) -> UploadResult:
        raise NotImplementedError

    def abort_upload(self, upload_id: str, vault_name: str) -> None:
        raise NotImplementedError


# Hook signature: (operation, call_number) -> Optional[Exception to raise]
FailureHook = Callable[[str, int], Optional[BaseException]]


@dataclass
class _MemoryUpload:
    vault_name: str
    part_size: int
    parts: Dict[int, Tuple[ByteRange, bytes]] = field(default_factory=dict)


class MemoryStorage(StorageClient):
    """In-process vault that verifies tree hashes the way the service does.

    Useful for tests and dry runs. ``fail`` may be set to a callable that is
    consulted before every operation; returning an exception raises it.
    """

    def __init__(self, fail: Optional[FailureHook] = None, corrupt_checksums: bool = False):
        self._lock = threading.Lock()
        self.fail = fail
        self.corrupt_checksums = corrupt_checksums
        self.uploads: Dict[str, _MemoryUpload] = {}
        self.archives: Dict[str, Dict[str, object]] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._counters: Dict[str, int] = {}

    def _enter(self, op: str, *args) -> None:
        with self._lock:
            n = self._counters.get(op, 0) + 1
            self._counters[op] = n
            self.calls.append((op, args))
        if self.fail is not None:
            exc = self.fail(op, n)
            if exc is not None:
                raise exc

    def call_count(self, op: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == op)

    def _get(self, upload_id: str, vault_name: str) -> _MemoryUpload:
        up = self.uploads.get(upload_id)
        if up is None or up.vault_name != vault_name:
            raise ServiceError(f"upload {upload_id} not found in vault {vault_name}", retryable=False, code="ResourceNotFoundException")
        return up

    def initiate_upload(self, vault_name: str, part_size: int) -> str:
        self._enter("initiate_upload", vault_name, part_size)
        upload_id = uuid.uuid4().hex
        with self._lock:
            self.uploads[upload_id] = _MemoryUpload(vault_name=vault_name, part_size=part_size)
        return upload_id

    def upload_part(self, upload_id: str, vault_name: str, byte_range: ByteRange, tree_hash_hex: str, data: bytes) -> str:
        self._enter("upload_part", upload_id, vault_name, byte_range, tree_hash_hex)
        with self._lock:
            up = self._get(upload_id, vault_name)
        if len(data) != byte_range.length:
            raise ServiceError(f"body is {len(data)} bytes, range {byte_range} declares {byte_range.length}", code="InvalidParameterValueException")
        if byte_range.start % up.part_size != 0 or byte_range.length > up.part_size:
            raise ServiceError(f"range {byte_range} does not align with part size {up.part_size}", code="InvalidParameterValueException")
        if len(tree_hash_hex) != 2 * DIGEST_SIZE:
            raise ServiceError(f"checksum {tree_hash_hex!r} is not a SHA-256 hex digest", code="InvalidParameterValueException")
        computed = to_hex(tree_hash(data))
        if computed != tree_hash_hex:
            raise ChecksumMismatchError(tree_hash_hex, computed, byte_range)
        with self._lock:
            up.parts[byte_range.start // up.part_size] = (byte_range, bytes(data))
        if self.corrupt_checksums:
            return "0" * 64
        return computed

    def assembled(self, upload_id: str) -> bytes:
        """Bytes received so far for ``upload_id``, in part order."""
        up = self.uploads[upload_id]
        return b"".join(data for _, (_, data) in sorted(up.parts.items()))

    def complete_upload(self, upload_id: str, vault_name: str, archive_tree_hash_hex: str, archive_length: int) -> UploadResult:
        self._enter("complete_upload", upload_id, vault_name, archive_tree_hash_hex, archive_length)
        with self._lock:
            up = self._get(upload_id, vault_name)
            payload = self.assembled(upload_id)
        if len(payload) != archive_length:
            raise ServiceError(f"received {len(payload)} bytes, archive size is {archive_length}", code="InvalidParameterValueException")
        computed = to_hex(combine(leaf_hashes(payload)))
        if computed != archive_tree_hash_hex:
            raise ServiceError(
                f"archive checksum mismatch: expected {archive_tree_hash_hex}, computed {computed}",
                code="InvalidParameterValueException",
            )
        archive_id = uuid.uuid4().hex
        with self._lock:
            self.archives[archive_id] = {"vault": vault_name, "data": payload, "checksum": computed}
            del self.uploads[upload_id]
        return UploadResult(
            archive_id=archive_id,
            location=f"/-/vaults/{vault_name}/archives/{archive_id}",
            checksum=computed,
            upload_id=upload_id,
            archive_length=archive_length,
        )

    def abort_upload(self, upload_id: str, vault_name: str) -> None:
        self._enter("abort_upload", upload_id, vault_name)
        with self._lock:
            up = self._get(upload_id, vault_name)
            del self.uploads[upload_id]
        logger.debug("Discarded upload %s (%d parts received)", upload_id, len(up.parts))
