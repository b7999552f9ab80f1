from __future__ import annotations

import binascii
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import UploadError


class PartStatus:
    PENDING = "pending"
    HASHED = "hashed"
    UPLOADED = "uploaded"
    FAILED = "failed"


class UploadState:
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMBINING = "combining"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTING = "aborting"
    ABORTED = "aborted"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


def to_hex(digest: bytes) -> str:
    return binascii.hexlify(digest).decode("ascii")


def from_hex(text: str) -> bytes:
    return binascii.unhexlify(text.strip())


@dataclass(frozen=True)
class ByteRange:
    """Half-open byte range ``[start, end)`` of the archive."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def content_range(self) -> str:
        # The vault service expects an inclusive range with an unknown total.
        return f"bytes {self.start}-{self.end - 1}/*"

    def __str__(self) -> str:
        return f"bytes[{self.start}:{self.end})"


@dataclass
class Part:
    index: int
    byte_range: ByteRange
    data: bytes

    @property
    def length(self) -> int:
        return self.byte_range.length


@dataclass
class PartResult:
    index: int
    byte_range: ByteRange
    tree_hash: Optional[bytes] = None
    status: str = PartStatus.PENDING
    attempts: int = 0
    error: Optional[BaseException] = None

    @property
    def tree_hash_hex(self) -> Optional[str]:
        return to_hex(self.tree_hash) if self.tree_hash is not None else None


@dataclass
class UploadResult:
    archive_id: str
    location: str
    checksum: str
    upload_id: Optional[str] = None
    archive_length: int = 0
    part_count: int = 0


@dataclass
class UploadSession:
    """Server-tracked upload context.

    The orchestrator records results; part workers only flip their own
    pending entry to HASHED through ``mark_hashed``.
    """

    upload_id: str
    vault_name: str
    part_size: int
    archive_length: int
    parts: List[PartResult] = field(default_factory=list)
    state: str = UploadState.INITIATED
    archive_tree_hash: Optional[bytes] = None

    @property
    def finished(self) -> bool:
        return self.state in UploadState.TERMINAL

    def expected_part_count(self) -> int:
        return -(-self.archive_length // self.part_size)

    def expected_range(self, index: int) -> ByteRange:
        start = index * self.part_size
        return ByteRange(start, min(start + self.part_size, self.archive_length))

    def record(self, result: PartResult) -> None:
        """Store ``result`` at its part index, regardless of completion order."""
        expected = self.expected_range(result.index)
        if result.byte_range != expected:
            raise UploadError(
                f"part {result.index} covers {result.byte_range}, expected {expected}",
                state=self.state,
                upload_id=self.upload_id,
            )
        while len(self.parts) <= result.index:
            idx = len(self.parts)
            self.parts.append(PartResult(index=idx, byte_range=self.expected_range(idx)))
        self.parts[result.index] = result

    def mark_hashed(self, result: PartResult) -> None:
        """Show a dispatched part as hashed while its upload is still running."""
        if result.index < len(self.parts):
            entry = self.parts[result.index]
            if entry.status == PartStatus.PENDING:
                entry.tree_hash = result.tree_hash
                entry.status = PartStatus.HASHED

    def check_coverage(self) -> None:
        """Parts must tile ``[0, archive_length)`` exactly."""
        pos = 0
        for p in self.parts:
            if p.byte_range.start != pos:
                raise UploadError(
                    f"gap or overlap at byte {pos} (part {p.index} starts at {p.byte_range.start})",
                    state=self.state,
                    upload_id=self.upload_id,
                )
            if p.byte_range.length <= 0 or p.byte_range.length > self.part_size:
                raise UploadError(f"part {p.index} has invalid length {p.byte_range.length}", state=self.state, upload_id=self.upload_id)
            pos = p.byte_range.end
        if pos != self.archive_length:
            raise UploadError(
                f"parts cover {pos} bytes, archive is {self.archive_length}",
                state=self.state,
                upload_id=self.upload_id,
            )

    def ordered_tree_hashes(self) -> List[bytes]:
        self.check_coverage()
        hashes: List[bytes] = []
        for p in self.parts:
            if p.status != PartStatus.UPLOADED or p.tree_hash is None:
                raise UploadError(f"part {p.index} is {p.status}, not uploaded", state=self.state, upload_id=self.upload_id)
            hashes.append(p.tree_hash)
        return hashes
