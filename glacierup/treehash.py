from __future__ import annotations

import hashlib
import io
import os
from typing import BinaryIO, Iterable, List, Optional, Sequence, Union

from .constants import LEAF_SIZE
from .errors import EmptyInputError


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def leaf_hash(window: bytes) -> bytes:
    """SHA-256 of one leaf window (at most 1 MiB, no padding)."""
    if len(window) > LEAF_SIZE:
        raise ValueError(f"leaf window is {len(window)} bytes, limit is {LEAF_SIZE}")
    return sha256(window)


def tree_parent(left: bytes, right: bytes) -> bytes:
    return sha256(left + right)


def combine(digests: Sequence[bytes]) -> bytes:
    """
    Folds an ordered digest sequence into its tree-hash root.

    Pairs are combined left to right at each level; an odd trailing digest
    is promoted unchanged to the next level. Order matters.
    """
    level = list(digests)
    if not level:
        raise EmptyInputError("tree hash of zero digests is undefined")
    while len(level) > 1:
        nxt: List[bytes] = []
        it = iter(level)
        for left in it:
            try:
                right = next(it)
            except StopIteration:
                nxt.append(left)  # promote
                break
            nxt.append(tree_parent(left, right))
        level = nxt
    return level[0]


def leaf_hashes(data: bytes) -> List[bytes]:
    """Leaf digests of ``data`` split into 1 MiB windows.

    Empty input yields a single digest of the empty string.
    """
    if not data:
        return [sha256(b"")]
    view = memoryview(data)
    return [leaf_hash(view[pos : pos + LEAF_SIZE]) for pos in range(0, len(data), LEAF_SIZE)]


def tree_hash(data: bytes) -> bytes:
    return combine(leaf_hashes(data))


class TreeHashReader(io.RawIOBase):
    """Read-through wrapper that records a leaf digest per 1 MiB streamed.

    Leaf digests (and the tree hash) are only available once the reader has
    been closed; a trailing partial window is digested on close.
    """

    def __init__(self, raw: BinaryIO):
        super().__init__()
        self._raw = raw
        self._hasher = hashlib.sha256()
        self._window_fill = 0
        self._leaves: List[bytes] = []
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("read from closed TreeHashReader")
        want = len(b)
        total = 0
        mv = memoryview(b)
        while total < want:
            step = min(LEAF_SIZE - self._window_fill, want - total)
            chunk = self._raw.read(step)
            if not chunk:
                break
            n = len(chunk)
            mv[total : total + n] = chunk
            self._hasher.update(chunk)
            self._window_fill += n
            total += n
            self._digest_window()
        self.bytes_read += total
        return total

    def _digest_window(self, *, force: bool = False) -> None:
        if self._window_fill >= LEAF_SIZE or (force and self._window_fill > 0):
            self._leaves.append(self._hasher.digest())
            self._hasher = hashlib.sha256()
            self._window_fill = 0

    def close(self) -> None:
        if not self.closed:
            self._digest_window(force=True)
        super().close()

    @property
    def leaf_digests(self) -> List[bytes]:
        if not self.closed:
            raise ValueError("reader must be closed before leaf digests are final")
        if not self._leaves:
            return [sha256(b"")]
        return list(self._leaves)

    @property
    def tree_hash(self) -> bytes:
        return combine(self.leaf_digests)


def iter_leaf_hashes(fh: BinaryIO, buffer_size: int = LEAF_SIZE) -> Iterable[bytes]:
    reader = TreeHashReader(fh)
    try:
        buf = bytearray(buffer_size)
        while reader.readinto(buf):
            pass
    finally:
        reader.close()
    return reader.leaf_digests


def tree_hash_file(path: Union[str, os.PathLike], *, buffer_size: Optional[int] = None) -> bytes:
    """Flat tree hash of a whole file over all of its 1 MiB leaves.

    For part sizes that are a power-of-two number of MiB this equals the
    root obtained by combining per-part tree hashes.
    """
    with open(path, "rb") as fh:
        return combine(list(iter_leaf_hashes(fh, buffer_size or LEAF_SIZE)))
