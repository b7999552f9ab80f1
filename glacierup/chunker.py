from __future__ import annotations

import os
from typing import BinaryIO, Iterator, Optional, Union

from .errors import ReadError
from .models import ByteRange, Part


Source = Union[str, "os.PathLike[str]", BinaryIO]


def _read_full(fh: BinaryIO, size: int, offset: int) -> bytes:
    # Short reads are legal for raw streams; keep reading until full or EOF.
    buf = bytearray()
    while len(buf) < size:
        try:
            chunk = fh.read(size - len(buf))
        except OSError as exc:
            raise ReadError(offset + len(buf), exc) from exc
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def _iter_from_handle(fh: BinaryIO, part_size: int, archive_length: Optional[int]) -> Iterator[Part]:
    offset = 0
    idx = 0
    while True:
        data = _read_full(fh, part_size, offset)
        if not data:
            break
        end = offset + len(data)
        if archive_length is not None and end > archive_length:
            raise ReadError(offset, message=f"archive grew past {archive_length} bytes while reading")
        if archive_length is not None and len(data) < part_size and end < archive_length:
            raise ReadError(end, message=f"archive ended at {end} bytes, expected {archive_length}")
        yield Part(index=idx, byte_range=ByteRange(offset, end), data=data)
        offset = end
        idx += 1
        if len(data) < part_size:
            break
    if archive_length is not None and offset != archive_length:
        raise ReadError(offset, message=f"archive ended at {offset} bytes, expected {archive_length}")


def iter_parts(source: Source, part_size: int, archive_length: Optional[int] = None) -> Iterator[Part]:
    """Yield consecutive parts of ``part_size`` bytes (the last may be shorter).

    The generator is lazy and forward-only: one part buffer is produced at a
    time and it cannot be restarted. ``source`` is a path or an open binary
    handle positioned at the start of the archive. When ``archive_length``
    is given, an archive that shrinks or grows while being read is an error.
    """
    if isinstance(part_size, bool) or not isinstance(part_size, int) or part_size <= 0:
        raise ValueError(f"part_size must be a positive integer, got {part_size!r}")
    if hasattr(source, "read"):
        yield from _iter_from_handle(source, part_size, archive_length)
        return
    try:
        fh = open(source, "rb")
    except OSError as exc:
        raise ReadError(0, exc) from exc
    with fh:
        yield from _iter_from_handle(fh, part_size, archive_length)
