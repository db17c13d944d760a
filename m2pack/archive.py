"""Reader for Medieval II: Total War .pack archives.

Layout (little-endian):
- Header: magic, version, entry count, entry section size, chunk count
- u32 entry offsets, one per entry
- u32 stored chunk sizes, one per chunk
- Entry records: data offset, first chunk, decompressed size, stored size,
  NUL-terminated path, padded to the next 4-byte boundary of the stream
- Chunk payloads, back to back, in chunk table order

Chunk offsets are never stored. They are recovered by summing the chunk size
table from the end of the entry section.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

import numpy as np

from m2pack.errors import FormatError, SignatureError, TruncatedArchiveError, VersionError


PACK_MAGIC = 0x4B434150  # b"PACK"
PACK_VERSION = 0x00030000

HEADER = struct.Struct("<5I")
HEADER_SIZE = HEADER.size
RECORD = struct.Struct("<4I")
RECORD_ALIGNMENT = 4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackHeader:
    version: int
    entry_count: int
    entry_section_size: int
    chunk_count: int


@dataclass(frozen=True)
class Chunk:
    index: int
    offset: int
    size: int


@dataclass(frozen=True)
class EntryRecord:
    record_offset: int
    data_offset: int
    first_chunk: int
    decompressed_size: int
    stored_size: int
    path: str


@dataclass(frozen=True)
class Entry:
    index: int
    path: str
    data_offset: int
    decompressed_size: int
    stored_size: int
    first_chunk: int
    chunk_count: int
    record_offset: int

    @property
    def chunk_indices(self) -> range:
        return range(self.first_chunk, self.first_chunk + self.chunk_count)


@dataclass(frozen=True)
class ArchiveIndex:
    """Parsed, read-only view of one archive.

    Entries refer to their chunks by position in the archive-wide ``chunks``
    table; use :meth:`chunks_of` to resolve them.
    """

    name: str
    header: PackHeader
    entry_offsets: tuple[int, ...]
    chunks: tuple[Chunk, ...]
    entries: tuple[Entry, ...]

    @property
    def data_start(self) -> int:
        return HEADER_SIZE + 4 * (self.header.entry_count + self.header.chunk_count) + self.header.entry_section_size

    def chunks_of(self, entry: Entry) -> tuple[Chunk, ...]:
        return self.chunks[entry.first_chunk : entry.first_chunk + entry.chunk_count]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)


def align_up(offset: int, alignment: int = RECORD_ALIGNMENT) -> int:
    return offset + (-offset % alignment)


def read_exact(stream: BinaryIO, size: int) -> bytes:
    offset = stream.tell()
    data = stream.read(size)
    if len(data) != size:
        raise TruncatedArchiveError(offset, size, len(data))
    return data


def read_header(stream: BinaryIO) -> PackHeader:
    magic, version = struct.unpack("<2I", read_exact(stream, 8))
    if magic != PACK_MAGIC:
        raise SignatureError(magic)
    if version != PACK_VERSION:
        raise VersionError(version)
    entry_count, entry_section_size, chunk_count = struct.unpack("<3I", read_exact(stream, HEADER_SIZE - 8))
    return PackHeader(
        version=version,
        entry_count=entry_count,
        entry_section_size=entry_section_size,
        chunk_count=chunk_count,
    )


def read_u32_table(stream: BinaryIO, count: int) -> np.ndarray:
    if count == 0:
        return np.zeros(0, dtype="<u4")
    return np.frombuffer(read_exact(stream, 4 * count), dtype="<u4", count=count)


def build_chunk_table(sizes: np.ndarray, data_start: int) -> tuple[tuple[Chunk, ...], np.ndarray]:
    """Lay chunks out back to back from ``data_start``.

    Returns the chunk table and the prefix sum of stored sizes (one element
    longer than the table, starting at zero).
    """
    prefix = np.zeros(len(sizes) + 1, dtype=np.uint64)
    np.cumsum(sizes, dtype=np.uint64, out=prefix[1:])
    offsets = (prefix[:-1] + np.uint64(data_start)).tolist()
    chunks = tuple(
        Chunk(index=i, offset=offset, size=size)
        for i, (offset, size) in enumerate(zip(offsets, sizes.tolist()))
    )
    return chunks, prefix


def parse_entry_records(section: bytes, section_start: int, count: int) -> list[EntryRecord]:
    records: list[EntryRecord] = []
    cursor = 0
    for i in range(count):
        record_offset = section_start + cursor
        if cursor + RECORD.size > len(section):
            raise FormatError(f"Entry record #{i} at 0x{record_offset:X} overruns the entry section.")
        data_offset, first_chunk, decompressed_size, stored_size = RECORD.unpack_from(section, cursor)
        name_start = cursor + RECORD.size
        name_end = section.find(b"\x00", name_start)
        if name_end < 0:
            raise FormatError(f"Entry record #{i} at 0x{record_offset:X} has an unterminated path.")
        try:
            path = section[name_start:name_end].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError(f"Entry record #{i} at 0x{record_offset:X} has a non UTF-8 path.") from exc
        records.append(
            EntryRecord(
                record_offset=record_offset,
                data_offset=data_offset,
                first_chunk=first_chunk,
                decompressed_size=decompressed_size,
                stored_size=stored_size,
                path=path,
            )
        )
        # Padding is measured from the start of the stream, not the section.
        cursor = align_up(section_start + name_end + 1) - section_start
    return records


def resolve_chunk_run(record: EntryRecord, prefix: np.ndarray) -> int:
    """Count the chunks an entry spans, starting at its first chunk.

    The run ends at the first chunk where the accumulated stored size reaches
    the entry's stored size.
    """
    if record.stored_size == 0:
        return 0
    chunk_count = len(prefix) - 1
    first = record.first_chunk
    if first >= chunk_count:
        raise FormatError(f"{record.path}: first chunk #{first} is outside the chunk table ({chunk_count} chunks).")
    target = np.uint64(int(prefix[first]) + record.stored_size)
    end = int(np.searchsorted(prefix, target, side="left"))
    if end > chunk_count:
        raise FormatError(
            f"{record.path}: {record.stored_size} stored bytes from chunk #{first} overrun the chunk table."
        )
    return end - first


def build_entries(records: list[EntryRecord], chunks: tuple[Chunk, ...], prefix: np.ndarray) -> tuple[Entry, ...]:
    entries: list[Entry] = []
    for i, record in enumerate(records):
        count = resolve_chunk_run(record, prefix)
        if count and chunks[record.first_chunk].offset != record.data_offset:
            raise FormatError(
                f"{record.path}: data offset 0x{record.data_offset:X} does not match "
                f"chunk #{record.first_chunk} at 0x{chunks[record.first_chunk].offset:X}."
            )
        entries.append(
            Entry(
                index=i,
                path=record.path,
                data_offset=record.data_offset,
                decompressed_size=record.decompressed_size,
                stored_size=record.stored_size,
                first_chunk=record.first_chunk,
                chunk_count=count,
                record_offset=record.record_offset,
            )
        )
    return tuple(entries)


def parse_archive(stream: BinaryIO, name: str = "<stream>", log: logging.Logger | None = None) -> ArchiveIndex:
    log = log or logger
    header = read_header(stream)
    log.debug(
        "%s: version=0x%X entries=%d chunks=%d entry_section=%d bytes",
        name,
        header.version,
        header.entry_count,
        header.chunk_count,
        header.entry_section_size,
    )

    entry_offsets = read_u32_table(stream, header.entry_count)
    chunk_sizes = read_u32_table(stream, header.chunk_count)

    section_start = stream.tell()
    chunks, prefix = build_chunk_table(chunk_sizes, section_start + header.entry_section_size)

    section = read_exact(stream, header.entry_section_size)
    records = parse_entry_records(section, section_start, header.entry_count)
    entries = build_entries(records, chunks, prefix)

    log.debug("%s: indexed %d entries over %d chunks", name, len(entries), len(chunks))
    return ArchiveIndex(
        name=name,
        header=header,
        entry_offsets=tuple(entry_offsets.tolist()),
        chunks=chunks,
        entries=entries,
    )


def open_archive(path: Path, log: logging.Logger | None = None) -> ArchiveIndex:
    with path.open("rb") as stream:
        return parse_archive(stream, name=path.name, log=log)
