"""Reassemble and write out the entries of a parsed .pack archive.

Chunks carry no compression flag. A chunk is written verbatim when it is
exactly one LZO block long, or when its stored length is exactly what the
entry still needs; every other chunk is a headerless LZO1X stream that
inflates to at most one block.
"""

from __future__ import annotations

import enum
import fnmatch
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator

import lzo

from m2pack.archive import ArchiveIndex, Chunk, Entry, read_exact
from m2pack.errors import CorruptEntryError, DecompressionError


BLOCK_SIZE = 65536

INVALID_WIN_CHARS = re.compile(r'[<>:"|?*]')

logger = logging.getLogger(__name__)


class ChunkKind(enum.Enum):
    RAW = "raw"
    COMPRESSED = "compressed"


@dataclass
class ExtractOptions:
    dest: Path = Path(".")
    filter: str | None = None
    workers: int = 1


@dataclass
class EntryResult:
    entry: Entry
    output_path: Path
    bytes_written: int = 0
    raw_chunks: int = 0
    compressed_chunks: int = 0
    renamed: bool = False


@dataclass
class ExtractSummary:
    archive: str
    output_dir: str
    filter: str | None
    total_entries: int
    extracted_files: int = 0
    skipped_files: int = 0
    raw_chunks: int = 0
    compressed_chunks: int = 0
    bytes_written: int = 0
    warnings: list[str] = field(default_factory=list)

    def add(self, result: EntryResult) -> None:
        self.extracted_files += 1
        self.raw_chunks += result.raw_chunks
        self.compressed_chunks += result.compressed_chunks
        self.bytes_written += result.bytes_written
        if result.renamed:
            self.warnings.append(f"{result.entry.path}: written as {result.output_path}")


def classify_chunk(stored_size: int, written: int, decompressed_size: int, block_size: int = BLOCK_SIZE) -> ChunkKind:
    """Decide whether a chunk is stored verbatim or LZO-compressed.

    ``written`` is the number of decompressed bytes already produced for the
    entry. A compressed chunk whose stored size happens to equal the block
    size, or to exactly fill the remainder of the entry, is reported as RAW.
    """
    if stored_size == block_size:
        return ChunkKind.RAW
    if written + stored_size == decompressed_size:
        return ChunkKind.RAW
    return ChunkKind.COMPRESSED


def decompress_chunk(data: bytes, block_size: int = BLOCK_SIZE) -> bytes:
    return lzo.decompress(data, False, block_size)


def matches_filter(path: str, pattern: str | None) -> bool:
    """Shell-style match where ``*``, ``?`` and ``[...]`` stay within one path
    segment and a ``**`` segment spans any number of segments."""
    if pattern is None:
        return True
    return _match_segments(path.split("/"), pattern.split("/"))


def _match_segments(parts: list[str], pats: list[str]) -> bool:
    if not pats:
        return not parts
    head, rest = pats[0], pats[1:]
    if head == "**":
        return any(_match_segments(parts[i:], rest) for i in range(len(parts) + 1))
    if not parts:
        return False
    return fnmatch.fnmatchcase(parts[0], head) and _match_segments(parts[1:], rest)


def sanitize_part(part: str) -> str:
    cleaned = INVALID_WIN_CHARS.sub("_", part).strip()
    if cleaned in {"", ".", ".."}:
        return "_"
    return cleaned


def safe_rel_path(raw_name: str) -> Path:
    normalized = raw_name.replace("\\", "/").strip().lstrip("/")
    p = PurePosixPath(normalized)
    parts = [sanitize_part(x) for x in p.parts if x not in {"", ".", ".."}]
    if not parts:
        parts = ["_unnamed"]
    return Path(*parts)


def iter_entry_chunks(
    index: ArchiveIndex,
    entry: Entry,
    source: BinaryIO,
    block_size: int = BLOCK_SIZE,
    log: logging.Logger | None = None,
) -> Iterator[tuple[Chunk, ChunkKind, bytes]]:
    """Yield each chunk of ``entry`` with its decoded payload, in chunk order.

    Raises CorruptEntryError once the chunks are exhausted if the decoded
    total differs from the entry's declared size.
    """
    log = log or logger
    source.seek(entry.data_offset)
    written = 0
    for chunk in index.chunks_of(entry):
        data = read_exact(source, chunk.size)
        kind = classify_chunk(chunk.size, written, entry.decompressed_size, block_size)
        if kind is ChunkKind.COMPRESSED:
            try:
                data = decompress_chunk(data, block_size)
            except lzo.error as exc:
                raise DecompressionError(index.name, entry.path, chunk.index, exc) from exc
        log.debug("%s: chunk #%d at 0x%X: %s %d -> %d bytes", entry.path, chunk.index, chunk.offset, kind.value, chunk.size, len(data))
        written += len(data)
        yield chunk, kind, data

    if written != entry.decompressed_size:
        raise CorruptEntryError(entry.path, entry.decompressed_size, written)


def extract_entry(
    index: ArchiveIndex,
    entry: Entry,
    source: BinaryIO,
    dest: Path,
    block_size: int = BLOCK_SIZE,
    log: logging.Logger | None = None,
) -> EntryResult:
    log = log or logger
    rel = safe_rel_path(entry.path)
    result = EntryResult(entry=entry, output_path=dest / rel)
    if rel.as_posix() != entry.path.replace("\\", "/"):
        result.renamed = True
        log.warning("%s: %s will be written as %s", index.name, entry.path, rel.as_posix())

    log.info("%s: %d/%d => %s", index.name, entry.index + 1, len(index), entry.path)

    out_dir = result.output_path.parent
    if not out_dir.is_dir():
        log.debug("Creating directory: %s", out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)

    with result.output_path.open("wb") as out:
        for _chunk, kind, data in iter_entry_chunks(index, entry, source, block_size=block_size, log=log):
            out.write(data)
            result.bytes_written += len(data)
            if kind is ChunkKind.RAW:
                result.raw_chunks += 1
            else:
                result.compressed_chunks += 1
    return result


def _extract_from_path(
    index: ArchiveIndex,
    entry: Entry,
    archive_path: Path,
    dest: Path,
    log: logging.Logger,
) -> EntryResult:
    # One handle per task so concurrent seeks never share a file position.
    with archive_path.open("rb") as source:
        return extract_entry(index, entry, source, dest, log=log)


def extract_archive(
    index: ArchiveIndex,
    archive_path: Path,
    options: ExtractOptions,
    log: logging.Logger | None = None,
) -> ExtractSummary:
    """Write every entry of ``index`` that matches ``options.filter``.

    Entries are processed in archive order. With ``options.workers`` above one
    they are spread over a thread pool instead; the files written are the
    same either way.
    """
    log = log or logger
    summary = ExtractSummary(
        archive=str(archive_path),
        output_dir=str(options.dest),
        filter=options.filter,
        total_entries=len(index),
    )

    selected: list[Entry] = []
    for entry in index:
        if matches_filter(entry.path, options.filter):
            selected.append(entry)
        else:
            summary.skipped_files += 1

    options.dest.mkdir(parents=True, exist_ok=True)

    if options.workers <= 1:
        with archive_path.open("rb") as source:
            for entry in selected:
                summary.add(extract_entry(index, entry, source, options.dest, log=log))
        return summary

    with ThreadPoolExecutor(max_workers=options.workers) as pool:
        futures = [
            pool.submit(_extract_from_path, index, entry, archive_path, options.dest, log)
            for entry in selected
        ]
        try:
            for future in futures:
                summary.add(future.result())
        except BaseException:
            for future in futures:
                future.cancel()
            raise
    return summary
