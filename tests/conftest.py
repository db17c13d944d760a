from __future__ import annotations

import logging
import random
import struct
from pathlib import Path

import lzo
import pytest

from m2pack.archive import HEADER_SIZE, PACK_MAGIC, PACK_VERSION, align_up
from m2pack.extract import BLOCK_SIZE


def build_pack(
    files: list[tuple[str, bytes]],
    compress: bool = True,
    block_size: int = BLOCK_SIZE,
    magic: int = PACK_MAGIC,
    version: int = PACK_VERSION,
    overrides: dict[str, dict[str, int]] | None = None,
    stored_chunks: dict[str, list[bytes]] | None = None,
) -> bytes:
    """Serialize ``files`` into a .pack image.

    A block is stored compressed only when that shrinks it and the reader
    cannot mistake the compressed stream for a raw chunk. ``stored_chunks``
    supplies the exact chunk payloads for a path instead.
    """
    overrides = overrides or {}
    stored_chunks = stored_chunks or {}
    blobs: list[bytes] = []
    records: list[dict] = []
    for path, data in files:
        first = len(blobs)
        written = 0
        stored = 0
        if path in stored_chunks:
            blobs.extend(stored_chunks[path])
            stored = sum(len(blob) for blob in stored_chunks[path])
        else:
            for start in range(0, len(data), block_size):
                block = data[start : start + block_size]
                blob = block
                if compress:
                    packed = lzo.compress(block, 1, False)
                    ambiguous = len(packed) == block_size or written + len(packed) == len(data)
                    if len(packed) < len(block) and not ambiguous:
                        blob = packed
                blobs.append(blob)
                written += len(block)
                stored += len(blob)
        records.append(
            {
                "path": path.encode("utf-8"),
                "first_chunk": first,
                "decompressed_size": len(data),
                "stored_size": stored,
            }
        )

    section_start = HEADER_SIZE + 4 * (len(records) + len(blobs))
    record_offsets: list[int] = []
    cursor = section_start
    for rec in records:
        record_offsets.append(cursor - section_start)
        cursor = align_up(cursor + 16 + len(rec["path"]) + 1)
    data_start = cursor

    chunk_offsets: list[int] = []
    offset = data_start
    for blob in blobs:
        chunk_offsets.append(offset)
        offset += len(blob)
    chunk_offsets.append(offset)

    section = bytearray()
    for rec in records:
        fields = {
            "data_offset": chunk_offsets[rec["first_chunk"]],
            "first_chunk": rec["first_chunk"],
            "decompressed_size": rec["decompressed_size"],
            "stored_size": rec["stored_size"],
        }
        fields.update(overrides.get(rec["path"].decode("utf-8"), {}))
        section += struct.pack(
            "<4I",
            fields["data_offset"],
            fields["first_chunk"],
            fields["decompressed_size"],
            fields["stored_size"],
        )
        section += rec["path"] + b"\x00"
        section += b"\x00" * (-(section_start + len(section)) % 4)

    out = bytearray()
    out += struct.pack("<5I", magic, version, len(records), len(section), len(blobs))
    out += struct.pack(f"<{len(records)}I", *record_offsets)
    out += struct.pack(f"<{len(blobs)}I", *(len(b) for b in blobs))
    out += section
    for blob in blobs:
        out += blob
    return bytes(out)


def sample_files() -> list[tuple[str, bytes]]:
    rng = random.Random(1234)
    return [
        ("units/infantry.txt", b"spearmen, 240 men, light_spear\n" * 6000),
        ("units/cavalry.dat", rng.randbytes(70000)),
        ("maps/base/regions.txt", b"region Lombardy\n" * 50),
        ("data/empty.txt", b""),
        ("units/readme.txt", b"x"),
    ]


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    log = logging.getLogger("m2pack")
    for handler in list(log.handlers):
        log.removeHandler(handler)
    log.setLevel(logging.NOTSET)


@pytest.fixture
def files() -> list[tuple[str, bytes]]:
    return sample_files()


@pytest.fixture
def pack_bytes():
    return build_pack


@pytest.fixture
def make_pack(tmp_path: Path):
    def _make(files: list[tuple[str, bytes]], name: str = "test.pack", **kwargs) -> Path:
        path = tmp_path / name
        path.write_bytes(build_pack(files, **kwargs))
        return path

    return _make
