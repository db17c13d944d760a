"""Exception types raised while reading and extracting .pack archives."""

from __future__ import annotations


class PackError(RuntimeError):
    pass


class InputError(PackError):
    pass


class FormatError(PackError):
    pass


class SignatureError(FormatError):
    def __init__(self, magic: int) -> None:
        super().__init__(f"Invalid signature: 0x{magic:08X}")
        self.magic = magic


class VersionError(FormatError):
    def __init__(self, version: int) -> None:
        super().__init__(f"Unsupported version: 0x{version:X}")
        self.version = version


class TruncatedArchiveError(FormatError):
    def __init__(self, offset: int, expected: int, actual: int) -> None:
        super().__init__(f"Short read at 0x{offset:X}: wanted {expected} bytes, got {actual}")
        self.offset = offset
        self.expected = expected
        self.actual = actual


class CorruptEntryError(PackError):
    def __init__(self, path: str, expected: int, actual: int) -> None:
        super().__init__(f"{path}: decompressed to {actual} bytes, header declares {expected}")
        self.path = path
        self.expected = expected
        self.actual = actual


class DecompressionError(PackError):
    def __init__(self, archive: str, path: str, chunk_index: int, cause: Exception) -> None:
        super().__init__(f"{archive}: {path}: Failed to decompress chunk #{chunk_index}: {cause}")
        self.archive = archive
        self.path = path
        self.chunk_index = chunk_index
        self.cause = cause
