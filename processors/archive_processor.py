"""
Archive Inspector

Walks compressed containers and rejects the whole upload on the first
violation. Handles ZIP, TAR and TAR/single-member payloads compressed with
gzip, bzip2 or xz. 7z and RAR cannot be walked with streaming reads and are
rejected as unsupported.

Per entry, checks run in a fixed order:
  1. path traversal (absolute names, drive letters, ``..`` components)
  2. entry count
  3. decompressed size: first the size the header declares, then the bytes
     actually produced while streaming, shared across every nesting level
  4. nesting depth, for entries that sniff as containers
  5. entry name and header bytes through the ContentSniffer

Memory stays bounded by the read chunk, the sniff window and the spool
threshold of nested containers (which spill to disk past it); nothing is
sized from attacker-declared header values. Tar metadata blocks count
against the same byte budget as member content.
"""

from __future__ import annotations

import bz2
import gzip
import lzma
import re
import tarfile
import tempfile
import zipfile
import zlib
from dataclasses import dataclass
from typing import IO, Callable, Dict, FrozenSet, Optional

from config.settings import settings
from models.errors import ArchiveRule, ArchiveViolationError
from services.mime_sniffing import ContentSniffer, SignatureMatch, SniffResult
from utils.logger import get_logger

logger = get_logger(__name__)

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_TAR_MAGIC = b"ustar"
_TAR_MAGIC_OFFSET = 257

_COMPRESSED_SUFFIXES = (".tgz", ".tbz2", ".txz", ".gz", ".bz2", ".xz")

_DECOMPRESSORS: Dict[str, Callable[[IO[bytes]], IO[bytes]]] = {
    "application/gzip": lambda fh: gzip.GzipFile(fileobj=fh, mode="rb"),
    "application/x-bzip2": lambda fh: bz2.BZ2File(fh, mode="rb"),
    "application/x-xz": lambda fh: lzma.LZMAFile(fh, mode="rb"),
}

_CORRUPT_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    EOFError,
    zlib.error,
    lzma.LZMAError,
    OSError,
)


@dataclass(frozen=True)
class InspectionLimits:
    max_decompressed_bytes: int
    max_depth: int
    max_entries: int
    chunk_size: int = 64 * 1024
    spool_threshold: int = 1024 * 1024
    # declared uncompressed / compressed size of a zip entry; None disables
    max_compression_ratio: Optional[int] = None

    @classmethod
    def from_settings(cls) -> "InspectionLimits":
        return cls(
            max_decompressed_bytes=settings.MAX_DECOMPRESSED_SIZE,
            max_depth=settings.MAX_NESTING_DEPTH,
            max_entries=settings.MAX_ARCHIVE_ENTRIES,
            max_compression_ratio=settings.MAX_COMPRESSION_RATIO,
        )


@dataclass(frozen=True)
class ArchiveVerdict:
    ok: bool
    rule: Optional[ArchiveRule] = None
    entry_name: Optional[str] = None
    detail: Optional[str] = None
    entries_checked: int = 0
    bytes_decompressed: int = 0

    def raise_for_violation(self) -> None:
        if not self.ok:
            raise ArchiveViolationError(self.rule, self.entry_name, self.detail)


class _Budget:
    """Running totals shared by every level of one inspection."""

    def __init__(self, limits: InspectionLimits) -> None:
        self.limits = limits
        self.total_bytes = 0
        self.entries = 0

    def count_entry(self, name: str) -> None:
        self.entries += 1
        if self.entries > self.limits.max_entries:
            raise ArchiveViolationError(
                ArchiveRule.ENTRY_COUNT_EXCEEDED,
                name,
                f"Archive holds more than {self.limits.max_entries} entries",
            )

    def check_declared(self, declared_size: int, name: str) -> None:
        if declared_size > 0 and self.total_bytes + declared_size > self.limits.max_decompressed_bytes:
            raise ArchiveViolationError(
                ArchiveRule.SIZE_EXCEEDED,
                name,
                f"Declared size of {name} exceeds the {self.limits.max_decompressed_bytes} byte decompression limit",
            )

    def check_ratio(self, compressed_size: int, declared_size: int, name: str) -> None:
        ceiling = self.limits.max_compression_ratio
        if ceiling is None or compressed_size <= 0 or declared_size <= 0:
            return
        ratio = declared_size // compressed_size
        if ratio > ceiling:
            raise ArchiveViolationError(
                ArchiveRule.SIZE_EXCEEDED,
                name,
                f"Compression ratio of {name} is {ratio}x, above the {ceiling}x ceiling",
            )

    def consume(self, size: int, name: str) -> None:
        self.total_bytes += size
        if self.total_bytes > self.limits.max_decompressed_bytes:
            raise ArchiveViolationError(
                ArchiveRule.SIZE_EXCEEDED,
                name,
                f"Decompressed content exceeds {self.limits.max_decompressed_bytes} bytes",
            )


class _MeteredReader:
    """
    Charges every byte handed to ``tarfile`` against the budget.

    Tar metadata blocks (GNU long names and links, pax headers) are read
    whole by ``tarfile`` before any member is yielded, so the budget has to
    sit under the tar reader rather than around each member.
    """

    def __init__(self, raw: IO[bytes], budget: _Budget, name: str) -> None:
        self._raw = raw
        self._budget = budget
        self.current = name

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = self._budget.limits.chunk_size
        data = self._raw.read(size)
        if data:
            self._budget.consume(len(data), self.current)
        return data


def check_entry_name(name: str) -> None:
    """Reject names that would escape an extraction root."""
    normalized = name.replace("\\", "/")
    if (
        "\x00" in normalized
        or normalized.startswith("/")
        or _DRIVE_RE.match(normalized)
        or ".." in normalized.split("/")
    ):
        raise ArchiveViolationError(ArchiveRule.PATH_TRAVERSAL, name, f"Entry escapes the archive root: {name}")


def _strip_compression_suffix(name: str) -> str:
    lowered = name.lower()
    for suffix in _COMPRESSED_SUFFIXES:
        if lowered.endswith(suffix):
            stem = name[: -len(suffix)]
            return stem + ".tar" if suffix in (".tgz", ".tbz2", ".txz") else stem
    return name


class ArchiveInspector:
    def __init__(self, sniffer: ContentSniffer, limits: Optional[InspectionLimits] = None) -> None:
        self.sniffer = sniffer
        self.limits = limits or InspectionLimits.from_settings()

    def inspect(
        self,
        stream: IO[bytes],
        blocked_extensions: FrozenSet[str],
        filename: str = "",
        signature: Optional[SignatureMatch] = None,
    ) -> ArchiveVerdict:
        """
        Inspect a seekable archive stream against a blocked extension snapshot.

        Returns a verdict instead of raising; ``ArchiveVerdict.raise_for_violation``
        turns a failed verdict into an ``ArchiveViolationError``.
        """
        budget = _Budget(self.limits)
        stream.seek(0)
        if signature is None:
            signature = self.sniffer.match_signature(stream.read(self.sniffer.window))
            stream.seek(0)

        try:
            self._walk(stream, signature, 1, budget, blocked_extensions, filename)
        except ArchiveViolationError as exc:
            logger.warning(
                "Archive rejected | file: %s | rule: %s | entry: %s | %s",
                filename,
                exc.rule.value,
                exc.entry_name,
                exc.message,
            )
            return ArchiveVerdict(
                ok=False,
                rule=exc.rule,
                entry_name=exc.entry_name,
                detail=exc.message,
                entries_checked=budget.entries,
                bytes_decompressed=budget.total_bytes,
            )
        finally:
            stream.seek(0)

        logger.info(
            "Archive accepted | file: %s | entries: %d | decompressed: %d bytes",
            filename,
            budget.entries,
            budget.total_bytes,
        )
        return ArchiveVerdict(ok=True, entries_checked=budget.entries, bytes_decompressed=budget.total_bytes)

    # -- Dispatch ------------------------------------------------------------

    def _walk(
        self,
        stream: IO[bytes],
        signature: Optional[SignatureMatch],
        depth: int,
        budget: _Budget,
        blocked: FrozenSet[str],
        name: str,
    ) -> None:
        mime = signature.mime if signature else None
        logger.debug("Walking %s (%s) at depth %d", name, mime, depth)

        if mime == "application/zip":
            self._walk_zip(stream, depth, budget, blocked, name)
        elif mime == "application/x-tar":
            self._walk_tar(stream, depth, budget, blocked, name)
        elif mime in _DECOMPRESSORS:
            self._walk_compressed(stream, mime, depth, budget, blocked, name)
        else:
            raise ArchiveViolationError(
                ArchiveRule.UNSUPPORTED_FORMAT,
                name or None,
                f"Archive format cannot be inspected: {mime or 'unknown'}",
            )

    # -- Formats -------------------------------------------------------------

    def _walk_zip(self, stream: IO[bytes], depth: int, budget: _Budget, blocked: FrozenSet[str], name: str) -> None:
        try:
            archive = zipfile.ZipFile(stream)
        except _CORRUPT_ERRORS as exc:
            raise ArchiveViolationError(ArchiveRule.MALFORMED, name or None, f"Unreadable zip archive: {exc}") from exc

        with archive:
            for info in archive.infolist():
                check_entry_name(info.filename)
                budget.count_entry(info.filename)
                if info.is_dir():
                    continue
                if info.flag_bits & 0x1:
                    raise ArchiveViolationError(
                        ArchiveRule.ENCRYPTED_ENTRY,
                        info.filename,
                        f"Encrypted entries cannot be inspected: {info.filename}",
                    )
                budget.check_declared(info.file_size, info.filename)
                budget.check_ratio(info.compress_size, info.file_size, info.filename)

                try:
                    with archive.open(info) as entry:
                        self._inspect_entry(info.filename, entry, depth, budget, blocked)
                except NotImplementedError as exc:
                    raise ArchiveViolationError(
                        ArchiveRule.UNSUPPORTED_FORMAT,
                        info.filename,
                        f"Unsupported zip compression: {exc}",
                    ) from exc
                except _CORRUPT_ERRORS as exc:
                    raise ArchiveViolationError(
                        ArchiveRule.MALFORMED,
                        info.filename,
                        f"Corrupt zip entry {info.filename}: {exc}",
                    ) from exc

    def _walk_tar(
        self,
        stream: IO[bytes],
        depth: int,
        budget: _Budget,
        blocked: FrozenSet[str],
        name: str,
    ) -> None:
        metered = _MeteredReader(stream, budget, name or "archive")
        try:
            with tarfile.open(fileobj=metered, mode="r|") as archive:
                for member in archive:
                    check_entry_name(member.name)
                    budget.count_entry(member.name)

                    if member.issym() or member.islnk():
                        check_entry_name(member.linkname)
                        continue
                    if not member.isreg():
                        # directories, devices, fifos carry no content
                        continue

                    budget.check_declared(member.size, member.name)
                    entry = archive.extractfile(member)
                    if entry is None:
                        continue
                    metered.current = member.name
                    self._inspect_entry(member.name, entry, depth, budget, blocked, charged=True)
                    metered.current = name or "archive"
        except _CORRUPT_ERRORS as exc:
            raise ArchiveViolationError(ArchiveRule.MALFORMED, name or None, f"Unreadable tar archive: {exc}") from exc

    def _walk_compressed(
        self,
        stream: IO[bytes],
        mime: str,
        depth: int,
        budget: _Budget,
        blocked: FrozenSet[str],
        name: str,
    ) -> None:
        opener = _DECOMPRESSORS[mime]
        try:
            with opener(stream) as peek:
                head = self._read_head(peek)
        except _CORRUPT_ERRORS as exc:
            raise ArchiveViolationError(ArchiveRule.MALFORMED, name or None, f"Unreadable compressed stream: {exc}") from exc

        stream.seek(0)
        if head[_TAR_MAGIC_OFFSET:_TAR_MAGIC_OFFSET + len(_TAR_MAGIC)] == _TAR_MAGIC:
            try:
                with opener(stream) as tarball:
                    self._walk_tar(tarball, depth, budget, blocked, name)
            except _CORRUPT_ERRORS as exc:
                raise ArchiveViolationError(ArchiveRule.MALFORMED, name or None, f"Unreadable tarball: {exc}") from exc
            return

        inner_name = _strip_compression_suffix(name) if name else "payload"
        check_entry_name(inner_name)
        budget.count_entry(inner_name)
        try:
            with opener(stream) as payload:
                self._inspect_entry(inner_name, payload, depth, budget, blocked)
        except _CORRUPT_ERRORS as exc:
            raise ArchiveViolationError(ArchiveRule.MALFORMED, inner_name, f"Corrupt compressed payload: {exc}") from exc

    # -- Entries -------------------------------------------------------------

    def _read_head(self, fh: IO[bytes]) -> bytes:
        head = b""
        while len(head) < self.sniffer.window:
            chunk = fh.read(self.sniffer.window - len(head))
            if not chunk:
                break
            head += chunk
        return head

    def _inspect_entry(
        self,
        name: str,
        fh: IO[bytes],
        depth: int,
        budget: _Budget,
        blocked: FrozenSet[str],
        charged: bool = False,
    ) -> None:
        """
        Sniff one entry and walk it when it is itself a container.

        ``charged`` marks entries whose bytes a ``_MeteredReader`` already
        counts, so they are not counted a second time here.
        """
        meter = None if charged else budget
        head = self._read_head(fh)
        if meter is not None:
            meter.consume(len(head), name)
        result = self.sniffer.sniff(name, None, head, blocked)

        if not result.is_container:
            self._drain(fh, meter, name)
            self._enforce_entry(result)
            return

        with tempfile.SpooledTemporaryFile(max_size=self.limits.spool_threshold) as nested:
            nested.write(head)
            self._drain(fh, meter, name, sink=nested)

            if depth + 1 > self.limits.max_depth:
                raise ArchiveViolationError(
                    ArchiveRule.DEPTH_EXCEEDED,
                    name,
                    f"Nested archive {name} exceeds the maximum nesting depth of {self.limits.max_depth}",
                )
            self._enforce_entry(result)

            nested.seek(0)
            self._walk(nested, result.detected_signature, depth + 1, budget, blocked, name)

    def _drain(
        self,
        fh: IO[bytes],
        budget: Optional[_Budget],
        name: str,
        sink: Optional[IO[bytes]] = None,
    ) -> None:
        while True:
            chunk = fh.read(self.limits.chunk_size)
            if not chunk:
                return
            if budget is not None:
                budget.consume(len(chunk), name)
            if sink is not None:
                sink.write(chunk)

    def _enforce_entry(self, result: SniffResult) -> None:
        if result.mismatch:
            raise ArchiveViolationError(
                ArchiveRule.ENTRY_BLOCKED,
                result.filename,
                f"Archive entry {result.filename} rejected: {result.reason} ({result.detected_label})",
            )
