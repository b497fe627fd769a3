import bz2
import gzip
import io
import lzma
import struct
import tarfile

import pytest

from models.errors import ArchiveRule, ArchiveViolationError
from processors.archive_processor import ArchiveInspector, InspectionLimits, check_entry_name
from tests.factories import ELF_BYTES, MB, PDF_BYTES, PNG_BYTES, make_tar, make_zip

CENTRAL_HEADER = b"PK\x01\x02"


def patch_central_directory(data: bytes, offset: int, fmt: str, value: int) -> bytes:
    """Overwrite a field of the first central directory header."""
    start = data.index(CENTRAL_HEADER) + offset
    return data[:start] + struct.pack(fmt, value) + data[start + struct.calcsize(fmt):]


def inspect(inspector, data: bytes, blocked=frozenset(), filename="upload.zip"):
    return inspector.inspect(io.BytesIO(data), frozenset(blocked), filename)


def test_clean_zip_passes(inspector):
    data = make_zip({"docs/report.pdf": PDF_BYTES, "img/logo.png": PNG_BYTES, "notes.txt": b"hello"})

    verdict = inspect(inspector, data)

    assert verdict.ok
    assert verdict.entries_checked == 3
    assert verdict.bytes_decompressed == len(PDF_BYTES) + len(PNG_BYTES) + 5
    verdict.raise_for_violation()


def test_empty_zip_passes(inspector):
    verdict = inspect(inspector, make_zip({}))

    assert verdict.ok
    assert verdict.entries_checked == 0


def test_declared_size_bomb_rejected_before_reading(inspector):
    data = make_zip({"payload.bin": b"\x00" * 1024})
    # uncompressed size lives 24 bytes into the central directory header
    bomb = patch_central_directory(data, 24, "<I", 1024 * MB)

    verdict = inspect(inspector, bomb)

    assert not verdict.ok
    assert verdict.rule is ArchiveRule.SIZE_EXCEEDED
    assert verdict.entry_name == "payload.bin"
    assert verdict.bytes_decompressed == 0


def test_cumulative_size_across_entries(sniffer):
    inspector = ArchiveInspector(sniffer, InspectionLimits(max_decompressed_bytes=MB, max_depth=2, max_entries=100))
    chunk = b"\x00" * (400 * 1024)
    data = make_zip({"a.bin": chunk, "b.bin": chunk, "c.bin": chunk})

    verdict = inspect(inspector, data)

    assert verdict.rule is ArchiveRule.SIZE_EXCEEDED
    assert verdict.entry_name == "c.bin"


def test_streamed_size_is_enforced_without_declared_size(sniffer):
    inspector = ArchiveInspector(sniffer, InspectionLimits(max_decompressed_bytes=MB, max_depth=2, max_entries=100))
    bomb = gzip.compress(b"\x00" * (4 * MB))

    verdict = inspect(inspector, bomb, filename="zeros.bin.gz")

    assert not verdict.ok
    assert verdict.rule is ArchiveRule.SIZE_EXCEEDED
    assert verdict.entry_name == "zeros.bin"
    assert verdict.bytes_decompressed <= MB + inspector.limits.chunk_size


def test_nested_zip_within_depth_passes(inspector):
    inner = make_zip({"a.txt": b"hello"})
    outer = make_zip({"inner.zip": inner})

    verdict = inspect(inspector, outer)

    assert verdict.ok
    assert verdict.entries_checked == 2


def test_nesting_beyond_max_depth(inspector):
    innermost = make_zip({"a.txt": b"hello"})
    middle = make_zip({"inner.zip": innermost})
    outer = make_zip({"middle.zip": middle})

    verdict = inspect(inspector, outer)

    assert verdict.rule is ArchiveRule.DEPTH_EXCEEDED
    assert verdict.entry_name == "inner.zip"


def test_max_depth_one_rejects_any_nested_archive(sniffer):
    inspector = ArchiveInspector(sniffer, InspectionLimits(max_decompressed_bytes=MB, max_depth=1, max_entries=100))
    outer = make_zip({"inner.tar": make_tar({"a.txt": b"hello"})})

    verdict = inspect(inspector, outer)

    assert verdict.rule is ArchiveRule.DEPTH_EXCEEDED


@pytest.mark.parametrize("name", ["../evil.txt", "a/../../evil.txt", "/etc/passwd", "C:/Windows/evil.dll", "..\\evil.txt"])
def test_path_traversal_in_zip(inspector, name):
    verdict = inspect(inspector, make_zip({name: b"x"}))

    assert verdict.rule is ArchiveRule.PATH_TRAVERSAL


@pytest.mark.parametrize("name", ["a/b/c.txt", "..hidden", "dir/file..txt"])
def test_entry_names_that_stay_inside(name):
    check_entry_name(name)


def test_path_traversal_in_tar(inspector):
    data = make_tar({"../../etc/cron.d/job": b"* * * * * root true\n"})

    verdict = inspect(inspector, data, filename="upload.tar")

    assert verdict.rule is ArchiveRule.PATH_TRAVERSAL


def test_symlink_escaping_tar_is_traversal(inspector):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        link = tarfile.TarInfo("link")
        link.type = tarfile.SYMTYPE
        link.linkname = "../../../etc/passwd"
        archive.addfile(link)

    verdict = inspect(inspector, buffer.getvalue(), filename="upload.tar")

    assert verdict.rule is ArchiveRule.PATH_TRAVERSAL
    assert verdict.entry_name == "../../../etc/passwd"


def test_blocked_extension_inside_archive(inspector):
    data = make_zip({"readme.txt": b"hi", "tools/run.bat": b"@echo off\n"})

    verdict = inspect(inspector, data, blocked={"bat"})

    assert verdict.rule is ArchiveRule.ENTRY_BLOCKED
    assert verdict.entry_name == "tools/run.bat"
    with pytest.raises(ArchiveViolationError) as exc_info:
        verdict.raise_for_violation()
    assert exc_info.value.rule is ArchiveRule.ENTRY_BLOCKED


def test_disguised_executable_inside_archive(inspector):
    data = make_zip({"readme.txt": ELF_BYTES})

    verdict = inspect(inspector, data)

    assert verdict.rule is ArchiveRule.ENTRY_BLOCKED
    assert verdict.entry_name == "readme.txt"


def test_blocked_entry_in_nested_archive(inspector):
    inner = make_zip({"payload.exe": b"plain text really"})
    outer = make_zip({"bundle.zip": inner})

    verdict = inspect(inspector, outer, blocked={"exe"})

    assert verdict.rule is ArchiveRule.ENTRY_BLOCKED
    assert verdict.entry_name == "payload.exe"


def test_entry_count_limit(sniffer):
    inspector = ArchiveInspector(sniffer, InspectionLimits(max_decompressed_bytes=MB, max_depth=2, max_entries=3))
    data = make_zip({f"file{index}.txt": b"x" for index in range(4)})

    verdict = inspect(inspector, data)

    assert verdict.rule is ArchiveRule.ENTRY_COUNT_EXCEEDED


def test_encrypted_entry(inspector):
    data = make_zip({"secret.txt": b"classified"})
    # general purpose flag bit 0 marks the entry as encrypted
    encrypted = patch_central_directory(data, 8, "<H", 0x1)

    verdict = inspect(inspector, encrypted)

    assert verdict.rule is ArchiveRule.ENCRYPTED_ENTRY


def test_malformed_zip(inspector):
    verdict = inspect(inspector, b"PK\x03\x04" + b"\x00" * 64)

    assert verdict.rule is ArchiveRule.MALFORMED


def test_seven_zip_is_unsupported(inspector):
    verdict = inspect(inspector, b"7z\xbc\xaf\x27\x1c" + b"\x00" * 64, filename="upload.7z")

    assert verdict.rule is ArchiveRule.UNSUPPORTED_FORMAT


@pytest.mark.parametrize("mode, filename", [("w:gz", "bundle.tar.gz"), ("w:bz2", "bundle.tar.bz2"), ("w:xz", "bundle.txz")])
def test_compressed_tarballs_are_walked(inspector, mode, filename):
    data = make_tar({"docs/report.pdf": PDF_BYTES, "notes.txt": b"hello"}, mode=mode)

    verdict = inspect(inspector, data, filename=filename)

    assert verdict.ok
    assert verdict.entries_checked == 2


def test_compressed_tarball_with_blocked_member(inspector):
    data = make_tar({"notes.txt": b"hello", "install.sh": b"echo hi\n"}, mode="w:gz")

    verdict = inspect(inspector, data, blocked={"sh"}, filename="bundle.tgz")

    assert verdict.rule is ArchiveRule.ENTRY_BLOCKED
    assert verdict.entry_name == "install.sh"


@pytest.mark.parametrize(
    "compress, filename",
    [(gzip.compress, "report.pdf.gz"), (bz2.compress, "report.pdf.bz2"), (lzma.compress, "report.pdf.xz")],
)
def test_single_compressed_payload(inspector, compress, filename):
    verdict = inspect(inspector, compress(PDF_BYTES), filename=filename)

    assert verdict.ok
    assert verdict.entries_checked == 1


def test_single_compressed_payload_is_sniffed(inspector):
    verdict = inspect(inspector, gzip.compress(ELF_BYTES), filename="notes.txt.gz")

    assert verdict.rule is ArchiveRule.ENTRY_BLOCKED
    assert verdict.entry_name == "notes.txt"


def test_stream_is_rewound_after_inspection(inspector):
    stream = io.BytesIO(make_zip({"a.txt": b"hello"}))

    inspector.inspect(stream, frozenset(), "a.zip")

    assert stream.tell() == 0


def tarball_with_metadata_block(block_type: bytes, declared: int) -> bytes:
    """A gzip tarball whose first block is a metadata header with a body of ``declared`` bytes."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz", format=tarfile.GNU_FORMAT) as archive:
        header = tarfile.TarInfo("././@LongLink")
        header.type = block_type
        header.size = declared
        archive.addfile(header, io.BytesIO(b"\x00" * declared))
        notes = tarfile.TarInfo("notes.txt")
        notes.size = 5
        archive.addfile(notes, io.BytesIO(b"hello"))
    return buffer.getvalue()


@pytest.mark.parametrize("block_type", [tarfile.GNUTYPE_LONGNAME, tarfile.GNUTYPE_LONGLINK, tarfile.XHDTYPE, tarfile.XGLTYPE])
def test_oversized_tar_metadata_counts_against_budget(sniffer, block_type):
    inspector = ArchiveInspector(sniffer, InspectionLimits(max_decompressed_bytes=MB, max_depth=2, max_entries=100))
    data = tarball_with_metadata_block(block_type, 8 * MB)

    verdict = inspect(inspector, data, filename="bundle.tar.gz")

    assert not verdict.ok
    assert verdict.rule is ArchiveRule.SIZE_EXCEEDED
    assert verdict.bytes_decompressed < 2 * MB


def test_oversized_metadata_in_plain_tar(sniffer):
    inspector = ArchiveInspector(sniffer, InspectionLimits(max_decompressed_bytes=MB, max_depth=2, max_entries=100))
    data = gzip.decompress(tarball_with_metadata_block(tarfile.GNUTYPE_LONGNAME, 4 * MB))

    verdict = inspect(inspector, data, filename="bundle.tar")

    assert verdict.rule is ArchiveRule.SIZE_EXCEEDED
    assert verdict.entry_name == "bundle.tar"


def test_long_member_names_still_pass(inspector):
    name = "deep/" * 60 + "report.pdf"
    data = make_tar({name: PDF_BYTES}, mode="w:gz")

    verdict = inspect(inspector, data, filename="bundle.tgz")

    assert verdict.ok
    assert verdict.entries_checked == 1


def test_compression_ratio_ceiling(sniffer):
    limits = InspectionLimits(max_decompressed_bytes=10 * MB, max_depth=2, max_entries=100, max_compression_ratio=100)
    inspector = ArchiveInspector(sniffer, limits)
    data = make_zip({"notes.txt": b"hello", "zeros.bin": b"\x00" * MB})

    verdict = inspect(inspector, data)

    assert verdict.rule is ArchiveRule.SIZE_EXCEEDED
    assert verdict.entry_name == "zeros.bin"
    assert "ratio" in verdict.detail


def test_compression_ratio_ceiling_allows_ordinary_entries(sniffer):
    limits = InspectionLimits(max_decompressed_bytes=10 * MB, max_depth=2, max_entries=100, max_compression_ratio=100)
    inspector = ArchiveInspector(sniffer, limits)

    verdict = inspect(inspector, make_zip({"docs/report.pdf": PDF_BYTES, "logo.png": PNG_BYTES}))

    assert verdict.ok
