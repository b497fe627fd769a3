"""
Magic-byte signature table.

Each row is ``(signature, offset, family, mime, extensions)``. ``extensions``
lists the file extensions that legitimately carry the signature; they are used
both to label a detection and to decide whether a declared extension is an
honest name for the detected content.

The table is plain data so deployments can replace it with a JSON file
(``SIGNATURE_TABLE_PATH``) of the shape::

    [
        {"signature": "4d5a", "offset": 0, "family": "executable",
         "mime": "application/x-dosexec", "extensions": ["exe", "dll"]},
        ...
    ]

``signature`` is hex encoded.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

SignatureRow = Tuple[bytes, int, str, str, Tuple[str, ...]]

EXECUTABLE = "executable"
SCRIPT = "script"
ARCHIVE = "archive"
IMAGE = "image"
DOCUMENT = "document"
AUDIO = "audio"
VIDEO = "video"

FAMILIES = {EXECUTABLE, SCRIPT, ARCHIVE, IMAGE, DOCUMENT, AUDIO, VIDEO}
DANGEROUS_FAMILIES = frozenset({EXECUTABLE, SCRIPT})

_ZIP_EXTENSIONS = (
    "zip", "jar", "apk", "docx", "xlsx", "pptx", "odt", "ods", "odp", "epub", "war",
)

DEFAULT_SIGNATURES: List[SignatureRow] = [
    # Executables
    (b"MZ", 0, EXECUTABLE, "application/x-dosexec", ("exe", "dll", "sys", "scr", "com", "cpl", "msi")),
    (b"\x7fELF", 0, EXECUTABLE, "application/x-executable", ("elf", "so", "bin", "o")),
    (b"\xfe\xed\xfa\xce", 0, EXECUTABLE, "application/x-mach-binary", ("dylib", "bundle")),
    (b"\xfe\xed\xfa\xcf", 0, EXECUTABLE, "application/x-mach-binary", ("dylib", "bundle")),
    (b"\xce\xfa\xed\xfe", 0, EXECUTABLE, "application/x-mach-binary", ("dylib", "bundle")),
    (b"\xcf\xfa\xed\xfe", 0, EXECUTABLE, "application/x-mach-binary", ("dylib", "bundle")),
    (b"\xca\xfe\xba\xbe", 0, EXECUTABLE, "application/java-vm", ("class",)),
    (b"\x00asm", 0, EXECUTABLE, "application/wasm", ("wasm",)),

    # Scripts
    (b"#!", 0, SCRIPT, "text/x-shellscript", ("sh", "bash", "zsh", "py", "pl", "rb")),
    (b"<?php", 0, SCRIPT, "application/x-httpd-php", ("php", "phtml")),

    # Archives
    (b"PK\x03\x04", 0, ARCHIVE, "application/zip", _ZIP_EXTENSIONS),
    (b"PK\x05\x06", 0, ARCHIVE, "application/zip", _ZIP_EXTENSIONS),
    (b"\x1f\x8b", 0, ARCHIVE, "application/gzip", ("gz", "tgz")),
    (b"BZh", 0, ARCHIVE, "application/x-bzip2", ("bz2", "tbz2")),
    (b"\xfd7zXZ\x00", 0, ARCHIVE, "application/x-xz", ("xz", "txz")),
    (b"ustar", 257, ARCHIVE, "application/x-tar", ("tar",)),
    (b"7z\xbc\xaf\x27\x1c", 0, ARCHIVE, "application/x-7z-compressed", ("7z",)),
    (b"Rar!\x1a\x07", 0, ARCHIVE, "application/vnd.rar", ("rar",)),

    # Images
    (b"\x89PNG\r\n\x1a\n", 0, IMAGE, "image/png", ("png",)),
    (b"GIF8", 0, IMAGE, "image/gif", ("gif",)),
    (b"\xff\xd8\xff", 0, IMAGE, "image/jpeg", ("jpg", "jpeg", "jpe", "jfif")),
    (b"WEBP", 8, IMAGE, "image/webp", ("webp",)),
    (b"II*\x00", 0, IMAGE, "image/tiff", ("tif", "tiff")),
    (b"MM\x00*", 0, IMAGE, "image/tiff", ("tif", "tiff")),
    (b"BM", 0, IMAGE, "image/bmp", ("bmp",)),
    (b"\x00\x00\x01\x00", 0, IMAGE, "image/x-icon", ("ico",)),

    # Documents
    (b"%PDF-", 0, DOCUMENT, "application/pdf", ("pdf",)),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", 0, DOCUMENT, "application/x-ole-storage", ("doc", "xls", "ppt", "msg")),
    (b"{\\rtf", 0, DOCUMENT, "application/rtf", ("rtf",)),

    # Audio / video
    (b"ID3", 0, AUDIO, "audio/mpeg", ("mp3",)),
    (b"OggS", 0, AUDIO, "audio/ogg", ("ogg", "oga", "ogv", "opus")),
    (b"fLaC", 0, AUDIO, "audio/flac", ("flac",)),
    (b"WAVE", 8, AUDIO, "audio/wav", ("wav",)),
    (b"ftyp", 4, VIDEO, "video/mp4", ("mp4", "m4a", "m4v", "mov", "3gp", "heic")),
    (b"\x1aE\xdf\xa3", 0, VIDEO, "video/x-matroska", ("mkv", "webm")),
]


def _row_from_mapping(raw: Dict[str, Any]) -> SignatureRow:
    family = str(raw["family"]).lower()
    if family not in FAMILIES:
        raise ValueError(f"Unknown signature family: {family}")

    signature = bytes.fromhex(str(raw["signature"]))
    if not signature:
        raise ValueError("Signature must not be empty")

    offset = int(raw.get("offset", 0))
    if offset < 0:
        raise ValueError("Signature offset must not be negative")

    extensions = tuple(str(ext).lower().lstrip(".") for ext in raw.get("extensions", ()))
    return signature, offset, family, str(raw.get("mime", "application/octet-stream")), extensions


def load_signature_table(path: str) -> List[SignatureRow]:
    """Load a signature table from a JSON file, replacing the built-in rows."""
    with Path(path).open("r", encoding="utf-8") as fh:
        payload = json.load(fh)

    if not isinstance(payload, list):
        raise ValueError("Signature table must be a JSON list")

    return [_row_from_mapping(item) for item in payload]


def resolve_signature_table(path: Optional[str] = None) -> List[SignatureRow]:
    if path:
        return load_signature_table(path)
    return list(DEFAULT_SIGNATURES)
