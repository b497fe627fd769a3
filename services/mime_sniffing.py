"""
Content Sniffing Service

Classifies a file from its name and the first bytes of its content.

- The extension is the last ``.``-delimited segment of the base name,
  lowercased (trailing dots and spaces are ignored, since Windows drops them
  when the file is written).
- Content is matched against a data-driven signature table of
  ``(signature, offset, family, mime, extensions)`` rows by a single matcher.
  Only a bounded prefix (``SNIFF_WINDOW``, 512 bytes by default) is ever read.
- ``filetype`` is consulted only to label content the table does not know;
  it never decides a rejection.

A result is a mismatch when:
  * the extension itself is blocked for the space, or
  * the content belongs to a dangerous family (executables, scripts),
    whatever the declared extension, or
  * the detected type is one the space blocks and the declared extension is
    not a legitimate name for that type (e.g. a zip named ``.jpg`` in a space
    blocking ``zip``).
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Tuple

import filetype

from config.settings import settings
from config.signatures import ARCHIVE, DANGEROUS_FAMILIES, SignatureRow, resolve_signature_table
from models.errors import BlockedExtensionError, DisguisedFileError
from utils.logger import get_logger

logger = get_logger(__name__)

NO_SIGNATURE = "no signature"

REASON_BLOCKED_EXTENSION = "blocked_extension"
REASON_DANGEROUS_CONTENT = "dangerous_content"
REASON_DISGUISED_BLOCKED_TYPE = "disguised_blocked_type"


@dataclass(frozen=True)
class SignatureMatch:
    family: str
    mime: str
    extensions: Tuple[str, ...]
    offset: int = 0

    @property
    def label(self) -> str:
        return f"{self.family} ({self.mime})"


@dataclass(frozen=True)
class SniffResult:
    filename: str
    normalized_extension: str
    declared_content_type: Optional[str]
    detected_signature: Optional[SignatureMatch]
    content_type: str
    mismatch: bool
    reason: Optional[str] = None
    blocked_extensions: FrozenSet[str] = field(default_factory=frozenset, repr=False)

    @property
    def is_container(self) -> bool:
        return self.detected_signature is not None and self.detected_signature.family == ARCHIVE

    @property
    def detected_label(self) -> str:
        return self.detected_signature.label if self.detected_signature else NO_SIGNATURE


def extract_extension(filename: Optional[str]) -> str:
    """
    Return the lowercase extension of ``filename`` without the leading dot.

    >>> extract_extension("report.PDF")
    'pdf'
    >>> extract_extension("invoice.pdf.exe")
    'exe'
    >>> extract_extension("README")
    ''
    """
    if not filename:
        return ""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1].rstrip(". ")
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1].strip().lower()


class ContentSniffer:
    """Signature-table driven sniffer shared by the pipeline and the archive inspector."""

    def __init__(
        self,
        signatures: Optional[Iterable[SignatureRow]] = None,
        window: Optional[int] = None,
    ) -> None:
        rows = list(signatures) if signatures is not None else resolve_signature_table(settings.SIGNATURE_TABLE_PATH)
        self.window = window if window is not None else settings.SNIFF_WINDOW

        usable = [row for row in rows if row[1] + len(row[0]) <= self.window]
        if len(usable) != len(rows):
            logger.warning(
                "Ignoring %d signature(s) that do not fit in the %d byte sniff window",
                len(rows) - len(usable),
                self.window,
            )
        # Longest signature first so a specific pattern beats a shorter generic one.
        self._signatures: List[SignatureRow] = sorted(usable, key=lambda row: len(row[0]), reverse=True)

        logger.info(
            "ContentSniffer initialized | signatures: %d | window: %d bytes",
            len(self._signatures),
            self.window,
        )

    def match_signature(self, header: bytes) -> Optional[SignatureMatch]:
        header = header[: self.window]
        for signature, offset, family, mime, extensions in self._signatures:
            if header[offset:offset + len(signature)] == signature:
                return SignatureMatch(family=family, mime=mime, extensions=extensions, offset=offset)
        return None

    def _label_unknown(self, header: bytes) -> Optional[str]:
        if not header:
            return None
        try:
            kind = filetype.guess(header)
        except (TypeError, ValueError) as exc:
            logger.debug("filetype could not label content: %s", exc)
            return None
        return kind.mime if kind is not None else None

    def sniff(
        self,
        filename: str,
        declared_content_type: Optional[str],
        header: bytes,
        blocked_extensions: FrozenSet[str] = frozenset(),
    ) -> SniffResult:
        """Classify ``header`` (at most ``window`` bytes are looked at) against ``filename``."""
        header = bytes(header[: self.window])
        extension = extract_extension(filename)
        match = self.match_signature(header)

        content_type = match.mime if match else (self._label_unknown(header) or "application/octet-stream")

        reason: Optional[str] = None
        if extension and extension in blocked_extensions:
            reason = REASON_BLOCKED_EXTENSION
        elif match is not None and match.family in DANGEROUS_FAMILIES:
            reason = REASON_DANGEROUS_CONTENT
        elif (
            match is not None
            and blocked_extensions.intersection(match.extensions)
            and extension not in match.extensions
        ):
            reason = REASON_DISGUISED_BLOCKED_TYPE

        result = SniffResult(
            filename=filename,
            normalized_extension=extension,
            declared_content_type=declared_content_type,
            detected_signature=match,
            content_type=content_type,
            mismatch=reason is not None,
            reason=reason,
            blocked_extensions=blocked_extensions,
        )

        if result.mismatch:
            logger.warning(
                "Sniff mismatch | file: %s | extension: %s | detected: %s | reason: %s",
                filename,
                extension or "-",
                result.detected_label,
                reason,
            )
        else:
            logger.debug("Sniff ok | file: %s | detected: %s", filename, result.detected_label)

        return result

    @staticmethod
    def enforce(result: SniffResult) -> None:
        """Raise the rejection a mismatching result calls for."""
        if not result.mismatch:
            return

        if result.reason == REASON_BLOCKED_EXTENSION:
            raise BlockedExtensionError(result.normalized_extension)

        declared = result.normalized_extension or (result.declared_content_type or "unknown")
        if result.reason == REASON_DISGUISED_BLOCKED_TYPE:
            blocked = sorted(result.blocked_extensions.intersection(result.detected_signature.extensions))
            raise DisguisedFileError(
                declared,
                result.detected_label,
                f"File disguised as .{declared} is really a blocked type ({', '.join(blocked)})",
            )
        raise DisguisedFileError(declared, result.detected_label)
