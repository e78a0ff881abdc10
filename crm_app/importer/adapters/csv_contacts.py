"""CSV decoder for bulk contact imports.

Turns a binary stream into an ordered, lazily produced sequence of decoded
rows. Only bounded buffers are held regardless of file size: the first KiB is
sampled for delimiter detection and replayed ahead of the remaining bytes, so
sources that cannot seek (HTTP uploads, pipes) work the same as local files.
"""

from __future__ import annotations

import codecs
import csv
import io
import re
from dataclasses import dataclass
from typing import IO, Iterator, Sequence

SAMPLE_SIZE = 1024
READ_BUFFER_SIZE = 64 * 1024
CANDIDATE_DELIMITERS: tuple[str, ...] = (",", ";", "\t", "|")
DUPLICATE_SUFFIX = "__"

# Undecodable bytes survive decoding as lone surrogates (``surrogateescape``).
_ESCAPED_BYTE = re.compile("[\udc80-\udcff]")


class CSVAdapterError(Exception):
    """Base exception for CSV decoder failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the header row itself cannot be parsed."""


class CSVSourceError(CSVAdapterError):
    """Raised when the underlying byte source fails; aborts the import."""


@dataclass(frozen=True)
class DecodedRow:
    """One data row, or a decode error attached to the row index where it occurred."""

    row_number: int
    source_line: int
    values: tuple[str, ...]
    header: tuple[str, ...] | None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def column_names(self) -> tuple[str, ...]:
        if self.header is None:
            return positional_header(len(self.values))
        return self.header

    @property
    def fields(self) -> dict[str, str]:
        """Ordered mapping of column name to raw value."""

        return dict(zip(self.column_names, self.values))

    def preview(self, delimiter: str = ",") -> str:
        return delimiter.join(_ESCAPED_BYTE.sub("\ufffd", value) for value in self.values)


@dataclass
class DecoderStatistics:
    """Accumulated statistics from decoding."""

    rows_decoded: int = 0
    rows_skipped_blank: int = 0
    decode_errors: int = 0


def detect_delimiter(sample: str) -> str:
    """
    Pick the candidate delimiter occurring most often in ``sample``.

    Ties resolve in candidate order, so comma wins when nothing else is more
    frequent (including an empty sample).
    """

    best = CANDIDATE_DELIMITERS[0]
    best_count = -1
    for candidate in CANDIDATE_DELIMITERS:
        count = sample.count(candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best


def positional_header(count: int) -> tuple[str, ...]:
    return tuple(f"column_{position}" for position in range(1, count + 1))


def sanitize_header(header: str | None) -> str:
    token = _ESCAPED_BYTE.sub("\ufffd", header or "").strip()
    return token.lstrip("\ufeff").strip()


def dedupe_headers(raw_headers: Sequence[str]) -> tuple[str, ...]:
    """
    Sanitize header names and suffix repeats deterministically.

    ``Email,Email,Email`` becomes ``Email, Email__1, Email__2``; a suffix
    already taken by a literal header is skipped. Blank header cells are
    named after their position.
    """

    sanitized = [sanitize_header(header) for header in raw_headers]
    sanitized = [name or f"column_{position}" for position, name in enumerate(sanitized, start=1)]
    taken = set(sanitized)
    seen: set[str] = set()
    resolved: list[str] = []
    for name in sanitized:
        if name not in seen:
            seen.add(name)
            resolved.append(name)
            continue
        suffix = 1
        candidate = f"{name}{DUPLICATE_SUFFIX}{suffix}"
        while candidate in taken or candidate in seen:
            suffix += 1
            candidate = f"{name}{DUPLICATE_SUFFIX}{suffix}"
        seen.add(candidate)
        resolved.append(candidate)
    return tuple(resolved)


def _row_is_blank(values: Sequence[str]) -> bool:
    return all(not value.strip() for value in values)


class _SampledSource(io.RawIOBase):
    """Raw stream replaying an already-read prefix ahead of the remaining source bytes."""

    def __init__(self, prefix: bytes, source: IO[bytes]) -> None:
        super().__init__()
        self._prefix = memoryview(prefix)
        self._source = source
        # read1() returns what is already available instead of waiting for a full buffer.
        self._read = getattr(source, "read1", None) or source.read

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if len(self._prefix):
            size = min(len(buffer), len(self._prefix))
            buffer[:size] = self._prefix[:size]
            self._prefix = self._prefix[size:]
            return size
        data = self._read(len(buffer)) or b""
        size = len(data)
        buffer[:size] = data
        return size


class ContactCSVDecoder:
    """Streaming CSV reader producing ``DecodedRow`` objects in file order."""

    def __init__(
        self,
        source: IO[bytes],
        *,
        delimiter: str | None = None,
        has_header: bool = True,
        encoding: str = "utf-8",
        read_buffer_size: int = READ_BUFFER_SIZE,
    ) -> None:
        self._source = source
        self._explicit_delimiter = delimiter
        self.has_header = has_header
        self.encoding = encoding
        self._read_buffer_size = read_buffer_size
        self._delimiter: str | None = None
        self._header: tuple[str, ...] | None = None
        self._raw_header: tuple[str, ...] | None = None
        self.statistics = DecoderStatistics()

    @property
    def delimiter(self) -> str | None:
        """Delimiter in use; available once iteration has started."""

        return self._delimiter

    @property
    def header(self) -> tuple[str, ...] | None:
        """Deduplicated header; ``None`` until parsed or when the file has no header."""

        return self._header

    @property
    def raw_header(self) -> tuple[str, ...] | None:
        """Header cells as they appear in the file (before renaming)."""

        return self._raw_header

    def _text_encoding(self) -> str:
        # utf-8-sig transparently drops a leading byte-order mark.
        if codecs.lookup(self.encoding).name == "utf-8":
            return "utf-8-sig"
        return self.encoding

    def _open_text(self) -> io.TextIOWrapper:
        sample = b""
        if self._explicit_delimiter:
            self._delimiter = self._explicit_delimiter
        else:
            # Only sniffing needs a full sample; a known delimiter streams from the first byte.
            try:
                sample = self._source.read(SAMPLE_SIZE) or b""
            except OSError as exc:
                raise CSVSourceError(f"Unable to read import source: {exc}") from exc
            if isinstance(sample, str):
                raise TypeError("ContactCSVDecoder requires a binary stream.")
            self._delimiter = detect_delimiter(sample.decode(self._text_encoding(), errors="ignore"))

        raw = _SampledSource(sample, self._source)
        buffered = io.BufferedReader(raw, buffer_size=self._read_buffer_size)
        return io.TextIOWrapper(buffered, encoding=self._text_encoding(), errors="surrogateescape", newline="")

    def iter_rows(self) -> Iterator[DecodedRow]:
        text = self._open_text()
        reader = csv.reader(text, delimiter=self._delimiter, strict=True)
        awaiting_header = self.has_header
        row_number = 0

        while True:
            try:
                values = next(reader)
            except StopIteration:
                break
            except csv.Error as exc:
                if awaiting_header:
                    raise CSVHeaderError(f"Header row could not be parsed: {exc}") from exc
                row_number += 1
                self.statistics.rows_decoded += 1
                self.statistics.decode_errors += 1
                yield DecodedRow(
                    row_number=row_number,
                    source_line=reader.line_num,
                    values=(),
                    header=self._header,
                    error=f"Malformed CSV content: {exc}",
                )
                continue
            except UnicodeDecodeError as exc:
                raise CSVSourceError(f"Source is not decodable as {self.encoding}: {exc}") from exc
            except OSError as exc:
                raise CSVSourceError(f"Unable to read import source: {exc}") from exc

            if awaiting_header:
                if _row_is_blank(values):
                    continue
                self._raw_header = tuple(values)
                self._header = dedupe_headers(values)
                awaiting_header = False
                continue

            row_number += 1
            if _row_is_blank(values):
                self.statistics.rows_skipped_blank += 1
                continue

            self.statistics.rows_decoded += 1
            row_values = tuple(values)
            if any(_ESCAPED_BYTE.search(value) for value in row_values):
                self.statistics.decode_errors += 1
                yield DecodedRow(
                    row_number=row_number,
                    source_line=reader.line_num,
                    values=row_values,
                    header=self._header,
                    error=f"Malformed {self.encoding} byte sequence",
                )
                continue

            yield DecodedRow(
                row_number=row_number,
                source_line=reader.line_num,
                values=row_values,
                header=self._header,
            )
