import io

import pytest

from crm_app.importer.adapters import (
    CSVHeaderError,
    CSVSourceError,
    ContactCSVDecoder,
    detect_delimiter,
)
from crm_app.importer.adapters.csv_contacts import dedupe_headers


class _PipeSource:
    """Byte source without seek/tell, like a socket or an HTTP body."""

    def __init__(self, data: bytes, chunk: int = 7) -> None:
        self._data = data
        self._chunk = chunk

    def read(self, size: int = -1) -> bytes:
        size = self._chunk if size is None or size < 0 else min(size, self._chunk)
        piece, self._data = self._data[:size], self._data[size:]
        return piece


class _LineAtATimeSource(io.RawIOBase):
    """Raw stream that hands out one line per read, like a slow socket."""

    def __init__(self, lines) -> None:
        super().__init__()
        self._lines = iter(lines)
        self.reads = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        self.reads += 1
        line = next(self._lines, b"")
        buffer[: len(line)] = line
        return len(line)


class _BrokenSource:
    def read(self, size: int = -1) -> bytes:
        raise OSError("connection reset")


def test_decoder_yields_rows_in_file_order_with_header():
    decoder = ContactCSVDecoder(io.BytesIO(b"email,name\na@x.com,Jane Doe\nb@x.com,Bob Lee\n"))

    rows = list(decoder.iter_rows())

    assert decoder.header == ("email", "name")
    assert decoder.delimiter == ","
    assert [row.row_number for row in rows] == [1, 2]
    assert rows[0].fields == {"email": "a@x.com", "name": "Jane Doe"}
    assert rows[1].values == ("b@x.com", "Bob Lee")
    assert decoder.statistics.rows_decoded == 2


def test_detect_delimiter_prefers_most_frequent_candidate():
    assert detect_delimiter("name;email;company\nAda;ada@x.com;Analytical") == ";"
    assert detect_delimiter("name\temail\nAda\tada@x.com") == "\t"
    assert detect_delimiter("name|email") == "|"
    assert detect_delimiter("") == ","


def test_decoder_detects_semicolon_delimiter():
    decoder = ContactCSVDecoder(io.BytesIO(b"name;email\nAda;ada@x.com\n"))

    rows = list(decoder.iter_rows())

    assert decoder.delimiter == ";"
    assert rows[0].fields == {"name": "Ada", "email": "ada@x.com"}


def test_explicit_delimiter_overrides_detection():
    decoder = ContactCSVDecoder(io.BytesIO(b"name;notes\nAda;a,b,c\n"), delimiter=";")

    rows = list(decoder.iter_rows())

    assert rows[0].fields == {"name": "Ada", "notes": "a,b,c"}


def test_blank_rows_advance_row_number_but_are_not_counted():
    decoder = ContactCSVDecoder(io.BytesIO(b"name,email\nAda,ada@x.com\n,\n\nBob,bob@x.com\n"))

    rows = list(decoder.iter_rows())

    assert [row.row_number for row in rows] == [1, 4]
    assert decoder.statistics.rows_decoded == 2
    assert decoder.statistics.rows_skipped_blank == 2


def test_byte_order_mark_is_stripped_from_first_header():
    decoder = ContactCSVDecoder(io.BytesIO(b"\xef\xbb\xbfname,email\nAda,ada@x.com\n"))

    list(decoder.iter_rows())

    assert decoder.header == ("name", "email")


def test_duplicate_headers_are_renamed_deterministically():
    decoder = ContactCSVDecoder(io.BytesIO(b"Email,Name,Email\nfirst@x.com,Ada,second@x.com\n"))

    rows = list(decoder.iter_rows())

    assert decoder.raw_header == ("Email", "Name", "Email")
    assert decoder.header == ("Email", "Name", "Email__1")
    assert rows[0].fields["Email__1"] == "second@x.com"


def test_dedupe_headers_skips_suffixes_taken_by_literal_headers():
    assert dedupe_headers(["Email", "Email", "Email"]) == ("Email", "Email__1", "Email__2")
    assert dedupe_headers(["a", "a", "a__1"]) == ("a", "a__2", "a__1")
    assert dedupe_headers([" name ", ""]) == ("name", "column_2")


def test_undecodable_bytes_become_row_errors_without_stopping():
    decoder = ContactCSVDecoder(io.BytesIO(b"name,email\nJos\xe9,jose@x.com\nBob,bob@x.com\n"))

    rows = list(decoder.iter_rows())

    assert len(rows) == 2
    assert rows[0].is_error
    assert rows[0].row_number == 1
    assert "Malformed utf-8 byte sequence" in rows[0].error
    assert "\ufffd" in rows[0].preview()
    assert not rows[1].is_error
    assert decoder.statistics.decode_errors == 1


def test_unterminated_quote_is_reported_on_the_row():
    decoder = ContactCSVDecoder(io.BytesIO(b'name,email\nAda,ada@x.com\n"Bob,bob@x.com\n'))

    rows = list(decoder.iter_rows())

    assert not rows[0].is_error
    assert rows[-1].is_error
    assert rows[-1].error.startswith("Malformed CSV content")


def test_unparseable_header_raises_header_error():
    decoder = ContactCSVDecoder(io.BytesIO(b'"name,email\n'))

    with pytest.raises(CSVHeaderError):
        list(decoder.iter_rows())


def test_source_failure_raises_source_error():
    decoder = ContactCSVDecoder(_BrokenSource())

    with pytest.raises(CSVSourceError):
        list(decoder.iter_rows())


def test_headerless_rows_are_addressed_by_position():
    decoder = ContactCSVDecoder(io.BytesIO(b"Ada Lovelace,ada@x.com\nBob Lee,bob@x.com\n"), has_header=False)

    rows = list(decoder.iter_rows())

    assert decoder.header is None
    assert [row.row_number for row in rows] == [1, 2]
    assert rows[0].fields == {"column_1": "Ada Lovelace", "column_2": "ada@x.com"}


def test_non_seekable_source_reads_the_whole_stream():
    lines = ["name,email"] + [f"Person {index},p{index}@x.com" for index in range(200)]
    source = _PipeSource(("\n".join(lines) + "\n").encode("utf-8"))

    decoder = ContactCSVDecoder(source)
    rows = list(decoder.iter_rows())

    assert len(rows) == 200
    assert rows[-1].fields == {"name": "Person 199", "email": "p199@x.com"}


def test_crlf_line_endings_and_quoted_newlines():
    data = b'name,notes\r\nAda,"line one\r\nline two"\r\nBob,plain\r\n'
    decoder = ContactCSVDecoder(io.BytesIO(data))

    rows = list(decoder.iter_rows())

    assert [row.row_number for row in rows] == [1, 2]
    assert rows[0].fields["notes"] == "line one\r\nline two"
    assert rows[1].fields == {"name": "Bob", "notes": "plain"}


def test_rows_stream_as_soon_as_their_bytes_arrive():
    lines = [b"name,email\n"] + [f"Person {index},p{index}@x.com\n".encode("utf-8") for index in range(50)]
    source = _LineAtATimeSource(lines)

    rows = ContactCSVDecoder(io.BufferedReader(source), delimiter=",").iter_rows()
    first = next(rows)

    assert first.fields == {"name": "Person 0", "email": "p0@x.com"}
    assert source.reads <= 2
