import codecs
import csv
import io
import logging
from collections import Counter
from pathlib import Path
from typing import Generator, Iterator, Sequence

from core.errors import CSVExtractionError, SourceFileNotFoundError
from core.settings import ENCODING_SAMPLE_BYTES

logger = logging.getLogger(__name__)


class GeneratorStream(io.RawIOBase):
    """
    Adapts a Python generator yielding bytes into a file-like object
    that PyArrow's C++ engine can read from natively.
    """
    def __init__(self, generator: Generator[bytes, None, None] | Iterator[bytes]):
        self._gen = generator
        self._leftover = b""
        self._iterator_finished = False

    def readable(self) -> bool:
        return True

    def readinto(self, b: bytearray) -> int | None:
        size = len(b)
        if size == 0:
            return 0

        data_len = len(self._leftover)
        chunks = [self._leftover]

        while data_len < size and not self._iterator_finished:
            try:
                chunk = next(self._gen)
                data_len += len(chunk)
                chunks.append(chunk)
            except StopIteration:
                self._iterator_finished = True

        if data_len == 0:
            return 0

        all_data = b"".join(chunks)
        count = min(data_len, size)
        b[:count] = all_data[:count]
        self._leftover = all_data[count:]

        return count


def require_file(file_path: Path) -> Path:
    if not file_path.is_file():
        raise SourceFileNotFoundError(f"Input file not found: {file_path}")
    return file_path


def detect_encoding(file_path: Path, canonical: str, legacy: str, sample_bytes: int = ENCODING_SAMPLE_BYTES) -> str:
    """
    Samples the head of the file; anything that is not valid UTF-8 is treated as
    the legacy encoding. A multi-byte character cut by the sample boundary is not an error.
    """
    with open(require_file(file_path), "rb") as f:
        sample = f.read(sample_bytes)

    decoder = codecs.getincrementaldecoder(canonical)()
    try:
        decoder.decode(sample, final=False)
    except UnicodeDecodeError:
        logger.info("File %s is not %s, reading it as %s", file_path.name, canonical, legacy)
        return legacy

    # utf-8-sig strips a leading BOM and is otherwise identical
    return "utf-8-sig" if codecs.lookup(canonical).name == "utf-8" else canonical


def line_encodings(detected: str, canonical: str, legacy: str) -> list[str]:
    """Encodings to try for one line: the file's detected encoding first, then the others."""
    return list(dict.fromkeys([detected, canonical, legacy]))


def decode_line(raw: bytes, encodings: Sequence[str]) -> str | None:
    """The line decoded with the first encoding that accepts all of it; None when none does."""
    for encoding in encodings:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def rename_duplicate_column_headers(header: list[str]) -> list[str]:
    """("ID", "ID", "id") -> ("ID", "ID.1", "id.2"). DuckDB identifiers are case-insensitive."""
    counts: Counter[str] = Counter()
    new_header: list[str] = []
    for column in header:
        key = column.lower()
        count = counts[key]
        counts[key] += 1
        if count > 0:
            new_header.append(f"{column}.{count}")
        else:
            new_header.append(column)
    return new_header


def read_header(file_path: Path, *, encoding: str, delimiter: str, quote_char: str) -> list[str]:
    with open(require_file(file_path), "r", encoding=encoding, newline="") as f:
        header_line = f.readline().rstrip("\r\n")

    if not header_line.strip():
        raise CSVExtractionError(f"CSV file is empty or missing header: {file_path}")

    return parse_line(header_line, delimiter=delimiter, quote_char=quote_char)


def parse_line(line: str, *, delimiter: str, quote_char: str) -> list[str]:
    """Parses one physical line on its own; quoted fields never span lines."""
    if quote_char:
        reader = csv.reader([line], delimiter=delimiter, quotechar=quote_char)
    else:
        reader = csv.reader([line], delimiter=delimiter, quoting=csv.QUOTE_NONE)
    try:
        return [value.strip() if value is not None else value for value in next(reader)]
    except StopIteration:
        return []


def stream_body_as_utf8(file_path: Path, *, encoding: str, chunk_size: int = 1 << 20) -> Generator[bytes, None, None]:
    """
    Yields the file without its header line, re-encoded to UTF-8 in fixed-size
    chunks. The file is never held in memory as a whole.
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
    header_skipped = False
    pending = ""

    with open(require_file(file_path), "rb") as f:
        while True:
            raw = f.read(chunk_size)
            final = not raw
            text = decoder.decode(raw, final=final)

            if not header_skipped:
                pending += text
                newline_at = pending.find("\n")
                if newline_at < 0 and not final:
                    continue
                text = pending[newline_at + 1:] if newline_at >= 0 else ""
                header_skipped = True
                pending = ""

            if text:
                yield text.encode("utf-8")
            if final:
                break
