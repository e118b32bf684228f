from collections.abc import Iterator
import posixpath
import re

from rillet.errors import LineTooLongError
from rillet.stream import DEFAULT_READ_SIZE
from rillet.types import Reader
from rillet.types import Writer

DEFAULT_MAX_LINE_SIZE = 64 * 1024 * 1024
ENCODING = "utf-8"


def decode_line(data: bytes) -> str:
  """Decode one line, keeping undecodable bytes recoverable by `encode_line`."""
  return data.decode(ENCODING, "surrogateescape")


def encode_line(line: str) -> bytes:
  return line.encode(ENCODING, "surrogateescape")


class LineWriter:
  """Text view of a stage's binary output.

  Scan callbacks receive one of these so they can write `str` directly or use
  `print(value, file=writer)`.
  """

  def __init__(self, writer: Writer) -> None:
    self._writer = writer

  def write(self, text: str) -> int:
    self._writer.write(encode_line(text))
    return len(text)

  def flush(self) -> None:
    pass


def scan_lines(reader: Reader, max_line_size: int = DEFAULT_MAX_LINE_SIZE) -> Iterator[str]:
  """Split a byte stream into lines.

  Lines end at `\\n`; a `\\r` right before it is dropped, so text produced on
  either Unix or Windows reads the same. A final line without a terminator is
  still yielded.

  Args:
      reader: The stream to split.
      max_line_size: Longest line accepted, in bytes.

  Raises:
      LineTooLongError: If a line is longer than `max_line_size`.
  """
  buffer = bytearray()
  while chunk := reader.read(DEFAULT_READ_SIZE):
    # The carried-over partial line holds no newline; only new bytes are searched.
    search_from = len(buffer)
    buffer += chunk
    start = 0
    while (end := buffer.find(b"\n", search_from)) != -1:
      if end - start > max_line_size:
        raise LineTooLongError(max_line_size)
      yield _strip_cr(bytes(buffer[start:end]))
      start = search_from = end + 1
    del buffer[:start]
    if len(buffer) > max_line_size:
      raise LineTooLongError(max_line_size)
  if buffer:
    yield _strip_cr(bytes(buffer))


def _strip_cr(line: bytes) -> str:
  if line.endswith(b"\r"):
    line = line[:-1]
  return decode_line(line)


def compile_pattern(pattern: str | re.Pattern[str]) -> re.Pattern[str]:
  if isinstance(pattern, re.Pattern):
    return pattern
  return re.compile(pattern)


def base_name(path: str) -> str:
  """Return the last element of `path`, ignoring trailing slashes.

  An empty path gives `"."` and a path of only slashes gives `"/"`.
  """
  if not path:
    return "."
  stripped = path.rstrip("/")
  if not stripped:
    return "/"
  return stripped.rsplit("/", 1)[-1]


def dir_name(path: str) -> str:
  """Return every element of `path` except the last, normalised.

  A single trailing slash is ignored and a leading `./` is kept, so
  `./a/b/` gives `./a`.
  """
  if len(path) > 1 and path.endswith("/"):
    path = path[:-1]
  head = path[: path.rfind("/") + 1]
  parent = _clean(head) if head else "."
  if path.startswith("./"):
    return "./" + parent
  return parent


def _clean(path: str) -> str:
  cleaned = posixpath.normpath(path)
  # POSIX allows a distinct "//" root; a plain "/" is what callers expect.
  if cleaned.startswith("//"):
    cleaned = "/" + cleaned.lstrip("/")
  return cleaned
