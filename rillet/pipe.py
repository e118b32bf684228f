# pipe.py
from collections import deque
from collections.abc import Callable
from collections.abc import Iterator
import base64
import hashlib
import io
import itertools
import logging
import re
import shlex
import subprocess
import sys
import threading
from typing import Any
from typing import TypeVar
from typing import cast

import requests

from rillet.errors import ErrorSlot
from rillet.errors import ExitError
from rillet.errors import HTTPStatusError
from rillet.errors import LineTooLongError
from rillet.helpers import DEFAULT_MAX_LINE_SIZE
from rillet.helpers import LineWriter
from rillet.helpers import base_name
from rillet.helpers import compile_pattern
from rillet.helpers import decode_line
from rillet.helpers import dir_name
from rillet.helpers import encode_line
from rillet.helpers import scan_lines
from rillet.stream import DEFAULT_READ_SIZE
from rillet.stream import HandoffWriter
from rillet.stream import ReadAutoCloser
from rillet.stream import handoff
from rillet.types import LineFunction
from rillet.types import ProcessFunction
from rillet.types import Reader
from rillet.types import ScanFunction
from rillet.types import TextWriter
from rillet.types import Writer

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HTTP_TIMEOUT = 300
OUTPUT_TAIL_SIZE = 4096


class _GuardedReader:
  """The upstream stream as seen by a stage.

  Reads end as soon as any stage of the chain has recorded an error, so a
  failure anywhere stops every worker instead of letting them run on.
  """

  def __init__(self, source: ReadAutoCloser, errors: ErrorSlot) -> None:
    self._source = source
    self._errors = errors

  def read(self, size: int = -1) -> bytes:
    if self._errors.get() is not None:
      return b""
    return self._source.read(size)

  def close(self) -> None:
    self._source.close()


class _Tail:
  """Keeps the last `size` bytes written to it."""

  def __init__(self, size: int = OUTPUT_TAIL_SIZE) -> None:
    self._size = size
    self._data = bytearray()

  def add(self, chunk: bytes) -> None:
    self._data += chunk
    del self._data[: -self._size]

  def value(self) -> bytes:
    return bytes(self._data)


class Pipe:
  """A byte stream plus the error state of the chain that produces it.

  A Pipe is built by a source (see `rillet.sources`), extended by transforms
  that each run on their own worker thread, and drained by a sink. Every
  transform returns the same Pipe, so calls chain naturally and the whole
  chain shares one error slot.

  Example:
      >>> from rillet import echo
      >>> echo("b\\na\\nc\\n").sort().to_string()
      'a\\nb\\nc\\n'

  Stages are connected by synchronous handoffs: nothing runs ahead of the
  slowest consumer, and output order always matches input order.

  Once an error is recorded, reads return end-of-data and sinks raise that
  error. It stays until `with_error()` replaces or clears it.
  """

  def __init__(
    self,
    reader: Reader | None = None,
    *,
    stdout: Writer | None = None,
    stderr: Writer | None = None,
    http_client: requests.Session | None = None,
    http_timeout: float | None = DEFAULT_HTTP_TIMEOUT,
    max_line_size: int = DEFAULT_MAX_LINE_SIZE,
  ) -> None:
    """Initialize a pipe.

    Args:
        reader: The initial content. `None` gives an empty pipe.
        stdout: Destination for `stdout()` and `tee()`. Defaults to the
                process's standard output, looked up when used.
        stderr: Destination for diagnostics of external commands. If None,
                they are interleaved with the command's output.
        http_client: Session used by `do()`, `get()` and `post()`.
        http_timeout: Timeout in seconds for HTTP requests.
        max_line_size: Longest line, in bytes, accepted by line-based stages.
    """
    self.reader = reader if isinstance(reader, ReadAutoCloser) else ReadAutoCloser(reader)
    self.http_timeout = http_timeout
    self.max_line_size = max_line_size
    self._errors = ErrorSlot()
    self._stdout = stdout
    self._stderr = stderr
    self._http_client = http_client

  # --- Error state ---

  def error(self) -> BaseException | None:
    """Return the error recorded for this pipe, if any."""
    return self._errors.get()

  def set_error(self, error: BaseException) -> BaseException | None:
    """Record `error` unless an earlier one is already held.

    Returns:
        The error the pipe holds after the call.
    """
    current = self._errors.set(error)
    if current is error:
      logger.debug("pipe error set: %r", error)
    return current

  def with_error(self, error: BaseException | None) -> "Pipe":
    """Replace the pipe's error, or clear it with None."""
    self._errors.override(error)
    return self

  def exit_status(self) -> int:
    """Return the exit status of a failed external command, or 0."""
    error = self.error()
    if isinstance(error, ExitError):
      return error.returncode
    return 0

  def _check(self) -> None:
    if (error := self.error()) is not None:
      raise error

  # --- Configuration ---

  def with_reader(self, reader: Reader) -> "Pipe":
    """Make `reader` the pipe's content."""
    self.reader = reader if isinstance(reader, ReadAutoCloser) else ReadAutoCloser(reader)
    return self

  def with_stdout(self, writer: Writer) -> "Pipe":
    self._stdout = writer
    return self

  def with_stderr(self, writer: Writer) -> "Pipe":
    self._stderr = writer
    return self

  def with_http_client(self, session: requests.Session, timeout: float | None = None) -> "Pipe":
    """Use `session` for HTTP stages, optionally with a new timeout."""
    self._http_client = session
    if timeout is not None:
      self.http_timeout = timeout
    return self

  @property
  def http_client(self) -> requests.Session:
    if self._http_client is None:
      self._http_client = requests.Session()
    return self._http_client

  def _stdout_writer(self) -> Writer:
    return self._stdout if self._stdout is not None else sys.stdout.buffer

  # --- Reading ---

  def read(self, size: int = -1) -> bytes:
    """Read up to `size` bytes, or everything if `size` is negative.

    Returns `b""` at end-of-data, and also as soon as an error is recorded.
    In that case the stream is released, so upstream workers stop.
    """
    if self.error() is not None:
      self.reader.close()
      return b""
    return self.reader.read(size)

  def close(self) -> None:
    """Release the pipe's stream. Upstream workers stop as a consequence."""
    self.reader.close()

  def __enter__(self) -> "Pipe":
    return self

  def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
    self.close()

  def __iter__(self) -> Iterator[str]:
    """Iterate over the pipe's lines, without line terminators.

    Raises:
        The pipe's error, once the content has been drained.
    """
    return self._lines()

  def _lines(self) -> Iterator[str]:
    try:
      self._check()
      try:
        yield from scan_lines(self, self.max_line_size)
      except LineTooLongError as e:
        self.set_error(e)
      self._check()
    finally:
      self.close()

  # --- Stage executor ---

  def filter(self, process: ProcessFunction) -> "Pipe":
    """Add a stage that runs `process(reader, writer)` on a worker thread.

    `process` reads the current content from `reader` and writes its output
    to `writer`. Each write is handed straight to the next consumer and blocks
    until it has been taken. An exception raised by `process` becomes the
    pipe's error.

    If the pipe already holds an error, nothing is started.

    Args:
        process: The transformation, taking a binary reader and writer.

    Returns:
        The pipe, now yielding the output of `process`.
    """
    if self.error() is not None:
      return self

    upstream = _GuardedReader(self.reader, self._errors)
    downstream, writer = handoff()
    self.reader = ReadAutoCloser(downstream)

    name = getattr(process, "__qualname__", type(process).__name__)
    worker = threading.Thread(
      target=self._run_stage,
      args=(process, upstream, writer, name),
      name=f"rillet-{name}",
      daemon=True,
    )
    worker.start()
    return self

  def _run_stage(self, process: ProcessFunction, upstream: _GuardedReader, writer: HandoffWriter, name: str) -> None:
    """Worker body: run one stage, record its failure, close both ends."""
    logger.debug("stage %s started", name)
    try:
      process(upstream, writer)
    except BrokenPipeError as e:
      if writer.reader_closed:
        logger.debug("stage %s stopped: consumer closed the stream", name)
      else:
        self.set_error(e)
    except Exception as e:
      self.set_error(e)
    finally:
      writer.close()
      upstream.close()
      logger.debug("stage %s finished", name)

  def filter_scan(self, function: ScanFunction) -> "Pipe":
    """Add a stage calling `function(line, writer)` for every input line.

    `writer` accepts text, so `print(value, file=writer)` works. Lines that
    `function` writes nothing for are dropped.
    """
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      text_writer = LineWriter(writer)
      for line in scan_lines(reader, max_line_size):
        function(line, text_writer)

    return self.filter(process)

  def filter_line(self, function: LineFunction) -> "Pipe":
    """Add a stage replacing every line with `function(line)`."""

    def transform(line: str, writer: TextWriter) -> None:
      writer.write(function(line) + "\n")

    return self.filter_scan(transform)

  # --- Line transforms ---

  def basename(self) -> "Pipe":
    """Replace each path with its last element, like `basename(1)`."""
    return self.filter_line(base_name)

  def dirname(self) -> "Pipe":
    """Replace each path with its parent directory, like `dirname(1)`."""
    return self.filter_line(dir_name)

  def column(self, n: int) -> "Pipe":
    """Keep the `n`th whitespace-separated field of each line (1-based).

    Lines with fewer than `n` fields are dropped.
    """

    def select(line: str, writer: TextWriter) -> None:
      fields = line.split()
      if 0 < n <= len(fields):
        writer.write(fields[n - 1] + "\n")

    return self.filter_scan(select)

  def _keep(self, predicate: Callable[[str], bool]) -> "Pipe":
    def keep(line: str, writer: TextWriter) -> None:
      if predicate(line):
        writer.write(line + "\n")

    return self.filter_scan(keep)

  def match(self, text: str) -> "Pipe":
    """Keep lines containing `text`."""
    return self._keep(lambda line: text in line)

  def match_regexp(self, pattern: str | re.Pattern[str]) -> "Pipe":
    """Keep lines matching `pattern` anywhere."""
    compiled = compile_pattern(pattern)
    return self._keep(lambda line: compiled.search(line) is not None)

  def reject(self, text: str) -> "Pipe":
    """Drop lines containing `text`."""
    return self._keep(lambda line: text not in line)

  def reject_regexp(self, pattern: str | re.Pattern[str]) -> "Pipe":
    """Drop lines matching `pattern` anywhere."""
    compiled = compile_pattern(pattern)
    return self._keep(lambda line: compiled.search(line) is None)

  def replace(self, old: str, new: str) -> "Pipe":
    return self.filter_line(lambda line: line.replace(old, new))

  def replace_regexp(self, pattern: str | re.Pattern[str], repl: str) -> "Pipe":
    """Substitute every match of `pattern`, using `re.sub` replacement syntax."""
    compiled = compile_pattern(pattern)
    return self.filter_line(lambda line: compiled.sub(repl, line))

  def first(self, n: int) -> "Pipe":
    """Keep the first `n` lines and stop reading upstream after them."""
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      for line in itertools.islice(scan_lines(reader, max_line_size), max(n, 0)):
        writer.write(encode_line(line + "\n"))

    return self.filter(process)

  def last(self, n: int) -> "Pipe":
    """Keep the last `n` lines."""
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      if n <= 0:
        return
      for line in deque(scan_lines(reader, max_line_size), maxlen=n):
        writer.write(encode_line(line + "\n"))

    return self.filter(process)

  def sort(self, reverse: bool = False) -> "Pipe":
    """Sort lines, like `sort(1)` in the C locale."""
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      for line in sorted(scan_lines(reader, max_line_size), reverse=reverse):
        writer.write(encode_line(line + "\n"))

    return self.filter(process)

  def freq(self) -> "Pipe":
    """Count distinct lines, most frequent first, like `sort | uniq -c | sort -rn`.

    Each output line is the count, right-aligned to the widest count, a space
    and the line. Ties are ordered alphabetically.
    """
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      counts: dict[str, int] = {}
      for line in scan_lines(reader, max_line_size):
        counts[line] = counts.get(line, 0) + 1
      if not counts:
        return
      width = len(str(max(counts.values())))
      for line, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
        writer.write(encode_line(f"{count:>{width}} {line}\n"))

    return self.filter(process)

  def join(self) -> "Pipe":
    """Join all lines into one, separated by single spaces."""
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      for i, line in enumerate(scan_lines(reader, max_line_size)):
        writer.write(encode_line(line if i == 0 else " " + line))
      writer.write(b"\n")

    return self.filter(process)

  # --- Block transforms ---

  def echo(self, text: str | bytes) -> "Pipe":
    """Replace the pipe's content with `text`, releasing the old stream."""
    data = text.encode() if isinstance(text, str) else text
    self.reader.close()
    return self.with_reader(io.BytesIO(data))

  def encode_base64(self) -> "Pipe":
    """Encode the content as standard base64, without line breaks."""

    def process(reader: Reader, writer: Writer) -> None:
      pending = b""
      while chunk := reader.read(DEFAULT_READ_SIZE):
        pending += chunk
        cut = len(pending) - len(pending) % 3
        if cut:
          writer.write(base64.b64encode(pending[:cut]))
          pending = pending[cut:]
      if pending:
        writer.write(base64.b64encode(pending))

    return self.filter(process)

  def decode_base64(self) -> "Pipe":
    """Decode standard base64 content. Line breaks in the input are ignored.

    Malformed input sets the pipe's error (`binascii.Error`).
    """

    def process(reader: Reader, writer: Writer) -> None:
      pending = b""
      while chunk := reader.read(DEFAULT_READ_SIZE):
        pending += chunk.translate(None, b"\r\n")
        cut = len(pending) - len(pending) % 4
        if cut:
          writer.write(base64.b64decode(pending[:cut], validate=True))
          pending = pending[cut:]
      if pending:
        writer.write(base64.b64decode(pending, validate=True))

    return self.filter(process)

  def tee(self, *writers: Writer) -> "Pipe":
    """Copy the content to `writers` as it flows past.

    With no writers, the copy goes to the pipe's stdout destination.
    """
    targets = writers or (self._stdout_writer(),)

    def process(reader: Reader, writer: Writer) -> None:
      while chunk := reader.read(DEFAULT_READ_SIZE):
        for target in targets:
          target.write(chunk)
        writer.write(chunk)

    return self.filter(process)

  # --- File aggregation (best effort) ---

  def concat(self) -> "Pipe":
    """Replace each line, taken as a file path, with that file's content.

    Like `cat(1)`, files that cannot be opened or read are skipped and do not
    set the pipe's error.
    """
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      for path in scan_lines(reader, max_line_size):
        try:
          source = open(path, "rb")  # noqa: SIM115
        except OSError as e:
          logger.debug("concat: skipping %s: %s", path, e)
          continue
        with source:
          while True:
            try:
              chunk = source.read(DEFAULT_READ_SIZE)
            except OSError as e:
              logger.debug("concat: stopped reading %s: %s", path, e)
              break
            if not chunk:
              break
            writer.write(chunk)

    return self.filter(process)

  def hash_sums(self, algorithm: str = "sha256") -> "Pipe":
    """Replace each line, taken as a file path, with the hex digest of that file.

    Files that cannot be read are skipped, as in `concat()`.

    Args:
        algorithm: Any name accepted by `hashlib.new`.
    """
    try:
      hashlib.new(algorithm)
    except ValueError as e:
      self.set_error(e)
      return self

    def digest(path: str, writer: TextWriter) -> None:
      try:
        with open(path, "rb") as source:
          hexdigest = hashlib.file_digest(source, algorithm).hexdigest()
      except OSError as e:
        logger.debug("hash_sums: skipping %s: %s", path, e)
        return
      writer.write(hexdigest + "\n")

    return self.filter_scan(digest)

  def sha256_sums(self) -> "Pipe":
    return self.hash_sums("sha256")

  # --- External commands ---

  def exec(self, cmd_line: str) -> "Pipe":
    """Run a command with the pipe's content on its standard input.

    The command line is split into arguments the way a POSIX shell would, but
    is not otherwise interpreted. Standard output and standard error become
    the new content, interleaved, unless `with_stderr()` redirected the
    latter. A non-zero exit sets an `ExitError`.
    """

    def process(reader: Reader, writer: Writer) -> None:
      self._run_command(cmd_line, reader, writer)

    return self.filter(process)

  def exec_for_each(self, template: str) -> "Pipe":
    """Run one command per input line, concatenating their output.

    The command line is built with `template.format(line, line=line)`, so
    both `"ls {}"` and `"ls {line}"` work. The first command that fails to
    start or exits non-zero stops the stage and sets the pipe's error.
    """
    max_line_size = self.max_line_size

    def process(reader: Reader, writer: Writer) -> None:
      for line in scan_lines(reader, max_line_size):
        self._run_command(template.format(line, line=line), None, writer)

    return self.filter(process)

  def _run_command(self, cmd_line: str, stdin: Reader | None, writer: Writer) -> None:
    args = shlex.split(cmd_line)
    if not args:
      raise ValueError("empty command line")

    diagnostics = self._stderr
    try:
      process = subprocess.Popen(
        args,
        stdin=subprocess.DEVNULL if stdin is None else subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT if diagnostics is None else subprocess.PIPE,
      )
    except OSError as e:
      (writer if diagnostics is None else diagnostics).write(encode_line(f"{e}\n"))
      raise

    tail = _Tail()
    pumps: list[threading.Thread] = []
    if stdin is not None:
      # Not joined: it ends once the command stops reading or upstream closes.
      self._start_pump(self._feed_stdin, stdin, process.stdin)
    if diagnostics is not None:
      pumps.append(self._start_pump(self._copy_diagnostics, process.stderr, diagnostics, tail))

    output = cast(io.BufferedReader, process.stdout)
    try:
      while chunk := output.read1(DEFAULT_READ_SIZE):
        if diagnostics is None:
          tail.add(chunk)
        writer.write(chunk)
    except BaseException:
      process.kill()
      raise
    finally:
      output.close()
      returncode = process.wait()
      for pump in pumps:
        pump.join()

    if returncode != 0:
      raise ExitError(returncode, cmd_line, tail.value())

  def _start_pump(self, target: Any, *args: Any) -> threading.Thread:
    pump = threading.Thread(target=target, args=args, daemon=True)
    pump.start()
    return pump

  def _feed_stdin(self, reader: Reader, stdin: Any) -> None:
    try:
      while chunk := reader.read(DEFAULT_READ_SIZE):
        stdin.write(chunk)
    except BrokenPipeError:
      logger.debug("command stopped reading its input")
    except Exception as e:
      self.set_error(e)
    finally:
      try:
        stdin.close()
      except BrokenPipeError:
        logger.debug("command stopped reading its input")

  def _copy_diagnostics(self, source: Any, destination: Writer, tail: _Tail) -> None:
    try:
      while chunk := source.read1(DEFAULT_READ_SIZE):
        tail.add(chunk)
        destination.write(chunk)
    except Exception as e:
      self.set_error(e)
    finally:
      source.close()

  # --- HTTP ---

  def do(self, request: requests.Request | requests.PreparedRequest) -> "Pipe":
    """Send `request` and make the response body the pipe's content.

    The body is delivered whatever the status. A status outside 2xx also
    sets an `HTTPStatusError`, and transport failures set the underlying
    `requests` exception.
    """

    def process(reader: Reader, writer: Writer) -> None:
      self._send(request, writer)

    return self.filter(process)

  def get(self, url: str) -> "Pipe":
    """GET `url`, sending the current content, if any, as the body."""
    return self._request("GET", url)

  def post(self, url: str) -> "Pipe":
    """POST the current content to `url`."""
    return self._request("POST", url)

  def _request(self, method: str, url: str) -> "Pipe":
    def process(reader: Reader, writer: Writer) -> None:
      body = reader.read()
      self._send(requests.Request(method, url, data=body or None), writer)

    return self.filter(process)

  def _send(self, request: requests.Request | requests.PreparedRequest, writer: Writer) -> None:
    session = self.http_client
    prepared = session.prepare_request(request) if isinstance(request, requests.Request) else request
    logger.debug("%s %s", prepared.method, prepared.url)
    with session.send(prepared, stream=True, timeout=self.http_timeout) as response:
      if 200 <= response.status_code <= 299:
        for chunk in response.iter_content(DEFAULT_READ_SIZE):
          writer.write(chunk)
        return
      body = response.content
      writer.write(body)
      raise HTTPStatusError(response.status_code, response.reason or "", response.url, body)

  # --- Sinks ---

  def _drain(self, consume: Callable[[], T]) -> T:
    """Run a sink body between error checks, releasing the stream afterwards.

    The stream is closed on every exit path, so workers upstream of a failed
    or abandoned sink never stay blocked on a write.
    """
    try:
      self._check()
      result = consume()
      self._check()
      return result
    finally:
      self.close()

  def to_bytes(self) -> bytes:
    """Drain the pipe and return its content.

    Raises:
        The pipe's error, instead of returning partial content.
    """
    return self._drain(self.read)

  def to_string(self) -> str:
    return decode_line(self.to_bytes())

  def to_list(self) -> list[str]:
    """Drain the pipe and return its lines, without terminators."""
    return list(self._lines())

  def count_lines(self) -> int:
    return sum(1 for _ in self._lines())

  def hash_sum(self, algorithm: str = "sha256") -> str:
    """Return the hex digest of the whole content."""

    def digest() -> str:
      hasher = hashlib.new(algorithm)
      while chunk := self.read(DEFAULT_READ_SIZE):
        hasher.update(chunk)
      return hasher.hexdigest()

    return self._drain(digest)

  def sha256_sum(self) -> str:
    return self.hash_sum("sha256")

  def stdout(self) -> int:
    """Copy the content to the pipe's stdout destination.

    Returns:
        The number of bytes written.

    Raises:
        The pipe's error, even if some output was already written.
    """
    return self._drain(lambda: self._copy_to(self._stdout_writer()))

  def write_file(self, path: str) -> int:
    """Write the content to `path`, truncating it. Returns bytes written."""
    return self._write_to_path(path, "wb")

  def append_file(self, path: str) -> int:
    """Append the content to `path`, creating it if needed. Returns bytes written."""
    return self._write_to_path(path, "ab")

  def wait(self) -> None:
    """Drain the pipe, discarding its content, and raise its error if any."""

    def discard() -> None:
      while self.read(DEFAULT_READ_SIZE):
        pass

    self._drain(discard)

  def _write_to_path(self, path: str, mode: str) -> int:
    def write() -> int:
      with open(path, mode) as destination:
        return self._copy_to(destination)

    return self._drain(write)

  def _copy_to(self, destination: Writer) -> int:
    written = 0
    while chunk := self.read(DEFAULT_READ_SIZE):
      destination.write(chunk)
      written += len(chunk)
    if callable(getattr(destination, "flush", None)):
      destination.flush()  # type: ignore[attr-defined]
    return written
