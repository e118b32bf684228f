"""Error values shared by every stage of a pipe chain.

Stages run on separate threads, so the single error recorded for a chain lives
in an `ErrorSlot` guarded by a lock. The first error set wins; later failures
are dropped so that callers always see the root cause.
"""

import threading


class PipeError(Exception):
  """Base class for errors raised by rillet itself."""


class LineTooLongError(PipeError):
  """A line did not fit in the scanner's buffer."""

  def __init__(self, limit: int):
    super().__init__(f"line exceeds maximum size of {limit} bytes")
    self.limit = limit


class HTTPStatusError(PipeError):
  """The server answered with a status outside the 2xx range.

  The response body has already been written to the pipe's content, and a
  copy is kept in `body` so callers can inspect error payloads.
  """

  def __init__(self, status_code: int, reason: str, url: str, body: bytes = b""):
    super().__init__(f"unexpected HTTP response status: {status_code} {reason}".rstrip())
    self.status_code = status_code
    self.reason = reason
    self.url = url
    self.body = body


class ExitError(PipeError):
  """An external command exited with a non-zero status."""

  def __init__(self, returncode: int, command: str, output: bytes = b""):
    super().__init__(f"exit status {returncode}")
    self.returncode = returncode
    self.command = command
    self.output = output


class ErrorSlot:
  """A lock-guarded, first-error-wins holder for a chain's error."""

  def __init__(self, error: BaseException | None = None) -> None:
    self._lock = threading.Lock()
    self._error = error

  def get(self) -> BaseException | None:
    with self._lock:
      return self._error

  def set(self, error: BaseException | None) -> BaseException | None:
    """Record `error` unless one is already present.

    Returns:
        The error held after the call, which is the earlier one if the slot
        was already occupied.
    """
    with self._lock:
      if self._error is None:
        self._error = error
      return self._error

  def override(self, error: BaseException | None) -> None:
    """Replace the held error unconditionally. `None` clears the slot."""
    with self._lock:
      self._error = error
