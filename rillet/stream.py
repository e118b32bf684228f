"""Byte streams that connect pipe stages.

Two building blocks live here:

- `ReadAutoCloser` wraps any binary reader and releases it exactly once,
  either when a read hits end-of-data or when `close()` is called.
- `handoff()` creates a synchronous, unbuffered channel. A write returns only
  after the reader has taken every byte, which is what bounds memory across a
  chain of stages: a slow consumer stalls every producer upstream of it.
"""

import threading
from typing import Any

from rillet.types import Reader

DEFAULT_READ_SIZE = 32 * 1024


class ReadAutoCloser:
  """A reader that closes its source on exhaustion or on request, once."""

  def __init__(self, source: Reader | None = None, close_source: bool = True) -> None:
    """Wrap a source.

    Args:
        source: Any object with a binary `read(size)`. `None` reads as empty.
        close_source: If False, releasing the handle leaves the source open.
                      Used for process-wide streams such as standard input.
    """
    self._source = source
    self._close_source = close_source
    self._lock = threading.Lock()
    self._closed = False

  @property
  def closed(self) -> bool:
    with self._lock:
      return self._closed

  def readable(self) -> bool:
    return True

  def read(self, size: int = -1) -> bytes:
    if self._source is None or self.closed:
      return b""
    try:
      data = self._source.read(size)
    except ValueError:
      # The source was closed from another thread while we were reading.
      if self.closed:
        return b""
      raise
    if size is None or size < 0 or (not data and size != 0):
      # Reading everything reaches end-of-data by definition.
      self.close()
    return data or b""

  def close(self) -> None:
    with self._lock:
      if self._closed:
        return
      self._closed = True
    if self._close_source and callable(getattr(self._source, "close", None)):
      self._source.close()  # type: ignore[union-attr]

  def __enter__(self) -> "ReadAutoCloser":
    return self

  def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
    self.close()


class _Channel:
  """State shared by the two ends of a handoff."""

  def __init__(self) -> None:
    self.cond = threading.Condition()
    self.write_lock = threading.Lock()
    self.pending: memoryview | None = None
    self.reader_closed = False
    self.writer_closed = False
    self.error: BaseException | None = None


class HandoffReader:
  """The consuming end of a handoff channel."""

  def __init__(self, channel: _Channel) -> None:
    self._channel = channel

  @property
  def closed(self) -> bool:
    with self._channel.cond:
      return self._channel.reader_closed

  def readable(self) -> bool:
    return True

  def read(self, size: int = -1) -> bytes:
    """Block until the producer offers data, then take up to `size` bytes.

    Returns:
        The bytes taken, or `b""` once the producer has closed its end.

    Raises:
        ValueError: If this end has been closed.
        BaseException: The error the producer closed its end with, if any.
    """
    if size is None or size < 0:
      return b"".join(iter(lambda: self.read(DEFAULT_READ_SIZE), b""))
    if size == 0:
      return b""

    channel = self._channel
    with channel.cond:
      while channel.pending is None and not channel.writer_closed and not channel.reader_closed:
        channel.cond.wait()
      if channel.reader_closed:
        raise ValueError("read from closed handoff")
      if channel.pending is None:
        if channel.error is not None:
          raise channel.error
        return b""

      chunk = bytes(channel.pending[:size])
      rest = channel.pending[size:]
      channel.pending = rest if len(rest) else None
      if channel.pending is None:
        channel.cond.notify_all()
      return chunk

  def close(self) -> None:
    """Abandon the stream. Any pending or later write raises BrokenPipeError."""
    with self._channel.cond:
      self._channel.reader_closed = True
      self._channel.cond.notify_all()


class HandoffWriter:
  """The producing end of a handoff channel."""

  def __init__(self, channel: _Channel) -> None:
    self._channel = channel

  @property
  def closed(self) -> bool:
    with self._channel.cond:
      return self._channel.writer_closed

  @property
  def reader_closed(self) -> bool:
    """True once the consumer has walked away."""
    with self._channel.cond:
      return self._channel.reader_closed

  def writable(self) -> bool:
    return True

  def write(self, data: bytes | bytearray | memoryview) -> int:
    """Offer `data` to the consumer and wait until all of it has been taken.

    Raises:
        BrokenPipeError: If the consumer closed its end before taking it all.
        ValueError: If this end has already been closed.
    """
    view = memoryview(data).cast("B")
    channel = self._channel
    with channel.write_lock, channel.cond:
      if channel.writer_closed:
        raise ValueError("write to closed handoff")
      if channel.reader_closed:
        raise BrokenPipeError("handoff reader closed")
      if not len(view):
        return 0

      channel.pending = view
      channel.cond.notify_all()
      while channel.pending is not None and not channel.reader_closed:
        channel.cond.wait()
      if channel.pending is not None:
        channel.pending = None
        raise BrokenPipeError("handoff reader closed")
    return len(view)

  def flush(self) -> None:
    pass

  def close(self, error: BaseException | None = None) -> None:
    """Signal end-of-data to the consumer. Safe to call more than once.

    Args:
        error: If given, the consumer raises it instead of reading
               end-of-data, once all data written before has been taken.
    """
    with self._channel.cond:
      if error is not None and not self._channel.writer_closed:
        self._channel.error = error
      self._channel.writer_closed = True
      self._channel.cond.notify_all()


def handoff() -> tuple[HandoffReader, HandoffWriter]:
  """Create a synchronous single-producer, single-consumer byte channel."""
  channel = _Channel()
  return HandoffReader(channel), HandoffWriter(channel)
