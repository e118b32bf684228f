from collections.abc import Callable
from typing import Protocol
from typing import TypeAlias
from typing import runtime_checkable


@runtime_checkable
class Reader(Protocol):
  """Anything with a binary `read(size)` returning `b""` at end-of-data."""

  def read(self, size: int = -1, /) -> bytes: ...


@runtime_checkable
class Writer(Protocol):
  """Anything with a binary `write(data)`."""

  def write(self, data: bytes, /) -> int | None: ...


@runtime_checkable
class TextWriter(Protocol):
  def write(self, text: str, /) -> int: ...


ProcessFunction: TypeAlias = Callable[[Reader, Writer], None]
ScanFunction: TypeAlias = Callable[[str, TextWriter], None]
LineFunction: TypeAlias = Callable[[str], str]
