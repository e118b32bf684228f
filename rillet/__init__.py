"""Rillet - composable, streaming text pipelines for Python.

Chains of line-oriented stages in the spirit of Unix pipes, written as method
calls. Stages run concurrently, stream their data through synchronous
handoffs, and share a single first-error-wins error state.
"""

from rillet.errors import ExitError
from rillet.errors import HTTPStatusError
from rillet.errors import LineTooLongError
from rillet.errors import PipeError
from rillet.pipe import Pipe
from rillet.sources import args
from rillet.sources import do
from rillet.sources import echo
from rillet.sources import exec_command
from rillet.sources import file
from rillet.sources import find_files
from rillet.sources import from_list
from rillet.sources import get
from rillet.sources import if_exists
from rillet.sources import list_files
from rillet.sources import new_pipe
from rillet.sources import post
from rillet.sources import stdin
from rillet.stream import ReadAutoCloser
from rillet.stream import handoff

__all__ = [
  "Pipe",
  "ReadAutoCloser",
  "handoff",
  "PipeError",
  "LineTooLongError",
  "HTTPStatusError",
  "ExitError",
  "new_pipe",
  "echo",
  "file",
  "from_list",
  "args",
  "stdin",
  "find_files",
  "list_files",
  "if_exists",
  "exec_command",
  "do",
  "get",
  "post",
]
