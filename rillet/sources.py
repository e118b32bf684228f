"""Functions that start a pipe from something outside the program.

Each returns a ready `Pipe`. A source that cannot be opened returns a pipe
already holding the error, with empty content, so chains never need an
explicit check before they are built.
"""

from collections.abc import Iterable
from collections.abc import Iterator
import glob
import logging
import os
import sys

import requests

from rillet.pipe import Pipe
from rillet.stream import ReadAutoCloser

logger = logging.getLogger(__name__)

GLOB_CHARACTERS = "[]^*?\\{}!"


def new_pipe() -> Pipe:
  """Create an empty pipe."""
  return Pipe()


def echo(text: str | bytes) -> Pipe:
  """Create a pipe whose content is `text`."""
  return new_pipe().echo(text)


def file(path: str | os.PathLike[str]) -> Pipe:
  """Create a pipe reading the file at `path`."""
  try:
    source = open(path, "rb")  # noqa: SIM115
  except OSError as e:
    logger.debug("file: cannot open %s: %s", path, e)
    return new_pipe().with_error(e)
  return new_pipe().with_reader(source)


def from_list(items: Iterable[str]) -> Pipe:
  """Create a pipe with one item per line. No items gives an empty pipe."""
  return echo("".join(f"{item}\n" for item in items))


def args() -> Pipe:
  """Create a pipe with the program's command-line arguments, one per line."""
  return from_list(sys.argv[1:])


def stdin() -> Pipe:
  """Create a pipe reading the process's standard input.

  Standard input is left open when the pipe is closed or exhausted.
  """
  return Pipe(ReadAutoCloser(sys.stdin.buffer, close_source=False))


def find_files(directory: str) -> Pipe:
  """List every file below `directory`, recursively, in lexical order.

  Directories themselves are not listed; symbolic links are not followed.
  """
  try:
    paths = list(_walk_files(directory))
  except OSError as e:
    logger.debug("find_files: cannot walk %s: %s", directory, e)
    return new_pipe().with_error(e)
  return from_list(paths)


def _walk_files(directory: str) -> Iterator[str]:
  with os.scandir(directory) as entries:
    ordered = sorted(entries, key=lambda entry: entry.name)
  for entry in ordered:
    if entry.is_dir(follow_symlinks=False):
      yield from _walk_files(entry.path)
    else:
      yield os.path.normpath(entry.path)


def list_files(path: str) -> Pipe:
  """List the entries of a directory, or the files matching a glob.

  Args:
      path: A directory, a single file (listed as itself), or a pattern
            containing glob characters.
  """
  if any(char in path for char in GLOB_CHARACTERS):
    return from_list(sorted(glob.glob(path)))
  try:
    names = sorted(os.listdir(path))
  except NotADirectoryError:
    return from_list([path])
  except OSError as e:
    logger.debug("list_files: cannot list %s: %s", path, e)
    return new_pipe().with_error(e)
  return from_list(os.path.join(path, name) for name in names)


def if_exists(path: str) -> Pipe:
  """Create an empty pipe that holds an error if `path` does not exist.

  Useful to guard a chain: `if_exists(path).exec(...)` runs nothing when the
  path is missing.
  """
  try:
    os.stat(path)
  except OSError as e:
    logger.debug("if_exists: %s", e)
    return new_pipe().with_error(e)
  return new_pipe()


def exec_command(cmd_line: str) -> Pipe:
  """Create a pipe with the output of a command. See `Pipe.exec`."""
  return new_pipe().exec(cmd_line)


def do(request: requests.Request | requests.PreparedRequest) -> Pipe:
  """Create a pipe with the body of the response to `request`. See `Pipe.do`."""
  return new_pipe().do(request)


def get(url: str) -> Pipe:
  return new_pipe().get(url)


def post(url: str) -> Pipe:
  return new_pipe().post(url)
