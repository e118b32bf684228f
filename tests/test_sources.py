"""Tests for the functions that start a pipe."""

import io
import logging
import os
import sys

import pytest

from rillet import args
from rillet import echo
from rillet import file
from rillet import find_files
from rillet import from_list
from rillet import if_exists
from rillet import list_files
from rillet import new_pipe
from rillet import stdin


@pytest.fixture
def tree(tmp_path):
  """A small directory tree with nested files."""
  (tmp_path / "b.txt").write_text("b\n")
  (tmp_path / "a.txt").write_text("a\n")
  sub = tmp_path / "sub"
  sub.mkdir()
  (sub / "c.txt").write_text("c\n")
  (sub / "deeper").mkdir()
  (sub / "deeper" / "d.log").write_text("d\n")
  return tmp_path


class TestSimpleSources:
  """Test sources that do not touch the filesystem."""

  def test_new_pipe_is_empty(self):
    """Test a fresh pipe has no content and no error."""
    pipe = new_pipe()
    assert pipe.error() is None
    assert pipe.to_string() == ""

  def test_echo(self):
    """Test text and bytes are both accepted."""
    assert echo("hello").to_string() == "hello"
    assert echo(b"\x00\x01").to_bytes() == b"\x00\x01"

  def test_from_list(self):
    """Test each item becomes a newline-terminated line."""
    assert from_list(["a", "b"]).to_string() == "a\nb\n"
    assert from_list([]).to_string() == ""

  def test_args(self, monkeypatch):
    """Test program arguments, without the program name, one per line."""
    monkeypatch.setattr(sys, "argv", ["prog", "one", "two words"])
    assert args().to_list() == ["one", "two words"]

  def test_stdin(self, monkeypatch):
    """Test the process's standard input is read and left open."""
    fake = io.TextIOWrapper(io.BytesIO(b"from stdin\n"))
    monkeypatch.setattr(sys, "stdin", fake)
    pipe = stdin()
    assert pipe.to_string() == "from stdin\n"
    pipe.close()
    assert not fake.closed


class TestFileSources:
  """Test file and directory sources."""

  def test_file(self, tmp_path):
    """Test a file's content becomes the pipe's content."""
    path = tmp_path / "data.txt"
    path.write_bytes(b"line 1\nline 2\n")
    assert file(str(path)).to_list() == ["line 1", "line 2"]

  def test_file_accepts_path_objects(self, tmp_path):
    """Test os.PathLike paths are accepted."""
    path = tmp_path / "data.txt"
    path.write_text("x")
    assert file(path).to_string() == "x"

  def test_missing_file(self, tmp_path):
    """Test a missing file gives an errored pipe instead of raising."""
    pipe = file(str(tmp_path / "missing.txt"))
    assert isinstance(pipe.error(), FileNotFoundError)
    assert pipe.read() == b""
    with pytest.raises(FileNotFoundError):
      pipe.to_string()

  def test_open_failure_is_logged(self, tmp_path, caplog):
    """Test sources record why they start out failed."""
    missing = str(tmp_path / "missing.txt")
    with caplog.at_level(logging.DEBUG, logger="rillet.sources"):
      file(missing)
      list_files(missing)
    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("file: cannot open") and missing in message for message in messages)
    assert any(message.startswith("list_files: cannot list") for message in messages)

  def test_find_files(self, tree):
    """Test every file is listed recursively, in lexical order."""
    expected = [
      os.path.join(tree, "a.txt"),
      os.path.join(tree, "b.txt"),
      os.path.join(tree, "sub", "c.txt"),
      os.path.join(tree, "sub", "deeper", "d.log"),
    ]
    assert find_files(str(tree)).to_list() == expected

  def test_find_files_missing_directory(self, tmp_path):
    """Test a missing directory sets the error."""
    assert isinstance(find_files(str(tmp_path / "nope")).error(), FileNotFoundError)

  def test_list_files_directory(self, tree):
    """Test a directory lists its direct entries, sorted."""
    expected = [os.path.join(tree, name) for name in ("a.txt", "b.txt", "sub")]
    assert list_files(str(tree)).to_list() == expected

  def test_list_files_single_file(self, tree):
    """Test a plain file lists itself."""
    path = str(tree / "a.txt")
    assert list_files(path).to_string() == path + "\n"

  def test_list_files_glob(self, tree):
    """Test a pattern lists the matching paths."""
    pattern = os.path.join(tree, "*.txt")
    expected = [os.path.join(tree, "a.txt"), os.path.join(tree, "b.txt")]
    assert list_files(pattern).to_list() == expected

  def test_list_files_missing(self, tmp_path):
    """Test a missing path sets the error."""
    assert isinstance(list_files(str(tmp_path / "nope")).error(), FileNotFoundError)

  def test_if_exists(self, tmp_path):
    """Test the guard is clean for existing paths and errored otherwise."""
    assert if_exists(str(tmp_path)).error() is None
    missing = if_exists(str(tmp_path / "nope"))
    assert isinstance(missing.error(), FileNotFoundError)

  def test_if_exists_stops_the_chain(self, tmp_path):
    """Test stages added after a failed guard never run."""
    called = []
    pipe = if_exists(str(tmp_path / "nope")).filter_scan(lambda line, w: called.append(line))
    with pytest.raises(FileNotFoundError):
      pipe.wait()
    assert called == []
