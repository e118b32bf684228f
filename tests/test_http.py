"""Tests for the HTTP stages, using a mocked transport."""

import pytest
import requests
import requests_mock

from rillet import HTTPStatusError
from rillet import do
from rillet import echo
from rillet import get
from rillet import post

URL = "http://mock-server.com/items"


class TestHTTPRequests:
  """Test do, get and post."""

  def test_get_body_becomes_content(self):
    """Test a successful response body is the new content."""
    with requests_mock.Mocker() as m:
      m.get(URL, text="first\nsecond\n")
      assert get(URL).to_list() == ["first", "second"]

  def test_get_without_content_sends_no_body(self):
    """Test an empty pipe sends a request without a body."""
    with requests_mock.Mocker() as m:
      m.get(URL, text="ok")
      assert get(URL).to_string() == "ok"
      assert m.last_request.body is None

  def test_post_sends_content(self):
    """Test the current content is the request body."""
    with requests_mock.Mocker() as m:
      m.post(URL, text="created")
      assert echo("payload").post(URL).to_string() == "created"
      assert m.last_request.method == "POST"
      assert m.last_request.body == b"payload"

  def test_post_source(self):
    """Test the post source sends an empty request."""
    with requests_mock.Mocker() as m:
      m.post(URL, status_code=201, text="done")
      assert post(URL).to_string() == "done"

  def test_do_with_request(self):
    """Test a caller-built request is sent as is."""
    with requests_mock.Mocker() as m:
      m.put(URL, text="updated")
      request = requests.Request("PUT", URL, headers={"X-Token": "secret"}, data=b"body")
      assert do(request).to_string() == "updated"
      assert m.last_request.headers["X-Token"] == "secret"
      assert m.last_request.body == b"body"

  def test_no_content_response(self):
    """Test an empty successful response gives empty content."""
    with requests_mock.Mocker() as m:
      m.delete(URL, status_code=204)
      assert do(requests.Request("DELETE", URL)).to_string() == ""

  def test_custom_session(self):
    """Test requests go through the configured session."""
    session = requests.Session()
    session.headers["User-Agent"] = "rillet-test"
    with requests_mock.Mocker() as m:
      m.get(URL, text="ok")
      assert echo("").with_http_client(session, timeout=5).get(URL).to_string() == "ok"
      assert m.last_request.headers["User-Agent"] == "rillet-test"
      assert m.last_request.timeout == 5


class TestHTTPErrors:
  """Test failed requests."""

  def test_unexpected_status_sets_error(self):
    """Test a non-2xx status raises from sinks and carries the body."""
    with requests_mock.Mocker() as m:
      m.get(URL, status_code=404, reason="Not Found", text="no such item")
      pipe = get(URL)
      with pytest.raises(HTTPStatusError) as info:
        pipe.to_string()
      assert info.value.status_code == 404
      assert "404 Not Found" in str(info.value)
      assert info.value.body == b"no such item"

  def test_unexpected_status_still_delivers_body(self):
    """Test the error body is readable from the pipe."""
    with requests_mock.Mocker() as m:
      m.get(URL, status_code=500, reason="Internal Server Error", text="stack trace")
      pipe = get(URL)
      assert pipe.read() == b"stack trace"
      assert isinstance(pipe.error(), HTTPStatusError)

  def test_transport_failure(self):
    """Test a connection failure is the pipe's error."""
    with requests_mock.Mocker() as m:
      m.get(URL, exc=requests.exceptions.ConnectionError("refused"))
      with pytest.raises(requests.exceptions.ConnectionError):
        get(URL).to_string()

  def test_request_not_sent_after_error(self):
    """Test a failed pipe does not make the request."""
    with requests_mock.Mocker() as m:
      m.get(URL, text="ok")
      with pytest.raises(ValueError):
        echo("").with_error(ValueError("boom")).get(URL).to_string()
      assert not m.called
