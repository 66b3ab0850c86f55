from __future__ import annotations

import io
import urllib.error

import pytest

from dbgsync.exceptions import ProtocolError
from dbgsync.signed_url import upload_via_signed_url
from tests.fakes import FakeUrlopen


def test_put_sends_body_and_length() -> None:
    urlopen = FakeUrlopen(status=201)

    status = upload_via_signed_url(
        "https://bucket.example/obj", io.BytesIO(b"payload"), 7, urlopen_fn=urlopen
    )

    assert status == 201
    request = urlopen.requests[0]
    assert request.get_method() == "PUT"
    assert request.get_header("Content-length") == "7"
    assert urlopen.bodies == [b"payload"]


def test_non_success_status_is_a_protocol_error() -> None:
    with pytest.raises(ProtocolError) as excinfo:
        upload_via_signed_url(
            "https://bucket.example/obj",
            io.BytesIO(b"payload"),
            7,
            urlopen_fn=FakeUrlopen(status=304),
        )

    assert str(excinfo.value) == "unexpected status code: 304"


def test_http_error_is_a_protocol_error() -> None:
    error = urllib.error.HTTPError("https://bucket.example/obj", 500, "Server Error", {}, None)

    with pytest.raises(ProtocolError) as excinfo:
        upload_via_signed_url(
            "https://bucket.example/obj",
            io.BytesIO(b"payload"),
            7,
            urlopen_fn=FakeUrlopen(error=error),
        )

    assert "unexpected status code: 500" in str(excinfo.value)


def test_connection_failure_is_a_protocol_error() -> None:
    error = urllib.error.URLError("connection refused")

    with pytest.raises(ProtocolError) as excinfo:
        upload_via_signed_url(
            "https://bucket.example/obj",
            io.BytesIO(b"payload"),
            7,
            urlopen_fn=FakeUrlopen(error=error),
        )

    assert "connection refused" in str(excinfo.value)
