import re
import time

import pytest
import requests
import zstandard as zstd

from animepahe_dl import http_client
from animepahe_dl.errors import NetworkError
from animepahe_dl.http_client import (
    decompress_zstd,
    download_to_file,
    fetch,
    fetch_json,
    get_browser_headers,
    new_session_context,
)


class FakeResponse:
    def __init__(self, body=b"", status=200):
        self.content = body
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """
    Replays queued responses; an exception in the queue is raised instead.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, headers=None, timeout=None, stream=False):
        self.requests.append({"url": url, "headers": headers, "stream": stream})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def sleeps(monkeypatch):
    delays = []
    monkeypatch.setattr(http_client.time, "sleep", delays.append)
    return delays


def use_session(monkeypatch, session):
    monkeypatch.setattr(http_client, "_get_thread_session", lambda: session)
    return session


def test_cookie_format():
    context = new_session_context("https://animepahe.ru")
    assert re.fullmatch(r"__ddg2_=[A-Za-z0-9]{16}", context.cookie)
    assert context.referer_url == "https://animepahe.ru"


def test_headers_carry_cookie_and_referer(context):
    headers = get_browser_headers(context)
    assert headers["cookie"] == context.cookie
    assert headers["referer"] == context.referer_url


def test_fetch_retries_with_doubling_delay(monkeypatch, sleeps, context):
    session = use_session(monkeypatch, FakeSession(
        requests.ConnectionError("reset"), FakeResponse(status=503), FakeResponse(b"ok")))

    assert fetch("https://animepahe.ru/api", context) == b"ok"
    assert sleeps == [2, 4]
    assert len(session.requests) == 3
    assert session.requests[0]["headers"]["cookie"] == context.cookie


def test_fetch_gives_up_after_max_retries(monkeypatch, sleeps, context):
    use_session(monkeypatch, FakeSession(*[FakeResponse(status=500)] * 3))

    with pytest.raises(NetworkError) as excinfo:
        fetch("https://animepahe.ru/api", context)
    assert excinfo.value.attempts == 3
    assert sleeps == [2, 4]


def test_fetch_decompresses_zstd(monkeypatch, context):
    payload = b'{"last_page": 1, "data": []}'
    use_session(monkeypatch, FakeSession(FakeResponse(zstd.ZstdCompressor().compress(payload))))
    assert fetch_json("https://animepahe.ru/api", context) == {"last_page": 1, "data": []}


def test_invalid_json_is_a_network_error(monkeypatch, context):
    use_session(monkeypatch, FakeSession(FakeResponse(b"<html>blocked</html>")))
    with pytest.raises(NetworkError):
        fetch_json("https://animepahe.ru/api", context)


def test_decompress_leaves_plain_bytes_alone():
    assert decompress_zstd(b"plain") == b"plain"
    assert decompress_zstd(b"") == b""


def test_download_writes_file(monkeypatch, sleeps, tmp_path, context):
    session = use_session(monkeypatch, FakeSession(FakeResponse(b"x" * 200_000)))
    dest = download_to_file("https://cdn.example.com/a.ts", tmp_path / "a.ts.encrypted", context)

    assert dest.read_bytes() == b"x" * 200_000
    assert session.requests[0]["stream"]
    assert sleeps == []


def test_empty_download_is_retried(monkeypatch, sleeps, tmp_path, context):
    use_session(monkeypatch, FakeSession(FakeResponse(b""), FakeResponse(b"data")))
    dest = download_to_file("https://cdn.example.com/a.ts", tmp_path / "a.ts", context)

    assert dest.read_bytes() == b"data"
    assert sleeps == [2]


def test_download_failure_leaves_nothing(monkeypatch, sleeps, tmp_path, context):
    use_session(monkeypatch, FakeSession(FakeResponse(b""), FakeResponse(status=404), FakeResponse(b"")))
    dest = tmp_path / "a.ts"

    with pytest.raises(NetworkError) as excinfo:
        download_to_file("https://cdn.example.com/a.ts", dest, context)
    assert excinfo.value.attempts == 3
    assert not dest.exists()
    assert sleeps == [2, 4]


def test_download_past_deadline_makes_no_request(monkeypatch, tmp_path, context):
    session = use_session(monkeypatch, FakeSession())
    with pytest.raises(NetworkError):
        download_to_file("https://cdn.example.com/a.ts", tmp_path / "a.ts", context,
                         deadline=time.monotonic() - 1)
    assert session.requests == []


def test_headers_only_advertise_decodable_encodings(context):
    encodings = [e.strip() for e in get_browser_headers(context)["accept-encoding"].split(",")]
    assert "br" not in encodings
    assert "zstd" in encodings


def test_corrupt_zstd_body_is_retried_then_network_error(monkeypatch, sleeps, context):
    corrupt = b"\x28\xb5\x2f\xfd" + b"definitely not a zstd frame"
    use_session(monkeypatch, FakeSession(*[FakeResponse(corrupt)] * 3))

    with pytest.raises(NetworkError):
        fetch("https://animepahe.ru/api", context)
    assert sleeps == [2, 4]


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class SlowResponse(FakeResponse):
    """
    Every chunk takes `step` seconds of clock time to arrive.
    """

    def __init__(self, clock, chunks, step):
        super().__init__(b"".join(chunks))
        self.clock = clock
        self.chunks = chunks
        self.step = step

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            self.clock.now += self.step
            yield chunk


def test_deadline_aborts_transfer_in_progress(monkeypatch, tmp_path, context):
    clock = FakeClock()
    monkeypatch.setattr(http_client, "time", clock)
    session = use_session(monkeypatch, FakeSession(SlowResponse(clock, [b"a" * 10] * 5, step=2)))
    dest = tmp_path / "a.ts.encrypted"

    with pytest.raises(NetworkError) as excinfo:
        download_to_file("https://cdn.example.com/a.ts", dest, context, deadline=5)
    assert "timeout" in str(excinfo.value)
    assert len(session.requests) == 1
    assert clock.sleeps == []
    assert not dest.exists()
