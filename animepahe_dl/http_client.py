"""
Cookie-bearing HTTP transport with retry, backoff and zstd decompression.
"""

import json
import logging
import random
import string
import time
from dataclasses import dataclass
from pathlib import Path
from threading import local

import requests
import zstandard as zstd

from animepahe_dl.errors import NetworkError


logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_DELAY = 2
REQUEST_TIMEOUT = 30
CONNECT_TIMEOUT = 10
CHUNK_SIZE = 64 * 1024
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'

USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36'
)


@dataclass(frozen=True)
class SessionContext:
    cookie: str
    referer_url: str
    host_url: str


def new_session_context(host_url: str) -> SessionContext:
    """
    Mint a temporary DDoS-guard session cookie for this run.
    """
    token = ''.join(random.choices(string.ascii_letters + string.digits, k=16))
    logger.info("Set temporary session cookie.")
    return SessionContext(cookie=f"__ddg2_={token}", referer_url=host_url, host_url=host_url)


def get_browser_headers(context: SessionContext) -> dict:
    """
    Browser-like headers carrying the session cookie and referer.
    """
    return {
        'accept': '*/*',
        'accept-encoding': 'gzip, deflate, zstd',
        'accept-language': 'en-US,en;q=0.9',
        'cache-control': 'no-cache',
        'cookie': context.cookie,
        'dnt': '1',
        'pragma': 'no-cache',
        'referer': context.referer_url,
        'user-agent': USER_AGENT,
    }


def decompress_zstd(raw_bytes: bytes) -> bytes:
    """
    Decompress zstd-compressed content.
    Content without the zstd magic bytes is returned untouched.
    A corrupt frame raises ValueError.
    """
    if len(raw_bytes) < 4 or raw_bytes[:4] != ZSTD_MAGIC:
        return raw_bytes

    dctx = zstd.ZstdDecompressor()
    decompressed = bytearray()
    try:
        with dctx.stream_reader(raw_bytes) as reader:
            while True:
                chunk = reader.read(8192)
                if not chunk:
                    break
                decompressed.extend(chunk)
    except zstd.ZstdError as e:
        raise ValueError(f"Failed to decompress zstd content: {e}")
    return bytes(decompressed)


# Thread-local storage for sessions (one session per worker thread)
_thread_local = local()


def _get_thread_session() -> requests.Session:
    """
    Get or create a session for the current thread.
    Reuses connections within the same thread.
    """
    if not hasattr(_thread_local, 'session'):
        _thread_local.session = requests.Session()
    return _thread_local.session


def fetch(url: str, context: SessionContext, max_retries: int = DEFAULT_RETRIES,
          initial_delay: float = DEFAULT_DELAY, headers: dict = None,
          timeout: float = REQUEST_TIMEOUT) -> bytes:
    """
    GET a URL and return the (decompressed) body.
    Non-2xx statuses and transport errors are retried with exponential
    backoff; NetworkError is raised once max_retries is exhausted.
    """
    request_headers = get_browser_headers(context)
    if headers:
        request_headers.update(headers)

    session = _get_thread_session()
    delay = initial_delay
    last_error = None

    for attempt in range(1, max_retries + 1):
        try:
            response = session.get(url, headers=request_headers, timeout=(CONNECT_TIMEOUT, timeout))
            response.raise_for_status()
            return decompress_zstd(response.content)
        except (requests.RequestException, ValueError) as e:
            last_error = e

        if attempt < max_retries:
            logger.warning(f"Request attempt {attempt}/{max_retries} failed for {url} ({last_error}). "
                           f"Retrying in {delay} seconds...")
            time.sleep(delay)
            delay *= 2

    raise NetworkError(url, max_retries, str(last_error))


def fetch_text(url: str, context: SessionContext, **kwargs) -> str:
    return fetch(url, context, **kwargs).decode('utf-8', errors='replace')


def fetch_json(url: str, context: SessionContext, **kwargs):
    """
    GET a URL and decode its JSON body.
    A malformed body is reported as a NetworkError for the caller.
    """
    body = fetch(url, context, **kwargs)
    try:
        return json.loads(body)
    except ValueError as e:
        raise NetworkError(url, 1, f"invalid JSON: {e}")


def _stream_to_file(session: requests.Session, url: str, dest: Path, headers: dict,
                    deadline: float = None) -> None:
    """
    Stream one response body to dest, honouring an optional deadline.
    """
    timeout = REQUEST_TIMEOUT
    if deadline is not None:
        timeout = max(0.1, min(timeout, deadline - time.monotonic()))

    with session.get(url, headers=headers, stream=True, timeout=(CONNECT_TIMEOUT, timeout)) as response:
        response.raise_for_status()
        with open(dest, 'wb') as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if deadline is not None and time.monotonic() > deadline:
                    raise TimeoutError(f"job deadline exceeded while writing {dest.name}")
                f.write(chunk)


def download_to_file(url: str, dest, context: SessionContext, max_retries: int = DEFAULT_RETRIES,
                     initial_delay: float = DEFAULT_DELAY, deadline: float = None) -> Path:
    """
    Download a URL into dest with retry and exponential backoff.
    A zero-byte file after a successful transfer counts as a failure.
    When deadline (time.monotonic() based) passes, no further attempt is made.
    Return the destination path.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    headers = get_browser_headers(context)
    session = _get_thread_session()
    delay = initial_delay
    last_error = None

    for attempt in range(1, max_retries + 1):
        if deadline is not None and time.monotonic() >= deadline:
            last_error = "job timeout exceeded"
            break

        try:
            _stream_to_file(session, url, dest, headers, deadline)
            if dest.stat().st_size > 0:
                return dest
            last_error = "transfer reported success but output file is empty"
            logger.warning(f"Download of {dest.name} succeeded but output file is empty. Will retry.")
        except (requests.RequestException, OSError) as e:
            last_error = e

        dest.unlink(missing_ok=True)

        if attempt < max_retries:
            logger.warning(f"Download attempt {attempt}/{max_retries} failed for {dest.name} "
                           f"({last_error}). Retrying in {delay} seconds...")
            if deadline is not None and time.monotonic() + delay >= deadline:
                last_error = "job timeout exceeded"
                break
            time.sleep(delay)
            delay *= 2

    dest.unlink(missing_ok=True)
    logger.warning(f"Download failed for {dest.name} after {attempt} attempt(s) (URL: {url}).")
    raise NetworkError(url, attempt, str(last_error))
