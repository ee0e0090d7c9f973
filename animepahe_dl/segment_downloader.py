"""
Playlist & segment engine.

Downloads every segment of a media playlist with a bounded thread pool,
decrypts them (AES-128-CBC, zero IV) and writes the ffmpeg concat manifest
in playlist order.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from animepahe_dl import http_client
from animepahe_dl.errors import (
    DecryptCountMismatch,
    EmptyPlaylist,
    KeyUnavailable,
    MissingSegmentFile,
    NetworkError,
    SegmentCountMismatch,
)
from animepahe_dl.playlist_parser import (
    MediaPlaylist,
    get_highest_quality_stream,
    get_playlist_type,
    load_playlist,
    parse_media_playlist,
)
from animepahe_dl.url_utils import local_segment_names


logger = logging.getLogger(__name__)

PLAYLIST_FILE = 'playlist.m3u8'
KEY_FILE = 'mon.key'
MANIFEST_FILE = 'file.list'
ENCRYPTED_SUFFIX = '.encrypted'
ZERO_IV = b'\x00' * 16
TS_SYNC_BYTE = 0x47
DEFAULT_PARALLELISM = 4


@dataclass
class JobResult:
    item: Any
    success: bool
    error: Optional[BaseException] = None


@dataclass
class CompletionReport:
    results: List[JobResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[JobResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[JobResult]:
        return [r for r in self.results if not r.success]

    @property
    def all_ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class AcquiredEpisode:
    segment_paths: List[Path]
    manifest_path: Path


def run_jobs(func: Callable[[Any], Any], items: Iterable, parallelism: int = DEFAULT_PARALLELISM,
             label: str = 'jobs') -> CompletionReport:
    """
    Run func over items with at most `parallelism` jobs in flight.
    A failing job is recorded, never raised; siblings keep running.
    Results are in completion order.
    """
    items = list(items)
    total = len(items)
    report = CompletionReport()
    if not items:
        return report

    completed_count = 0

    with ThreadPoolExecutor(max_workers=parallelism) as executor:
        future_to_item = {executor.submit(func, item): item for item in items}

        for future in as_completed(future_to_item):
            item = future_to_item[future]
            try:
                future.result()
                report.results.append(JobResult(item, True))
            except Exception as e:
                logger.debug(f"{label}: job for {item} failed: {e}")
                report.results.append(JobResult(item, False, e))

            completed_count += 1
            if completed_count % 10 == 0 or completed_count == total:
                logger.info(f"  Progress: {completed_count}/{total} {label} "
                            f"({completed_count * 100 // total}%)")

    return report


def download_playlist(playlist_url: str, work_dir: Path, context: http_client.SessionContext) -> MediaPlaylist:
    """
    Download the playlist into the working directory and parse it.
    A master playlist is followed to its highest-bandwidth variant.
    """
    playlist_path = work_dir / PLAYLIST_FILE
    http_client.download_to_file(playlist_url, playlist_path, context, max_retries=3, initial_delay=2)
    content = playlist_path.read_text(encoding='utf-8', errors='replace')

    playlist = load_playlist(content, playlist_url)
    if get_playlist_type(playlist) == 'master':
        media_url = get_highest_quality_stream(playlist, playlist_url)
        if not media_url:
            raise EmptyPlaylist(f"Master playlist without streams: {playlist_url}")
        logger.info(f"  Master playlist detected, following highest quality stream: {media_url}")
        http_client.download_to_file(media_url, playlist_path, context, max_retries=3, initial_delay=2)
        content = playlist_path.read_text(encoding='utf-8', errors='replace')
        playlist_url = media_url

    return parse_media_playlist(content, playlist_url)


def download_segments(segment_urls: List[str], names: List[str], work_dir: Path,
                      context: http_client.SessionContext, parallelism: int = DEFAULT_PARALLELISM,
                      segment_timeout: int = None) -> List[Path]:
    """
    Download every segment to <name>.encrypted.
    Any shortfall after the pool drains is a SegmentCountMismatch.
    Return the downloaded paths in playlist order.
    """
    total = len(segment_urls)
    targets = [work_dir / f"{name}{ENCRYPTED_SUFFIX}" for name in names]

    logger.info(f"  Downloading {total} segments using {parallelism} thread(s).")
    if segment_timeout:
        logger.info(f"    (Individual download job timeout: {segment_timeout}s)")

    def job(pair):
        url, dest = pair
        deadline = time.monotonic() + segment_timeout if segment_timeout else None
        http_client.download_to_file(url, dest, context, deadline=deadline)

    report = run_jobs(job, list(zip(segment_urls, targets)), parallelism, label='segments')

    for result in report.failed:
        logger.warning(f"    Segment {result.item[1].name} failed: {result.error}")

    downloaded = sum(1 for path in targets if path.is_file() and path.stat().st_size > 0)
    if downloaded != total:
        logger.warning(f"  Segment download phase failed or incomplete. "
                       f"Downloaded: {downloaded} / Expected: {total}.")
        raise SegmentCountMismatch(total, downloaded)

    logger.info(f"  ✓ All {total} segments downloaded.")
    return targets


def fetch_key(key_url: str, work_dir: Path, context: http_client.SessionContext) -> str:
    """
    Download the raw 16-byte key and return it hex-encoded.
    """
    key_path = work_dir / KEY_FILE
    logger.info(f"  Stream appears encrypted. Downloading decryption key: {key_url}")
    try:
        http_client.download_to_file(key_url, key_path, context, max_retries=3, initial_delay=2)
    except NetworkError as e:
        raise KeyUnavailable(f"Failed to download encryption key: {key_url} ({e})")

    key = key_path.read_bytes()
    if len(key) != 16:
        raise KeyUnavailable(f"Invalid key length: {len(key)} bytes (expected 16)")
    return key.hex()


def decrypt_segment(segment_data: bytes, key: bytes, iv: bytes = ZERO_IV) -> bytes:
    """
    AES-128-CBC decrypt one segment and strip its PKCS#7 padding.
    """
    if len(key) != 16:
        raise ValueError(f"Invalid key length: {len(key)} bytes (expected 16)")

    cipher = AES.new(key, AES.MODE_CBC, iv)
    return unpad(cipher.decrypt(segment_data), AES.block_size)


def decrypted_path(encrypted: Path) -> Path:
    return encrypted.with_name(encrypted.name[:-len(ENCRYPTED_SUFFIX)])


def decrypt_file(encrypted: Path, key_hex: str) -> Path:
    """
    Write the plaintext sibling of an .encrypted file.
    A failed decryption leaves no output behind.
    """
    output = decrypted_path(encrypted)
    try:
        output.write_bytes(decrypt_segment(encrypted.read_bytes(), bytes.fromhex(key_hex)))
    except (ValueError, OSError):
        output.unlink(missing_ok=True)
        raise
    return output


def decrypt_segments(encrypted_files: List[Path], key_hex: str,
                     parallelism: int = DEFAULT_PARALLELISM) -> List[Path]:
    """
    Decrypt every file with the same pool discipline as downloading.
    Return plaintext paths in input order.
    """
    total = len(encrypted_files)
    logger.info(f"  Decrypting {total} segments using {parallelism} thread(s)...")

    report = run_jobs(lambda path: decrypt_file(path, key_hex), encrypted_files, parallelism,
                      label='decrypted')

    for result in report.failed:
        logger.warning(f"    Decryption failed for {result.item.name}: {result.error}")

    outputs = [decrypted_path(path) for path in encrypted_files]
    decrypted = sum(1 for path in outputs if path.is_file())
    if decrypted != total:
        raise DecryptCountMismatch(total, decrypted)

    logger.info(f"  ✓ All {total} segments decrypted.")
    return outputs


def use_plain_segments(downloaded: List[Path]) -> List[Path]:
    """
    No key: the downloaded bytes are the final segments, renamed unmodified.
    """
    logger.info("  Playlist indicates stream is not encrypted. Skipping decryption.")
    outputs = []
    suspicious = 0

    for path in downloaded:
        with open(path, 'rb') as f:
            first = f.read(1)
        if path.name.endswith(f".ts{ENCRYPTED_SUFFIX}") and first and first[0] != TS_SYNC_BYTE:
            suspicious += 1
        outputs.append(path.replace(decrypted_path(path)))

    if suspicious:
        logger.warning(f"    Playlist shows no encryption, but {suspicious} segment(s) look encrypted! "
                       f"Check playlist/downloads.")
    return outputs


def write_concat_manifest(names: List[str], work_dir: Path) -> Path:
    """
    Write file.list for ffmpeg's concat demuxer in playlist order.
    Every listed file must exist.
    """
    manifest_path = work_dir / MANIFEST_FILE
    logger.info(f"  Generating file list for ffmpeg: {manifest_path}")

    for name in names:
        if not (work_dir / name).is_file():
            raise MissingSegmentFile(work_dir / name)

    with open(manifest_path, 'w', encoding='utf-8') as f:
        for name in names:
            escaped = name.replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")

    logger.info(f"  ✓ File list generated and segment existence checked: {manifest_path.name}")
    return manifest_path


def cleanup_encrypted(encrypted_files: List[Path], work_dir: Path) -> None:
    (work_dir / KEY_FILE).unlink(missing_ok=True)
    for path in encrypted_files:
        path.unlink(missing_ok=True)


def acquire_and_decrypt(playlist_url: str, work_dir, context: http_client.SessionContext,
                        parallelism: int = DEFAULT_PARALLELISM, segment_timeout: int = None,
                        retain: bool = False, on_stage: Callable[[str], None] = None) -> AcquiredEpisode:
    """
    Main function: playlist URL -> decrypted segments + concat manifest.
    on_stage, when given, is called with 'downloading', 'decrypting' and
    'manifest' as each phase begins.
    """
    work_dir = Path(work_dir)
    notify = on_stage or (lambda stage: None)

    notify('downloading')
    logger.info("  --- Playlist Download ---")
    media = download_playlist(playlist_url, work_dir, context)
    if not media.segment_urls:
        raise EmptyPlaylist(f"No segment URLs found in playlist: {work_dir / PLAYLIST_FILE}")

    names = local_segment_names(media.segment_urls)

    logger.info("  --- Segment Download Phase ---")
    encrypted_files = download_segments(media.segment_urls, names, work_dir, context,
                                        parallelism=parallelism, segment_timeout=segment_timeout)

    notify('decrypting')
    logger.info("  --- Segment Decryption Phase ---")
    if media.encrypted:
        key_hex = fetch_key(media.key_reference, work_dir, context)
        segment_paths = decrypt_segments(encrypted_files, key_hex, parallelism)
        if retain:
            logger.warning(f"Debug mode: Leaving key file and encrypted segments in {work_dir}.")
        else:
            logger.info(f"  Cleaning up key file and {len(encrypted_files)} encrypted segment files...")
            cleanup_encrypted(encrypted_files, work_dir)
    else:
        segment_paths = use_plain_segments(encrypted_files)

    notify('manifest')
    logger.info("  --- File List Generation ---")
    manifest_path = write_concat_manifest(names, work_dir)

    return AcquiredEpisode(segment_paths=segment_paths, manifest_path=manifest_path)
