"""
Resolve an episode locator to its HLS media playlist URL.

play page -> stream variants -> stream-hosting page -> packed script ->
isolated node run -> m3u8 URL.
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from bs4 import BeautifulSoup

from animepahe_dl import http_client
from animepahe_dl.catalog import EpisodeLocator
from animepahe_dl.errors import (
    NetworkError,
    NoPlaylistURLFound,
    NoVariants,
    PageUnreachable,
    ScriptExecutionFailed,
    ScriptExtractionFailed,
)


logger = logging.getLogger(__name__)

PACKED_MARKER = re.compile(r'eval\s*\(\s*function\s*\(\s*p\s*,\s*a\s*,\s*c\s*,\s*k\s*,\s*e\s*,\s*d\s*\)')
SOURCE_ASSIGNMENT = re.compile(r"""source\s*=\s*['"](https://[a-zA-Z0-9./?=_%:&~+-]+\.m3u8)['"]""")
PLAYLIST_URL = re.compile(r'https://[a-zA-Z0-9./?=_%:-]*\.m3u8')
SCRIPT_TIMEOUT = 30


@dataclass(frozen=True)
class StreamVariant:
    resolution: Optional[int]
    audio: Optional[str]
    redirect_url: str

    def describe(self) -> str:
        res = f"{self.resolution}p" if self.resolution is not None else "N/A"
        return f"Res: {res}, Audio: {self.audio or 'N/A'}, Link: {self.redirect_url}"


class ProviderMarkup:
    """
    Provider-specific page parsing.
    Expect to update this class when the provider changes its templates.
    """

    variant_tag = 'button'
    codec_flag = 'data-av1'
    supported_codec = '0'

    def extract_variants(self, html: str) -> List[StreamVariant]:
        """
        Return every playable variant in page order.
        Variants flagged with the incompatible codec are dropped unconditionally.
        """
        soup = BeautifulSoup(html, 'html.parser')
        variants = []

        for button in soup.find_all(self.variant_tag, attrs={'data-src': True}):
            if button.get(self.codec_flag) != self.supported_codec:
                continue
            src = button.get('data-src', '').strip()
            if not src:
                continue
            variants.append(StreamVariant(
                resolution=_parse_resolution(button.get('data-resolution')),
                audio=_parse_audio(button.get('data-audio')),
                redirect_url=src,
            ))

        return variants

    def extract_packed_script(self, html: str) -> Optional[str]:
        """
        Return the body of the first script tag holding eval-packed code.
        """
        soup = BeautifulSoup(html, 'html.parser')
        for script in soup.find_all('script'):
            text = script.string or script.get_text()
            if text and PACKED_MARKER.search(text):
                return text.strip()
        return None


def _parse_resolution(value) -> Optional[int]:
    if value is None:
        return None
    value = str(value).strip().lower().rstrip('p')
    return int(value) if value.isdigit() else None


def _parse_audio(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.upper() == 'N/A':
        return None
    return value


def select_variant(variants: List[StreamVariant], resolution=None, audio: str = None) -> StreamVariant:
    """
    Pick exactly one variant.

    1. Keep variants with the requested audio track, unless none has it.
    2. Among those, the first with the requested resolution wins.
    3. Otherwise the highest resolution wins; unknown resolution ranks
       lowest and ties keep input order.
    """
    if not variants:
        raise NoVariants("No stream options remain after filtering. Cannot select a link.")

    candidates = list(variants)

    if audio:
        logger.info(f"  Filtering for audio language: {audio}")
        audio_filtered = [v for v in candidates if v.audio == audio]
        if audio_filtered:
            candidates = audio_filtered
        else:
            logger.warning(f"Selected audio language '{audio}' not available. Proceeding without this audio filter.")

    if resolution:
        wanted = _parse_resolution(resolution)
        res_filtered = [v for v in candidates if wanted is not None and v.resolution == wanted]
        if res_filtered:
            logger.info("    ✓ Specific resolution found.")
            return res_filtered[0]
        logger.warning(f"Selected resolution '{resolution}p' not available with current filters. "
                       f"Will pick best from remaining.")

    logger.info("  Selecting highest available resolution from remaining candidates...")
    # max() keeps the first of equal keys
    return max(candidates, key=lambda v: v.resolution if v.resolution is not None else -1)


def rewrite_packed_script(js: str) -> str:
    """
    Make browser-oriented packed code safe to run headless.
    DOM writes are dropped, document/querySelector are neutralised and
    eval is turned into console.log so the unpacked source is printed
    instead of executed.
    """
    js = re.sub(r'document\.getElementById\([^)]+\)\.innerHTML\s*=\s*[^;]*;', '', js)
    js = re.sub(r'\bdocument\b', 'process', js)
    js = js.replace('querySelector', 'exit')
    js = re.sub(r'\beval\s*\(', 'console.log(', js)
    return js


def run_script(js: str, node_path: str, timeout: int = SCRIPT_TIMEOUT) -> str:
    """
    Run code in a separate node process with a hard timeout.
    The code is fed on stdin; only PATH is inherited from our environment.
    """
    try:
        result = subprocess.run(
            [node_path, '-'],
            input=js,
            capture_output=True,
            text=True,
            timeout=timeout,
            env={'PATH': os.environ.get('PATH', '')},
        )
    except subprocess.TimeoutExpired:
        raise ScriptExecutionFailed(f"node did not finish within {timeout}s")
    except OSError as e:
        raise ScriptExecutionFailed(f"Could not start node ({node_path}): {e}")

    if result.returncode != 0:
        logger.debug(f"node exited with status {result.returncode}: {result.stderr.strip()}")
    if not result.stdout.strip():
        raise ScriptExecutionFailed(f"node produced no output (exit status {result.returncode})")
    return result.stdout


def find_playlist_url(output: str) -> str:
    """
    Pull the m3u8 URL out of untrusted script output.
    A source= assignment is preferred over a bare URL.
    """
    match = SOURCE_ASSIGNMENT.search(output)
    if match:
        return match.group(1)

    match = PLAYLIST_URL.search(output)
    if match:
        return match.group(0)

    raise NoPlaylistURLFound("No m3u8 URL in script output")


def _dump(debug_dir: Optional[Path], name: str, content: str) -> None:
    if debug_dir is None:
        return
    debug_dir.mkdir(parents=True, exist_ok=True)
    (debug_dir / name).write_text(content, encoding='utf-8')


def get_episode_link(locator: EpisodeLocator, context: http_client.SessionContext, resolution=None,
                     audio: str = None, markup: ProviderMarkup = None, debug_dir: Path = None) -> str:
    """
    Fetch the play page and choose the stream-hosting URL for one episode.
    """
    markup = markup or ProviderMarkup()
    play_url = locator.play_url(context.host_url)

    logger.info(f"  Fetching play page to find stream sources: {play_url}")
    try:
        page = http_client.fetch_text(play_url, context, max_retries=1)
    except NetworkError as e:
        raise PageUnreachable(f"Failed to fetch play page for episode {locator.episode}: {e}")
    if not page.strip():
        raise PageUnreachable(f"Empty play page for episode {locator.episode} from {play_url}")
    _dump(debug_dir, f"play_page_ep{locator.episode}.html", page)

    logger.info("  Extracting stream options (non-AV1) from play page...")
    variants = markup.extract_variants(page)
    if not variants:
        raise NoVariants(f"No suitable stream options (non-AV1) found on play page for episode {locator.episode}.")
    logger.info(f"    Found {len(variants)} potential non-AV1 stream options.")
    _dump(debug_dir, f"stream_options_ep{locator.episode}.txt", '\n'.join(v.describe() for v in variants))

    chosen = select_variant(variants, resolution=resolution, audio=audio)
    logger.info(f"    ✓ Selected stream -> {chosen.describe()}")
    return chosen.redirect_url


def get_playlist_link(stream_url: str, context: http_client.SessionContext, node_path: str,
                      timeout: int = SCRIPT_TIMEOUT, markup: ProviderMarkup = None,
                      debug_dir: Path = None) -> str:
    """
    Recover the m3u8 URL hidden in a stream-hosting page.
    """
    markup = markup or ProviderMarkup()

    logger.info(f"    Fetching stream page content from: {stream_url}")
    try:
        page = http_client.fetch_text(stream_url, context)
    except NetworkError as e:
        raise PageUnreachable(f"Failed to get stream page content from {stream_url}: {e}")
    if not page.strip():
        raise PageUnreachable(f"Empty stream page from {stream_url}")

    logger.info("    Extracting packed Javascript...")
    packed = markup.extract_packed_script(page)
    if not packed:
        _dump(debug_dir, "stream_page_failed_js_extract.html", page)
        raise ScriptExtractionFailed(f"Could not extract packed JS block from stream page: {stream_url}")

    script = rewrite_packed_script(packed)
    logger.info("    Executing JS with node.js to find m3u8 URL...")
    try:
        output = run_script(script, node_path, timeout)
        url = find_playlist_url(output)
    except (ScriptExecutionFailed, NoPlaylistURLFound):
        _dump(debug_dir, "packed_js_debug.js", script)
        raise

    logger.info(f"    ✓ Found m3u8 playlist URL: {url}")
    return url


def resolve(locator: EpisodeLocator, context: http_client.SessionContext, node_path: str,
            resolution=None, audio: str = None, script_timeout: int = SCRIPT_TIMEOUT,
            markup: ProviderMarkup = None, debug_dir: Path = None) -> str:
    """
    Main function: resolve an episode locator to its media playlist URL.
    Raises a ResolveError subclass naming the failing step.
    """
    stream_url = get_episode_link(locator, context, resolution=resolution, audio=audio,
                                  markup=markup, debug_dir=debug_dir)
    logger.info(f"  Found stream page link: {stream_url}")
    return get_playlist_link(stream_url, context, node_path, timeout=script_timeout,
                             markup=markup, debug_dir=debug_dir)
