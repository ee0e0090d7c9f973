"""
Parse HLS playlists into ordered segment URLs and an optional AES-128 key.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import m3u8

from animepahe_dl.errors import MalformedPlaylist
from animepahe_dl.url_utils import build_absolute_url, get_base_url


logger = logging.getLogger(__name__)

SEGMENT_SCHEME = 'https'
KEY_METHOD = 'AES-128'


@dataclass(frozen=True)
class MediaPlaylist:
    segment_urls: List[str]
    key_reference: Optional[str] = None

    @property
    def encrypted(self) -> bool:
        return self.key_reference is not None


def load_playlist(content: str, url: str = None) -> m3u8.M3U8:
    """
    Parse playlist text with the m3u8 library.
    Raise MalformedPlaylist when the text cannot be parsed.
    """
    try:
        return m3u8.loads(content, uri=url)
    except ValueError as e:
        raise MalformedPlaylist(f"Malformed playlist {url or ''}: {e}")


def get_playlist_type(playlist: m3u8.M3U8) -> str:
    """
    Return 'master' or 'media'.
    """
    if playlist.is_variant:
        return 'master'
    return 'media'


def get_highest_quality_stream(playlist: m3u8.M3U8, playlist_url: str = None) -> Optional[str]:
    """
    Find the variant stream with the highest bandwidth in a master playlist.
    Return its absolute media playlist URL.
    """
    if not playlist.is_variant:
        return None

    highest_bandwidth = -1
    best_stream = None

    for stream in playlist.playlists:
        bandwidth = stream.stream_info.bandwidth or 0
        if bandwidth > highest_bandwidth:
            highest_bandwidth = bandwidth
            best_stream = stream

    if best_stream is None:
        return None

    uri = best_stream.uri
    if playlist_url and not uri.startswith('http'):
        uri = build_absolute_url(get_base_url(playlist_url), uri)
    return uri


def _absolute(uri: str, playlist_url: str = None) -> str:
    if uri.startswith('http') or not playlist_url:
        return uri
    return build_absolute_url(get_base_url(playlist_url), uri)


def extract_segment_urls(playlist: m3u8.M3U8, playlist_url: str = None) -> List[str]:
    """
    Segment URLs in file order; this order is the playback order.
    Relative URIs are made absolute against the playlist URL when known.
    """
    urls = []
    for segment in playlist.segments:
        if not segment.uri:
            continue
        url = _absolute(segment.uri.strip(), playlist_url)
        if url.startswith(SEGMENT_SCHEME):
            urls.append(url)
    return urls


def extract_key_reference(playlist: m3u8.M3U8, playlist_url: str = None) -> Optional[str]:
    """
    URI of the first AES-128 key, or None for a plain stream.
    """
    for key in playlist.keys:
        if key is None or not key.method or key.method == 'NONE':
            continue
        if key.method != KEY_METHOD:
            logger.warning(f"Unsupported encryption method in playlist: {key.method}")
            continue
        if key.uri:
            return _absolute(key.uri, playlist_url)
    return None


def parse_media_playlist(content: str, playlist_url: str = None) -> MediaPlaylist:
    """
    Main function: media playlist text -> MediaPlaylist.
    """
    playlist = load_playlist(content, playlist_url)
    return MediaPlaylist(
        segment_urls=extract_segment_urls(playlist, playlist_url),
        key_reference=extract_key_reference(playlist, playlist_url),
    )
