"""
URL resolution and local segment naming utilities.
"""

from typing import List
from urllib.parse import urljoin, urlparse


def get_base_url(url: str) -> str:
    """
    Extract base URL from full URL.
    Return base URL for relative path resolution.
    """
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path.rsplit('/', 1)[0]}/"


def build_absolute_url(base_url: str, relative_url: str) -> str:
    """
    Convert relative URLs to absolute.
    Handle base URL resolution.
    """
    return urljoin(base_url, relative_url)


def segment_basename(url: str) -> str:
    """
    Final path component of a segment URL, without query or fragment.
    """
    return urlparse(url).path.rsplit('/', 1)[-1]


def local_segment_names(urls: List[str]) -> List[str]:
    """
    Deterministic local file name for every segment URL, in the same order.
    Plain basenames are used unless two URLs share one, in which case
    every name gets its playlist position as a prefix.
    """
    names = [segment_basename(url) or f"segment{index}.ts" for index, url in enumerate(urls)]
    if len(set(names)) == len(names):
        return names
    width = len(str(len(names)))
    return [f"{index:0{width}d}_{name}" for index, name in enumerate(names)]
