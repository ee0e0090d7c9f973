"""
Runtime settings assembled from defaults, .env, environment and CLI flags.
"""

import os
import shutil
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from animepahe_dl.errors import ConfigError


DEFAULT_HOST = "https://animepahe.ru"
SOURCE_FILE = ".source.json"


@dataclass(frozen=True)
class Settings:
    host_url: str = DEFAULT_HOST
    video_dir: Path = Path.home() / "Videos"
    anime_list_file: Path = None
    node_path: str = None
    ffmpeg_path: str = None
    parallel_jobs: int = 4
    segment_timeout: int = None
    resolution: str = None
    audio: str = None
    list_link_only: bool = False
    debug: bool = False
    script_timeout: int = 30

    @property
    def anime_url(self) -> str:
        return f"{self.host_url}/anime"

    @property
    def api_url(self) -> str:
        return f"{self.host_url}/api"

    def series_dir(self, title: str) -> Path:
        return self.video_dir / title

    def source_manifest_path(self, title: str) -> Path:
        return self.series_dir(title) / SOURCE_FILE


def _positive_int(name: str, value) -> int:
    """
    Parse a strictly positive integer setting.
    Raise ConfigError on anything else.
    """
    if value is None:
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name}: '{value}' is not a positive integer")
    if number <= 0:
        raise ConfigError(f"{name}: '{value}' is not a positive integer")
    return number


def locate_tool(name: str, override: str = None) -> str:
    """
    Find an external executable, honouring an explicit path override.
    """
    candidate = override or name
    found = shutil.which(candidate)
    if found:
        return found
    if override and Path(override).is_file():
        return override
    raise ConfigError(f"{name} command not found! Please install it.")


def load_settings(env_file: str = None, **overrides) -> Settings:
    """
    Build Settings from .env + environment, then apply CLI overrides.
    Overrides whose value is None are ignored.
    """
    load_dotenv(env_file)

    video_dir = Path(os.environ.get("ANIMEPAHE_VIDEO_DIR", Path.home() / "Videos")).expanduser()
    list_file = os.environ.get("ANIMEPAHE_LIST_FILE")

    settings = Settings(
        host_url=os.environ.get("ANIMEPAHE_DL_HOST", DEFAULT_HOST).rstrip("/"),
        video_dir=video_dir,
        anime_list_file=Path(list_file).expanduser() if list_file else video_dir / "anime.list",
        node_path=os.environ.get("ANIMEPAHE_DL_NODE"),
        ffmpeg_path=os.environ.get("ANIMEPAHE_DL_FFMPEG"),
        script_timeout=_positive_int(
            "ANIMEPAHE_DL_SCRIPT_TIMEOUT", os.environ.get("ANIMEPAHE_DL_SCRIPT_TIMEOUT", 30)),
    )

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if "parallel_jobs" in overrides:
        overrides["parallel_jobs"] = _positive_int("-t <num>", overrides["parallel_jobs"])
    if "segment_timeout" in overrides:
        overrides["segment_timeout"] = _positive_int("-T <secs>", overrides["segment_timeout"])
    if "video_dir" in overrides:
        overrides["video_dir"] = Path(overrides["video_dir"]).expanduser()
        if not list_file and "anime_list_file" not in overrides:
            overrides["anime_list_file"] = overrides["video_dir"] / "anime.list"

    return replace(settings, **overrides)


def with_tools(settings: Settings, need_ffmpeg: bool = True) -> Settings:
    """
    Resolve node and ffmpeg paths, failing fast when one is missing.
    """
    node = locate_tool("node", settings.node_path)
    ffmpeg = locate_tool("ffmpeg", settings.ffmpeg_path) if need_ffmpeg else settings.ffmpeg_path
    return replace(settings, node_path=node, ffmpeg_path=ffmpeg)
