import pytest

from animepahe_dl import config
from animepahe_dl.config import load_settings, locate_tool, with_tools
from animepahe_dl.errors import ConfigError


ENV_VARS = [
    "ANIMEPAHE_DL_HOST",
    "ANIMEPAHE_VIDEO_DIR",
    "ANIMEPAHE_LIST_FILE",
    "ANIMEPAHE_DL_NODE",
    "ANIMEPAHE_DL_FFMPEG",
    "ANIMEPAHE_DL_SCRIPT_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture
def empty_env_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text("")
    return path


def test_defaults(empty_env_file):
    settings = load_settings(empty_env_file)
    assert settings.host_url == "https://animepahe.ru"
    assert settings.parallel_jobs == 4
    assert settings.segment_timeout is None
    assert settings.anime_list_file == settings.video_dir / "anime.list"
    assert settings.api_url == "https://animepahe.ru/api"
    assert settings.anime_url == "https://animepahe.ru/anime"


def test_environment_overrides(monkeypatch, tmp_path, empty_env_file):
    monkeypatch.setenv("ANIMEPAHE_DL_HOST", "https://mirror.example/")
    monkeypatch.setenv("ANIMEPAHE_VIDEO_DIR", str(tmp_path / "vids"))
    monkeypatch.setenv("ANIMEPAHE_LIST_FILE", str(tmp_path / "titles.txt"))

    settings = load_settings(empty_env_file)
    assert settings.host_url == "https://mirror.example"
    assert settings.video_dir == tmp_path / "vids"
    assert settings.anime_list_file == tmp_path / "titles.txt"
    assert settings.source_manifest_path("Show") == tmp_path / "vids" / "Show" / ".source.json"


def test_dotenv_file_is_read(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(f"ANIMEPAHE_VIDEO_DIR={tmp_path / 'from-dotenv'}\n")
    settings = load_settings(env_file)
    assert settings.video_dir == tmp_path / "from-dotenv"


def test_cli_overrides(empty_env_file, tmp_path):
    settings = load_settings(empty_env_file, parallel_jobs="8", segment_timeout="60",
                             resolution="720", audio=None, video_dir=str(tmp_path / "out"))
    assert settings.parallel_jobs == 8
    assert settings.segment_timeout == 60
    assert settings.resolution == "720"
    assert settings.audio is None
    assert settings.anime_list_file == tmp_path / "out" / "anime.list"


@pytest.mark.parametrize("value", ["0", "-2", "abc", "1.5"])
def test_invalid_thread_count(empty_env_file, value):
    with pytest.raises(ConfigError):
        load_settings(empty_env_file, parallel_jobs=value)


@pytest.mark.parametrize("value", ["0", "soon"])
def test_invalid_segment_timeout(empty_env_file, value):
    with pytest.raises(ConfigError):
        load_settings(empty_env_file, segment_timeout=value)


def test_missing_tool(monkeypatch):
    monkeypatch.setattr(config.shutil, "which", lambda name: None)
    with pytest.raises(ConfigError, match="node command not found"):
        locate_tool("node")


def test_tool_override_path(monkeypatch, tmp_path):
    node = tmp_path / "node-bin"
    node.write_text("")
    monkeypatch.setattr(config.shutil, "which", lambda name: None)
    assert locate_tool("node", str(node)) == str(node)


def test_link_only_does_not_need_ffmpeg(monkeypatch, empty_env_file):
    monkeypatch.setattr(config.shutil, "which", lambda name: f"/usr/bin/{name}" if name == "node" else None)
    settings = with_tools(load_settings(empty_env_file), need_ffmpeg=False)
    assert settings.node_path == "/usr/bin/node"
    assert settings.ffmpeg_path is None

    with pytest.raises(ConfigError):
        with_tools(load_settings(empty_env_file), need_ffmpeg=True)
