import os
import sys

import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from animepahe_dl.config import Settings
from animepahe_dl.http_client import SessionContext


HOST = "https://animepahe.ru"


@pytest.fixture
def context():
    return SessionContext(cookie="__ddg2_=testcookie123456", referer_url=HOST, host_url=HOST)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        host_url=HOST,
        video_dir=tmp_path / "Videos",
        anime_list_file=tmp_path / "Videos" / "anime.list",
        node_path="node",
        ffmpeg_path="ffmpeg",
    )
