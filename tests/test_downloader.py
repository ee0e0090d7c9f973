from dataclasses import replace

import pytest

import downloader
from animepahe_dl import catalog, config, orchestrator
from animepahe_dl.catalog import EpisodeRecord
from animepahe_dl.orchestrator import BatchReport, EpisodeResult, EpisodeStage


def test_sanitize_filename():
    assert downloader.sanitize_filename("Re:Zero / Part 2?") == "Re_Zero _ Part 2_"
    assert downloader.sanitize_filename("  Show (2024), Vol.1  ") == "Show (2024), Vol.1"


def test_parser_flags():
    args = downloader.build_parser().parse_args(
        ["-s", "uuid", "-e", "1-3", "-r", "720", "-o", "jpn", "-t", "8", "-T", "60", "-l", "-d"])
    assert args.slug == "uuid"
    assert args.episodes == "1-3"
    assert args.resolution == "720"
    assert args.audio == "jpn"
    assert args.threads == "8"
    assert args.timeout == "60"
    assert args.link_only and args.debug


@pytest.fixture
def offline(monkeypatch, settings):
    """
    run() with catalog and orchestrator replaced by fakes.
    """
    state = {"planned": None}
    records = [EpisodeRecord(n, f"s{n}") for n in (1, 2, 3, 4)]

    monkeypatch.setattr(config, "load_settings", lambda **overrides: replace(
        settings, **{k: v for k, v in overrides.items() if v is not None}))
    monkeypatch.setattr(config, "with_tools", lambda s, need_ffmpeg=True: s)
    monkeypatch.setattr(catalog, "find_title_for_locator", lambda path, locator: "My: Show")
    monkeypatch.setattr(catalog, "list_episodes", lambda locator, api_url, context: records)
    settings.anime_list_file.parent.mkdir(parents=True)
    settings.anime_list_file.write_text("[uuid] My: Show\n")

    def fake_batch(episodes, series, settings, context):
        state["planned"] = episodes
        state["title"] = series.title
        return BatchReport([EpisodeResult(n, EpisodeStage.DONE, n != 4) for n in episodes])

    monkeypatch.setattr(orchestrator, "download_batch", fake_batch)
    return state


def test_run_plans_selected_episodes(offline, settings):
    args = downloader.build_parser().parse_args(["-s", "uuid", "-e", "2-,!3"])
    assert downloader.run(args) == 1
    assert offline["planned"] == [2, 4]
    assert offline["title"] == "My_ Show"
    assert (settings.video_dir / "My_ Show" / ".source.json").is_file()


def test_run_with_everything_excluded_is_not_an_error(offline):
    args = downloader.build_parser().parse_args(["-s", "uuid", "-e", "*,!*"])
    assert downloader.run(args) == 0
    assert offline["planned"] is None
