"""
Per-episode pipeline and batch aggregation.

Each episode runs strictly in sequence:
    resolve link -> download -> decrypt -> manifest -> concatenate
inside a private working directory that is always reclaimed unless debug
mode asks to retain it. Episode failures are tallied, never raised.
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from animepahe_dl import merger, segment_downloader, stream_resolver
from animepahe_dl.catalog import EpisodeLocator, EpisodeRecord, find_session
from animepahe_dl.config import Settings
from animepahe_dl.errors import PaheError, ResolveError
from animepahe_dl.http_client import SessionContext


logger = logging.getLogger(__name__)


class EpisodeStage(Enum):
    PENDING = 'pending'
    SKIP_EXISTING = 'skip-existing'
    RESOLVING_LINK = 'resolving-link'
    DOWNLOADING = 'downloading'
    DECRYPTING = 'decrypting'
    MANIFEST_BUILDING = 'manifest-building'
    CONCATENATING = 'concatenating'
    DONE = 'done'


ENGINE_STAGES = {
    'downloading': EpisodeStage.DOWNLOADING,
    'decrypting': EpisodeStage.DECRYPTING,
    'manifest': EpisodeStage.MANIFEST_BUILDING,
}


@dataclass(frozen=True)
class SeriesContext:
    title: str
    locator: str
    records: List[EpisodeRecord]


@dataclass(frozen=True)
class EpisodeContext:
    series_title: str
    series_locator: str
    work_dir: Path


@dataclass
class EpisodeResult:
    episode: int
    stage: EpisodeStage
    success: bool
    error: Optional[BaseException] = None
    output_path: Optional[Path] = None
    playlist_url: Optional[str] = None


@dataclass
class BatchReport:
    results: List[EpisodeResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def failed_episodes(self) -> List[int]:
        return [r.episode for r in self.results if not r.success]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


def output_path_for(settings: Settings, series_title: str, episode: int) -> Path:
    return settings.series_dir(series_title) / f"{episode}.mp4"


def make_work_dir(series_dir: Path, episode: int) -> Path:
    """
    Unique per attempt: ep<n>_temp_<pid>_<random>.
    """
    series_dir.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=f"ep{episode}_temp_{os.getpid()}_", dir=series_dir))


def cleanup_stale_work_dirs(series_dir: Path, pid: int = None) -> int:
    """
    Remove working directories left behind by process `pid` (default: us).
    """
    pid = os.getpid() if pid is None else pid
    series_dir = Path(series_dir)
    if not series_dir.is_dir():
        return 0

    removed = 0
    for path in series_dir.glob(f"ep*_temp_{pid}_*"):
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
            removed += 1
    if removed:
        logger.info(f"ℹ Global cleanup: removed {removed} temporary director(ies) in {series_dir}")
    return removed


def _reclaim(work_dir: Optional[Path], episode: int, retain: bool, succeeded: bool) -> None:
    if work_dir is None or not work_dir.is_dir():
        return
    if retain:
        outcome = "successful" if succeeded else "failed"
        logger.warning(f"Debug mode: Leaving temporary directory for {outcome} ep {episode}: {work_dir}")
        return
    logger.info(f"  Cleaning up temporary directory: {work_dir}")
    shutil.rmtree(work_dir, ignore_errors=True)


def download_episode(episode: int, series: SeriesContext, settings: Settings,
                     context: SessionContext) -> EpisodeResult:
    """
    Run one episode through the whole pipeline.
    Never raises for per-episode failures; the result carries the stage
    that failed and its error.
    """
    target = output_path_for(settings, series.title, episode)
    result = EpisodeResult(episode=episode, stage=EpisodeStage.PENDING, success=False, output_path=target)

    if target.exists():
        logger.info(f"✓ Episode {episode} ({target}) already exists. Skipping.")
        result.stage = EpisodeStage.SKIP_EXISTING
        result.success = True
        return result

    logger.info(f"Processing Episode {episode}:")
    work_dir = None
    debug_dir = settings.series_dir(series.title) if settings.debug else None

    def enter(stage: EpisodeStage) -> None:
        result.stage = stage
        logger.debug(f"  Episode {episode}: {stage.value}")

    try:
        enter(EpisodeStage.RESOLVING_LINK)
        logger.info(f"  Looking up session ID for episode {episode}...")
        session = find_session(series.records, episode)
        if not session:
            raise ResolveError(f"Episode {episode} session ID not found in source file")

        locator = EpisodeLocator(series.locator, episode, session)
        result.playlist_url = stream_resolver.resolve(
            locator, context, settings.node_path,
            resolution=settings.resolution, audio=settings.audio,
            script_timeout=settings.script_timeout, debug_dir=debug_dir,
        )
        logger.info(f"  Found m3u8 playlist URL: {result.playlist_url}")

        if settings.list_link_only:
            print(result.playlist_url, flush=True)
            enter(EpisodeStage.DONE)
            result.success = True
            return result

        logger.info(f"Starting download process for Episode {episode}...")
        work_dir = make_work_dir(settings.series_dir(series.title), episode)
        episode_context = EpisodeContext(series.title, series.locator, work_dir)
        logger.info(f"  Created temporary directory: {episode_context.work_dir}")

        acquired = segment_downloader.acquire_and_decrypt(
            result.playlist_url, episode_context.work_dir, context,
            parallelism=settings.parallel_jobs,
            segment_timeout=settings.segment_timeout,
            retain=settings.debug,
            on_stage=lambda name: enter(ENGINE_STAGES[name]),
        )

        enter(EpisodeStage.CONCATENATING)
        logger.info("  --- Concatenation Phase ---")
        merger.concatenate(acquired.manifest_path, target, ffmpeg_path=settings.ffmpeg_path or 'ffmpeg',
                           debug=settings.debug)

        enter(EpisodeStage.DONE)
        result.success = True
        logger.info(f"✓ Successfully downloaded and assembled Episode {episode} to {target}")

    except (PaheError, OSError) as e:
        result.error = e
        logger.warning(f"Episode {episode} failed during {result.stage.value}: {e}")
        target.unlink(missing_ok=True)

    finally:
        _reclaim(work_dir, episode, settings.debug, result.success)

    return result


def download_batch(episodes: List[int], series: SeriesContext, settings: Settings,
                   context: SessionContext) -> BatchReport:
    """
    Process episodes one at a time and tally the outcome.
    """
    report = BatchReport()
    total = len(episodes)
    logger.info(f"✓ Final Download Plan: {total} unique episode(s) -> {' '.join(map(str, episodes))}")

    for index, episode in enumerate(episodes, 1):
        logger.info(f"--- [ Processing Episode {episode} ({index}/{total}) ] ---")
        result = download_episode(episode, series, settings, context)
        if not result.success:
            logger.warning(f"Episode {episode} failed or was skipped. Continuing...")
        report.results.append(result)

    return report


def log_summary(report: BatchReport) -> None:
    logger.info("======= Download Summary =======")
    logger.info(f"✓ Successfully processed: {report.succeeded} episode(s)")
    if report.failed:
        logger.warning(f"✘ Failed: {report.failed} episode(s): "
                       f"{', '.join(map(str, report.failed_episodes))}")
    logger.info(f"Total planned: {report.total} episode(s)")
