#!/usr/bin/env python3
"""
Main entry point for the AnimePahe episode downloader.
"""

import atexit
import logging
import re
import sys
import argparse

from animepahe_dl import catalog
from animepahe_dl import config
from animepahe_dl import episode_selector
from animepahe_dl import http_client
from animepahe_dl import orchestrator
from animepahe_dl.errors import CatalogError, ConfigError, EmptySelection, PaheError

from animepahe_dl import __version__


logger = logging.getLogger("animepahe_dl")

GREEN = '\033[0;32m'
YELLOW = '\033[0;33m'
RED = '\033[0;31m'
NC = '\033[0m'


class SymbolFormatter(logging.Formatter):
    """
    ℹ / ⚠ / ✘ prefixed messages, coloured only on a terminal.
    """

    def __init__(self, use_color: bool):
        super().__init__('%(message)s')
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.ERROR:
            prefix, color = '✘ ERROR: ', RED
        elif record.levelno >= logging.WARNING:
            prefix, color = '⚠ WARNING: ', YELLOW
        else:
            prefix, color = 'ℹ ', GREEN
        if self.use_color:
            return f"{color}{prefix}{NC}{message}"
        return f"{prefix}{message}"


def configure_logging(debug: bool = False, quiet: bool = False) -> None:
    """
    Narration goes to stderr so stdout stays clean for link-only output.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(SymbolFormatter(sys.stderr.isatty()))

    logger.handlers[:] = [handler]
    logger.propagate = False
    if quiet:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.DEBUG if debug else logging.INFO)


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename for filesystem use.
    """
    filename = re.sub(r'[^\w ,+\-)(.]', '_', filename)
    return filename.strip()


def choose(entries, prompt: str):
    """
    Let the user pick one entry from a numbered list.
    A single entry is chosen without asking.
    """
    if len(entries) == 1:
        return entries[0]

    for index, entry in enumerate(entries, 1):
        print(f"{index:>4}. {entry.title}", file=sys.stderr)

    answer = input(f"\n▶ {prompt} [1-{len(entries)}]: ").strip()
    if not answer.isdigit() or not 1 <= int(answer) <= len(entries):
        raise ConfigError(f"Invalid choice: '{answer}'")
    return entries[int(answer) - 1]


def select_series(args, settings: config.Settings, context: http_client.SessionContext) -> catalog.SeriesEntry:
    """
    Resolve -a / -s / interactive choice to a single series.
    """
    if args.anime_name:
        results = catalog.search_by_name(args.anime_name, settings.api_url, settings.anime_list_file, context)
        if not results:
            raise CatalogError(f"No anime found matching '{args.anime_name}'.")
        return choose(results, "Which anime?")

    if args.slug:
        logger.info(f"Using provided slug: {args.slug}")
        if not settings.anime_list_file.exists():
            catalog.download_anime_list(settings.anime_url, settings.anime_list_file, context)
        title = catalog.find_title_for_locator(settings.anime_list_file, args.slug)
        if not title:
            logger.warning(f"Could not find anime name for slug {args.slug} in list. Using slug as name.")
            title = args.slug
        return catalog.SeriesEntry(args.slug, title)

    entries = catalog.download_anime_list(settings.anime_url, settings.anime_list_file, context)
    return choose(entries, "Which anime?")


def prompt_episode_selection(records) -> str:
    print(catalog.format_episode_menu(records), file=sys.stderr)
    return input("\n▶ Which episode(s) to download? (e.g., 1, 3-5, *, L2, !6): ").strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Download anime episodes from AnimePahe',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Episode selection examples:
  "1"            single episode
  "1,3,5"        several episodes
  "1-5"          range
  "*"            all available
  "*,!1,!10-12"  all except 1 and 10-12
  "L3"           latest 3 available
  "F5"           first 5 available
  "10-"          episode 10 to last available
  "-5"           up to episode 5
  "1-10,!5,L2"   1-10 except 5, plus latest 2
        """
    )
    parser.add_argument('-a', '--anime-name', help='anime name to search for')
    parser.add_argument('-s', '--slug', help='anime slug/uuid, ignored when -a is given')
    parser.add_argument('-e', '--episodes', help='episode selection string')
    parser.add_argument('-r', '--resolution', help='preferred resolution, e.g. 1080 or 720')
    parser.add_argument('-o', '--audio', help='preferred audio language, e.g. eng or jpn')
    parser.add_argument('-t', '--threads', help='number of parallel jobs (default: 4)')
    parser.add_argument('-T', '--timeout', help='timeout in seconds for each segment download job')
    parser.add_argument('-l', '--link-only', action='store_true',
                        help='print m3u8 playlist links without downloading')
    parser.add_argument('-d', '--debug', action='store_true',
                        help='debug mode: verbose output, keep temporary files')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def run(args) -> int:
    settings = config.load_settings(
        parallel_jobs=args.threads,
        segment_timeout=args.timeout,
        resolution=args.resolution,
        audio=args.audio,
        list_link_only=args.link_only or None,
        debug=args.debug or None,
    )
    logger.info("Checking required tools...")
    settings = config.with_tools(settings, need_ffmpeg=not settings.list_link_only)
    logger.info("✓ All essential tools checked.")
    if settings.segment_timeout:
        logger.info(f"Segment download job timeout set to: {settings.segment_timeout}s")

    settings.video_dir.mkdir(parents=True, exist_ok=True)
    context = http_client.new_session_context(settings.host_url)

    logger.info("======= Selecting Anime =======")
    series = select_series(args, settings, context)
    title = sanitize_filename(series.title)
    if not title:
        raise ConfigError(f"Anime name became empty after sanitization! Original was: '{series.title}'")
    logger.info(f"✓ Selected Anime: {title} (Slug: {series.locator})")

    logger.info("======= Preparing Download =======")
    series_dir = settings.series_dir(title)
    series_dir.mkdir(parents=True, exist_ok=True)
    atexit.register(orchestrator.cleanup_stale_work_dirs, series_dir)

    logger.info(f"⟳ Downloading episode list for {title}...")
    records = catalog.list_episodes(series.locator, settings.api_url, context)
    catalog.save_source_manifest(settings.source_manifest_path(title), records)
    records = catalog.load_source_manifest(settings.source_manifest_path(title))
    available = catalog.available_episodes(records)
    if not available:
        raise CatalogError("No episode available!")

    expression = args.episodes or prompt_episode_selection(records)
    if not expression:
        raise EmptySelection("No episodes selected for download.")
    logger.info(f"Episode selection for {title}: {expression}")

    episodes = episode_selector.evaluate(expression, available)
    if not episodes:
        return 0

    report = orchestrator.download_batch(
        episodes, orchestrator.SeriesContext(title, series.locator, records), settings, context)
    orchestrator.log_summary(report)
    if not report.failed:
        logger.info("✓ All tasks completed!")
    return report.exit_code


def main(argv=None) -> int:
    """
    Parse arguments, run the batch and return the process exit status.
    """
    args = build_parser().parse_args(argv)
    configure_logging(debug=args.debug, quiet=args.link_only)

    if not args.link_only:
        print(f"\n======= AnimePahe Downloader v{__version__} =======\n", file=sys.stderr)

    try:
        return run(args)
    except PaheError as e:
        logger.error(str(e))
        return 1
    except (KeyboardInterrupt, EOFError):
        logger.error("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
