"""
Lossless concatenation of decrypted segments with ffmpeg's concat demuxer.
"""

import logging
import subprocess
from functools import lru_cache
from pathlib import Path

from animepahe_dl.errors import MuxError


logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def supports_extension_picky(ffmpeg_path: str) -> bool:
    """
    Newer ffmpeg builds refuse unknown segment extensions unless told not to.
    """
    try:
        result = subprocess.run([ffmpeg_path, '-h', 'full'], capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return 'extension_picky' in result.stdout


def build_concat_command(ffmpeg_path: str, manifest_name: str, output_path: Path, debug: bool = False) -> list:
    ffmpeg_cmd = [ffmpeg_path]
    if supports_extension_picky(ffmpeg_path):
        ffmpeg_cmd.extend(['-extension_picky', '0'])
    ffmpeg_cmd.extend(['-f', 'concat', '-safe', '0', '-i', manifest_name, '-c', 'copy'])
    if not debug:
        ffmpeg_cmd.extend(['-v', 'error'])
    ffmpeg_cmd.extend(['-y', str(output_path)])
    return ffmpeg_cmd


def verify_output(output_path: Path) -> None:
    if not output_path.is_file() or output_path.stat().st_size == 0:
        raise MuxError(f"ffmpeg reported success but produced no output: {output_path}")


def concatenate(manifest_path, output_path, ffmpeg_path: str = 'ffmpeg', debug: bool = False) -> Path:
    """
    Stream-copy every manifest entry, in order, into output_path.
    Runs inside the manifest's directory so relative entries resolve.
    Any failure removes the partial output and raises MuxError.
    """
    manifest_path = Path(manifest_path)
    output_path = Path(output_path).resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)

    ffmpeg_cmd = build_concat_command(ffmpeg_path, manifest_path.name, output_path, debug)
    logger.info(f"  Running ffmpeg to combine segments into {output_path} ...")
    logger.debug(f"  {' '.join(ffmpeg_cmd)}")

    try:
        result = subprocess.run(ffmpeg_cmd, cwd=manifest_path.parent, capture_output=True, text=True)
    except OSError as e:
        output_path.unlink(missing_ok=True)
        raise MuxError(f"Could not start ffmpeg ({ffmpeg_path}): {e}")

    if result.returncode != 0:
        output_path.unlink(missing_ok=True)
        output = (result.stderr or result.stdout or '').strip()
        if output:
            logger.info("ffmpeg output:\n" + '\n'.join(f"    {line}" for line in output.splitlines()))
        raise MuxError(f"ffmpeg exited with status {result.returncode}", output=output)

    try:
        verify_output(output_path)
    except MuxError:
        output_path.unlink(missing_ok=True)
        raise

    size = output_path.stat().st_size
    logger.info(f"  Output file size: {size / (1024 * 1024):.2f} MB")
    return output_path
