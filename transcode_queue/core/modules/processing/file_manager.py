"""
Queue building: file discovery and output path derivation.

This module provides:
- Recursive video file discovery (symlinks are not followed)
- Output path derivation from a filename pattern
- Creation of the Pending job list for a directory
"""

import os
from pathlib import Path
from typing import Iterable, List, Optional

from ....utils.logging import get_logger
from ..analysis.media_utils import try_probe_duration
from ..encoder_config import EncodingProfile
from ..optimization.quality_calibration import TEMP_DIR_NAME
from .job_model import Job

logger = get_logger("file_manager")

VIDEO_EXTENSIONS = ("mp4", "mkv", "webm", "mov", "avi", "flv", "m4v", "wmv")


def is_video_file(path: Path) -> bool:
    return path.suffix.lower().lstrip('.') in VIDEO_EXTENSIONS


def discover_video_files(root: Path) -> List[Path]:
    """
    Find video files under ``root``, sorted by path.

    Hidden files and the calibration scratch directory are ignored.
    """
    root = Path(root)
    if not root.exists():
        raise ValueError(f"Path not found: {root}")
    if root.is_file():
        return [root] if is_video_file(root) else []

    files: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = [d for d in dirnames if d != TEMP_DIR_NAME and not d.startswith('.')]
        for name in filenames:
            if name.startswith('.'):
                continue
            path = Path(dirpath) / name
            if is_video_file(path) and not path.is_symlink():
                files.append(path)

    files.sort()
    logger.discovery(f"Found {len(files)} video file(s) under {root}")
    return files


def derive_output_path(input_path: Path, profile: EncodingProfile,
                       output_dir: Optional[Path] = None, pattern: Optional[str] = None,
                       container: Optional[str] = None) -> Path:
    """
    Output path for ``input_path``.

    ``pattern`` placeholders: ``{basename}`` (stem), ``{filename}`` (full
    name), ``{profile}`` and ``{ext}``. The container extension is always
    appended. Without a pattern the output is ``<basename>.<container>``.
    """
    input_path = Path(input_path)
    directory = Path(output_dir) if output_dir else input_path.parent
    ext = (container or profile.container).lstrip('.')

    if pattern:
        name = (pattern.replace("{basename}", input_path.stem)
                       .replace("{filename}", input_path.name)
                       .replace("{profile}", profile.name)
                       .replace("{ext}", ext))
    else:
        name = input_path.stem

    output = directory / f"{name}.{ext}"
    if output == input_path:
        # never encode a file onto itself
        output = directory / f"{name}.{profile.name}.{ext}"
    return output


def build_job_queue(files: Iterable[Path], profile: EncodingProfile, overwrite: bool = False,
                    output_dir: Optional[Path] = None, pattern: Optional[str] = None,
                    container: Optional[str] = None, start_id: int = 0,
                    probe: bool = True) -> List[Job]:
    """Create one Pending job per file. Duration probing is best effort."""
    jobs = []
    for job_id, input_path in enumerate(files, start_id):
        output_path = derive_output_path(input_path, profile, output_dir, pattern, container)
        job = Job(
            id=job_id,
            input_path=Path(input_path),
            output_path=output_path,
            profile_name=profile.name,
            overwrite=overwrite,
            duration_s=try_probe_duration(Path(input_path)) if probe else None,
        )
        if profile.vmaf_enabled:
            job.vmaf_target = profile.vmaf_target
        jobs.append(job)
    return jobs
