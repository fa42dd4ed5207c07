"""
VMAF score evaluation through ffmpeg's libvmaf filter.

The evaluator compares a window of the source (reference) against the
encoded window (distorted). Both legs are normalized to the same frame rate,
height and pixel format so frames line up, and libvmaf writes a JSON log
whose pooled mean is the score.
"""

import json
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from ....utils.logging import get_logger
from ..exceptions import ScoreEvaluationError
from ..system.system_utils import ProcessRunner, run_command, remove_file

logger = get_logger("vmaf_evaluator")

VMAF_MODEL_HD = "vmaf_v0.6.1"
VMAF_MODEL_4K = "vmaf_4k_v0.6.1"


def select_vmaf_model(output_height: int) -> str:
    return VMAF_MODEL_4K if output_height >= 2160 else VMAF_MODEL_HD


def escape_filter_path(path: str) -> str:
    """Escape a path for use as a filtergraph option value."""
    return (path.replace('\\', '\\\\')
                .replace(':', '\\:')
                .replace(' ', '\\ ')
                .replace('[', '\\[')
                .replace(']', '\\]'))


def parse_vmaf_log(log_path: Path) -> float:
    """Pooled mean VMAF from a libvmaf JSON log."""
    try:
        with open(log_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return float(data['pooled_metrics']['vmaf']['mean'])
    except FileNotFoundError as e:
        raise ScoreEvaluationError(f"VMAF log not found: {log_path}") from e
    except (ValueError, KeyError, TypeError) as e:
        raise ScoreEvaluationError(f"Could not parse VMAF log {log_path}: {e}") from e


class VmafEvaluator:
    """Score evaluator backed by ffmpeg + libvmaf."""

    _available: Optional[bool] = None
    _available_lock = threading.Lock()

    def __init__(self, ffmpeg: str = "ffmpeg", runner: Optional[ProcessRunner] = None):
        self.ffmpeg = ffmpeg
        self.runner = runner or ProcessRunner()

    def is_available(self) -> bool:
        """Whether ffmpeg was built with libvmaf. Checked once per process."""
        cls = type(self)
        with cls._available_lock:
            if cls._available is None:
                cls._available = self._check_filter()
            return cls._available

    def _check_filter(self) -> bool:
        try:
            result = run_command([self.ffmpeg, '-hide_banner', '-filters'], timeout=30)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"ffmpeg -filters failed: {e}")
            return False
        available = 'libvmaf' in (result.stdout or '') + (result.stderr or '')
        logger.debug(f"libvmaf available: {available}")
        return available

    @classmethod
    def reset_availability_cache(cls):
        with cls._available_lock:
            cls._available = None

    def build_command(self, reference: Path, candidate: Path, window, fps: int,
                      height: int, n_subsample: int, log_path: Path) -> List[str]:
        norm_filters = []
        if fps > 0:
            norm_filters.append(f"fps=fps={fps}")
        if height > 0:
            norm_filters.append(f"scale=-2:{height}")
        norm_filters.append("format=yuv420p")
        norm = ",".join(norm_filters)

        model = select_vmaf_model(height)
        log = escape_filter_path(str(log_path))
        filtergraph = (
            f"[0:v]{norm}[ref];"
            f"[1:v]{norm}[dist];"
            f"[dist][ref]libvmaf=model=version={model}:log_fmt=json:"
            f"log_path={log}:n_subsample={n_subsample}"
        )

        return [
            self.ffmpeg, '-hide_banner', '-y',
            '-ss', f"{window.start:.3f}", '-t', f"{window.duration:.3f}",
            '-i', str(reference),
            '-i', str(candidate),
            '-lavfi', filtergraph,
            '-vsync', '0',
            '-f', 'null', '-'
        ]

    def evaluate(self, reference: Path, candidate: Path, window, fps: int, height: int,
                 n_subsample: int, log_dir: Optional[Path] = None,
                 on_spawn: Optional[Callable[[int], None]] = None) -> float:
        """
        Score ``candidate`` against ``window`` of ``reference``.

        ``on_spawn`` receives the ffmpeg pid so the caller can stop it.

        Raises:
            ScoreEvaluationError: ffmpeg failed or the log was unusable
        """
        log_root = Path(log_dir) if log_dir else Path(tempfile.gettempdir())
        log_path = log_root / f"vmaf_{uuid.uuid4().hex}.json"
        cmd = self.build_command(reference, candidate, window, fps, height, n_subsample, log_path)

        try:
            try:
                result = self.runner.run(cmd, on_spawn=on_spawn)
            except OSError as e:
                raise ScoreEvaluationError(f"VMAF evaluation could not run: {e}", command=cmd) from e

            if not result.success:
                tail = result.stderr_tail()
                raise ScoreEvaluationError(f"VMAF evaluation failed (status {result.returncode}): {tail}",
                                           command=cmd, output=tail)

            score = parse_vmaf_log(log_path)
            logger.vmaf(f"{candidate.name} @ {window.start:.1f}s: {score:.2f}")
            return score
        finally:
            if log_path.exists():
                remove_file(log_path)
