"""
Transcode Queue - batch transcoding with bounded workers and VMAF-based quality calibration.
"""

__version__ = "1.0.0"

from .config import get_config, load_env_file

__all__ = [
    "get_config",
    "load_env_file",
]
