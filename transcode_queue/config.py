"""Configuration management for transcode-queue."""

import os
from pathlib import Path
from typing import Optional, Dict, Any


def load_env_file(env_path: Optional[Path] = None) -> Dict[str, str]:
    """Load key=value pairs from a .env file."""
    if env_path is None:
        # Look for .env in current directory, then next to the package
        candidates = [
            Path.cwd() / ".env",
            Path(__file__).parent.parent / ".env",
        ]

        for candidate in candidates:
            if candidate.exists():
                env_path = candidate
                break

    env_vars = {}

    if env_path and env_path.exists():
        with open(env_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        env_vars[key.strip().lower()] = value.strip()

    return env_vars


def _setting(env_vars: Dict[str, str], key: str, default: str) -> str:
    return env_vars.get(key, os.getenv(key.upper(), default))


def get_config(env_path: Optional[Path] = None) -> Dict[str, Any]:
    """Get configuration from the .env file and environment variables."""
    env_vars = load_env_file(env_path)
    default_workers = str(min(4, os.cpu_count() or 1))

    config = {
        'max_workers': int(_setting(env_vars, 'max_workers', default_workers)),
        'vmaf_target': float(_setting(env_vars, 'vmaf_target', '93.0')),
        'vmaf_step': int(_setting(env_vars, 'vmaf_step', '2')),
        'vmaf_max_attempts': int(_setting(env_vars, 'vmaf_max_attempts', '3')),
        'vmaf_window_duration': int(_setting(env_vars, 'vmaf_window_duration', '10')),
        'vmaf_analysis_budget': int(_setting(env_vars, 'vmaf_analysis_budget', '60')),
        'vmaf_n_subsample': int(_setting(env_vars, 'vmaf_n_subsample', '30')),
        'debug': _setting(env_vars, 'debug', 'false').lower() in ('true', '1', 'yes'),
        'log_level': _setting(env_vars, 'log_level', 'INFO').upper(),
    }

    return config
