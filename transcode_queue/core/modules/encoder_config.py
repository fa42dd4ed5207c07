"""
Encoding profiles and FFmpeg command construction.

EncodingProfile carries everything the queue needs to know about how a file is
encoded: the encoder, its rate-control mode, the baseline quality knob and the
calibration settings. FFmpegCommandBuilder turns a job plus a profile into an
ffmpeg argv, either for the full encode or for a short calibration window.
"""

import copy
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

SOFTWARE_QUALITY_FLOOR = 10
HARDWARE_QUALITY_FLOOR = 5

# hw_rc_mode values
HW_RC_CQP = 1
HW_RC_VBR = 2
HW_RC_CBR = 3
HW_RC_ICQ = 4

_HW_RC_NAMES = {HW_RC_CQP: 'CQP', HW_RC_VBR: 'VBR', HW_RC_CBR: 'CBR', HW_RC_ICQ: 'ICQ'}


@dataclass
class EncodingProfile:
    """Named encoder configuration."""
    name: str
    encoder: str = "libvpx-vp9"
    container: str = "webm"
    preset: Optional[str] = None
    use_hardware_encoding: bool = False
    crf: int = 31
    hw_global_quality: int = 70
    hw_rc_mode: int = HW_RC_CQP
    video_target_bitrate: int = 0  # kbps, 0 = quality driven
    video_max_bitrate: int = 0     # kbps ceiling, optional
    fps: int = 0                   # 0 = keep source rate
    scale_height: int = 0          # 0 = keep source height

    vmaf_enabled: bool = False
    vmaf_target: float = 93.0
    vmaf_step: int = 2
    vmaf_max_attempts: int = 3
    vmaf_window_duration_sec: int = 10
    vmaf_analysis_budget_sec: int = 60
    vmaf_n_subsample: int = 30

    def is_calibration_compatible(self) -> bool:
        """Quality search only makes sense for quality-driven rate control."""
        if self.use_hardware_encoding:
            return self.hw_rc_mode == HW_RC_CQP
        return self.video_target_bitrate == 0

    def baseline_quality(self) -> int:
        return self.hw_global_quality if self.use_hardware_encoding else self.crf

    def quality_floor(self) -> int:
        return HARDWARE_QUALITY_FLOOR if self.use_hardware_encoding else SOFTWARE_QUALITY_FLOOR

    def with_quality(self, quality: int) -> "EncodingProfile":
        """Copy of this profile with the quality knob set to ``quality``."""
        profile = copy.copy(self)
        if self.use_hardware_encoding:
            profile.hw_global_quality = quality
        else:
            profile.crf = quality
        return profile

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncodingProfile":
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


BUILTIN_PROFILES: Dict[str, EncodingProfile] = {
    'vp9-good': EncodingProfile(name='vp9-good', encoder='libvpx-vp9', container='webm',
                                crf=31),
    'av1-svt': EncodingProfile(name='av1-svt', encoder='libsvtav1', container='mkv',
                               preset='6', crf=30),
    'hevc-x265': EncodingProfile(name='hevc-x265', encoder='libx265', container='mkv',
                                 preset='medium', crf=24),
    'vp9-vaapi': EncodingProfile(name='vp9-vaapi', encoder='vp9_vaapi', container='webm',
                                 use_hardware_encoding=True, hw_global_quality=70,
                                 hw_rc_mode=HW_RC_CQP),
}


def get_profile(name: str) -> EncodingProfile:
    """Return a copy of the built-in profile ``name``."""
    if name not in BUILTIN_PROFILES:
        available = ", ".join(sorted(BUILTIN_PROFILES))
        raise ValueError(f"Unknown profile '{name}' (available: {available})")
    return copy.copy(BUILTIN_PROFILES[name])


class FFmpegCommandBuilder:
    """Builds ffmpeg command lines for full encodes and calibration windows."""

    def __init__(self, ffmpeg: str = "ffmpeg", vaapi_device: str = "/dev/dri/renderD128"):
        self.ffmpeg = ffmpeg
        self.vaapi_device = vaapi_device

    def build(self, job, profile: EncodingProfile) -> List[str]:
        """Full encode of ``job.input_path`` to ``job.output_path`` with progress on stdout."""
        cmd = self._base_cmd(profile)
        cmd.extend(['-i', str(job.input_path)])
        cmd.extend(['-progress', 'pipe:1', '-nostats'])

        filters = self._build_filter_chain(profile, scale=True)
        if filters:
            cmd.extend(['-vf', filters])

        cmd.extend(self._build_encoder_params(profile))
        cmd.extend(self._build_quality_params(profile, profile.baseline_quality()))
        cmd.extend(['-c:a', 'copy'])
        cmd.append(str(job.output_path))
        return cmd

    def build_window(self, job, profile: EncodingProfile, window, quality: int,
                     output_path: Path) -> List[str]:
        """Encode only ``window`` of the input at ``quality``, video only, no scaling."""
        cmd = self._base_cmd(profile)
        cmd.extend(['-ss', f"{window.start:.3f}", '-t', f"{window.duration:.3f}"])
        cmd.extend(['-i', str(job.input_path)])

        filters = self._build_filter_chain(profile, scale=False)
        if filters:
            cmd.extend(['-vf', filters])

        cmd.extend(self._build_encoder_params(profile))
        cmd.extend(self._build_quality_params(profile, quality))
        cmd.extend(['-an', '-sn'])
        cmd.append(str(output_path))
        return cmd

    def _base_cmd(self, profile: EncodingProfile) -> List[str]:
        cmd = [self.ffmpeg, '-hide_banner', '-y']
        if profile.use_hardware_encoding:
            cmd.extend(['-vaapi_device', self.vaapi_device])
        return cmd

    def _build_filter_chain(self, profile: EncodingProfile, scale: bool) -> str:
        filters = []
        if profile.fps > 0:
            filters.append(f"fps={profile.fps}")
        if scale and profile.scale_height > 0:
            filters.append(f"scale=-2:{profile.scale_height}")
        if profile.use_hardware_encoding:
            filters.extend(['format=nv12', 'hwupload'])
        return ','.join(filters)

    def _build_encoder_params(self, profile: EncodingProfile) -> List[str]:
        params = ['-c:v', profile.encoder]
        if profile.preset and not profile.use_hardware_encoding:
            params.extend(['-preset', profile.preset])
        return params

    def _build_quality_params(self, profile: EncodingProfile, quality: int) -> List[str]:
        if profile.use_hardware_encoding:
            rc_name = _HW_RC_NAMES.get(profile.hw_rc_mode, 'CQP')
            params = ['-rc_mode', rc_name]
            if profile.hw_rc_mode == HW_RC_CQP:
                params.extend(['-global_quality', str(quality)])
            elif profile.video_target_bitrate > 0:
                params.extend(['-b:v', f"{profile.video_target_bitrate}k"])
            return params

        if profile.video_target_bitrate > 0:
            return ['-b:v', f"{profile.video_target_bitrate}k"]

        params = ['-crf', str(quality)]
        if profile.encoder == 'libvpx-vp9':
            # vp9 constrained quality: -b:v is the ceiling, 0 means none
            ceiling = f"{profile.video_max_bitrate}k" if profile.video_max_bitrate else '0'
            params.extend(['-b:v', ceiling])
        elif profile.video_max_bitrate > 0:
            params.extend(['-maxrate', f"{profile.video_max_bitrate}k",
                           '-bufsize', f"{profile.video_max_bitrate * 2}k"])
        return params
