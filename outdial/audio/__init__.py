"""Audio transcoding helpers."""

from outdial.audio.codecs import (
    TELEPHONY_SAMPLE_RATE,
    compute_audio_energy,
    decode_to_linear_pcm,
    encode_from_linear_pcm,
    frame_duration_ms,
    resample_nearest,
)
from outdial.audio.wav import build_wav

__all__ = [
    "TELEPHONY_SAMPLE_RATE",
    "build_wav",
    "compute_audio_energy",
    "decode_to_linear_pcm",
    "encode_from_linear_pcm",
    "frame_duration_ms",
    "resample_nearest",
]
