"""WAV packaging for transcription requests."""

from __future__ import annotations

import io
import wave


def build_wav(
    pcm: bytes,
    sample_rate: int = 8000,
    channels: int = 1,
    sample_width: int = 2,
) -> bytes:
    """Wrap raw PCM in a RIFF/WAV container with an explicit header."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()
