"""G.711 mu-law transcoding for outdial.

Telephony legs carry 8 kHz 8-bit mu-law; speech services consume and
produce 16-bit little-endian linear PCM. Both directions are table driven
and stateless, so every call task can use them concurrently.

Round trip:
    encode_from_linear_pcm(decode_to_linear_pcm(b)) == b for every mu-law
    byte except 0x7F (negative zero), which comes back as 0xFF.
"""

from __future__ import annotations

import struct

TELEPHONY_SAMPLE_RATE = 8000

# ---------------------------------------------------------------------------
# G.711 mu-law lookup tables
# ---------------------------------------------------------------------------

_MULAW_BIAS = 33
_MULAW_CLIP = 8159  # 13-bit magnitude ceiling after the 14-bit shift

# Upper bound of each 3-bit segment on the biased 14-bit magnitude
_SEGMENT_END = (0x3F, 0x7F, 0xFF, 0x1FF, 0x3FF, 0x7FF, 0xFFF, 0x1FFF)


def _mulaw_encode_sample(sample: int) -> int:
    """Compress one signed 16-bit sample to a mu-law byte."""
    pcm = sample >> 2
    if pcm < 0:
        pcm = -pcm
        mask = 0x7F
    else:
        mask = 0xFF

    if pcm > _MULAW_CLIP:
        pcm = _MULAW_CLIP
    pcm += _MULAW_BIAS

    segment = 0
    for end in _SEGMENT_END:
        if pcm <= end:
            break
        segment += 1

    if segment >= 8:
        return 0x7F ^ mask

    value = (segment << 4) | ((pcm >> (segment + 1)) & 0x0F)
    return value ^ mask


# mu-law byte -> signed 16-bit sample
#   t = ((mantissa << 3) + 0x84) << exponent
#   sample = t - 0x84
_MULAW_DECODE_TABLE: list[int] = []
for _i in range(256):
    _v = ~_i & 0xFF
    _sign = _v & 0x80
    _exponent = (_v >> 4) & 0x07
    _mantissa = _v & 0x0F
    _t = ((_mantissa << 3) + 0x84) << _exponent
    _sample = _t - 0x84
    if _sign:
        _sample = -_sample
    _MULAW_DECODE_TABLE.append(_sample)

# unsigned 16-bit index -> mu-law byte
_MULAW_ENCODE_TABLE: list[int] = []
for _i in range(65536):
    _s = _i if _i < 32768 else _i - 65536
    _MULAW_ENCODE_TABLE.append(_mulaw_encode_sample(_s))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_to_linear_pcm(mulaw: bytes) -> bytes:
    """Expand mu-law bytes to 16-bit little-endian PCM at the same rate.

    Args:
        mulaw: Any number of mu-law bytes.

    Returns:
        PCM16 bytes, two per input byte.
    """
    if not mulaw:
        return b""
    return struct.pack(f"<{len(mulaw)}h", *(_MULAW_DECODE_TABLE[b] for b in mulaw))


def encode_from_linear_pcm(pcm: bytes, source_sample_rate: int = TELEPHONY_SAMPLE_RATE) -> bytes:
    """Compress 16-bit little-endian PCM to 8 kHz mu-law.

    PCM at any other rate is first decimated to 8 kHz by nearest neighbour.
    A trailing odd byte is dropped.

    Args:
        pcm: PCM16 little-endian bytes.
        source_sample_rate: Sample rate of ``pcm`` in Hz.

    Returns:
        mu-law bytes at 8 kHz.
    """
    if source_sample_rate != TELEPHONY_SAMPLE_RATE:
        pcm = resample_nearest(pcm, source_sample_rate, TELEPHONY_SAMPLE_RATE)

    n_samples = len(pcm) // 2
    if n_samples == 0:
        return b""
    samples = struct.unpack_from(f"<{n_samples}h", pcm)
    return bytes(_MULAW_ENCODE_TABLE[s & 0xFFFF] for s in samples)


def resample_nearest(pcm: bytes, from_rate: int, to_rate: int) -> bytes:
    """Resample PCM16 by picking the nearest earlier source sample.

    Output sample ``i`` is source sample ``floor(i * from_rate / to_rate)``;
    the output holds ``floor(n * to_rate / from_rate)`` samples.
    """
    n_samples = len(pcm) // 2
    if n_samples == 0:
        return b""
    if from_rate == to_rate:
        return pcm[: n_samples * 2]

    samples = struct.unpack_from(f"<{n_samples}h", pcm)
    ratio = from_rate / to_rate
    out_len = int(n_samples / ratio)
    out = [samples[min(int(i * ratio), n_samples - 1)] for i in range(out_len)]
    return struct.pack(f"<{out_len}h", *out)


def frame_duration_ms(
    byte_count: int,
    bytes_per_frame: int = 160,
    frame_ms: int = 20,
) -> float:
    """Duration of ``byte_count`` bytes of audio in milliseconds.

    Defaults describe 20 ms mu-law frames at 8 kHz. PCM16 at the same rate
    needs ``bytes_per_frame=320``.
    """
    return byte_count / bytes_per_frame * frame_ms


# ---------------------------------------------------------------------------
# Audio energy helpers for speech gating
# ---------------------------------------------------------------------------

def compute_audio_energy(data: bytes, codec: str = "mulaw") -> float:
    """Compute RMS energy of an audio frame.

    Args:
        data: Raw audio bytes.
        codec: "mulaw" or "pcm16".

    Returns:
        RMS energy as a float (0.0 = silence, ~32768.0 = max).
    """
    if not data:
        return 0.0

    if codec == "mulaw":
        total = 0
        for b in data:
            s = _MULAW_DECODE_TABLE[b]
            total += s * s
        return (total / len(data)) ** 0.5

    n_samples = len(data) // 2
    if n_samples == 0:
        return 0.0
    samples = struct.unpack_from(f"<{n_samples}h", data)
    total = sum(s * s for s in samples)
    return (total / n_samples) ** 0.5
