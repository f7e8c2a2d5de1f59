"""Software frequency analyser producing browser-compatible byte spectra.

When playback bypasses the native audio graph (segmented or manually decoded
sources) the visualiser cannot read an analyser node, so the same numbers are
recomputed here from raw PCM:

    window copy (zero padded) -> Blackman window -> radix-2 FFT
    -> |X[k]| / N -> 20*log10 -> map [-100 dB, -30 dB] onto [0, 255]

which matches ``AnalyserNode.getByteFrequencyData`` with its default decibel
range (temporal smoothing aside, see ``SpectrumSmoother``).

Buffers: ``fft_in_place`` mutates the two arrays it is given. They must be
distinct, contiguous float64 arrays, and a given ``FftScratch`` must not be used
by two calls at the same time. ``FrequencyAnalyzer`` allocates a fresh scratch
per call unless the caller passes one it owns.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

MIN_FFT_SIZE = 32
MAX_FFT_SIZE = 32768

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0

BLACKMAN_A0 = 0.42
BLACKMAN_A1 = 0.5
BLACKMAN_A2 = 0.08


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


@lru_cache(maxsize=16)
def blackman_window(n: int) -> np.ndarray:
    """Read-only Blackman window of length *n*."""
    if n < 2:
        raise ValueError("window length must be at least 2")
    i = np.arange(n, dtype=np.float64)
    nm1 = n - 1
    w = (
        BLACKMAN_A0
        - BLACKMAN_A1 * np.cos(2.0 * math.pi * i / nm1)
        + BLACKMAN_A2 * np.cos(4.0 * math.pi * i / nm1)
    )
    w.setflags(write=False)
    return w


@lru_cache(maxsize=16)
def _bit_reversal_permutation(n: int) -> np.ndarray:
    perm = np.arange(n)
    j = 0
    for i in range(1, n):
        bit = n >> 1
        while j & bit:
            j ^= bit
            bit >>= 1
        j ^= bit
        if i < j:
            perm[i], perm[j] = perm[j], perm[i]
    perm.setflags(write=False)
    return perm


def _check_buffer(buf: np.ndarray, name: str) -> None:
    if not isinstance(buf, np.ndarray) or buf.ndim != 1:
        raise ValueError(f"{name} must be a 1-D numpy array")
    if buf.dtype != np.float64:
        raise ValueError(f"{name} must be float64")
    if not buf.flags.c_contiguous or not buf.flags.writeable:
        raise ValueError(f"{name} must be contiguous and writeable")


def fft_in_place(real: np.ndarray, imag: np.ndarray) -> None:
    """Iterative radix-2 Cooley-Tukey FFT over (real, imag), in place."""
    _check_buffer(real, "real")
    _check_buffer(imag, "imag")
    n = real.shape[0]
    if imag.shape[0] != n:
        raise ValueError("real and imag must have the same length")
    if not is_power_of_two(n):
        raise ValueError(f"FFT length must be a power of two, got {n}")
    if np.shares_memory(real, imag):
        raise ValueError("real and imag must not alias")

    perm = _bit_reversal_permutation(n)
    real[:] = real[perm]
    imag[:] = imag[perm]

    size = 2
    while size <= n:
        half = size >> 1
        angle = -2.0 * math.pi / size
        k = np.arange(half)
        w_re = np.cos(angle * k)
        w_im = np.sin(angle * k)

        # Each row is one butterfly group; the slices below are views.
        re = real.reshape(-1, size)
        im = imag.reshape(-1, size)
        a_re, b_re = re[:, :half], re[:, half:]
        a_im, b_im = im[:, :half], im[:, half:]

        t_re = b_re * w_re - b_im * w_im
        t_im = b_re * w_im + b_im * w_re
        b_re[...] = a_re - t_re
        b_im[...] = a_im - t_im
        a_re += t_re
        a_im += t_im

        size <<= 1


@dataclass
class FftScratch:
    """Caller-owned work buffers for one analysis at a time."""
    real: np.ndarray
    imag: np.ndarray

    @classmethod
    def allocate(cls, n: int) -> "FftScratch":
        return cls(real=np.zeros(n, dtype=np.float64), imag=np.zeros(n, dtype=np.float64))


class FrequencyAnalyzer:
    """Computes ``fft_size / 2`` byte bins from a window of PCM samples."""

    def __init__(
        self,
        fft_size: int = 256,
        min_decibels: float = MIN_DECIBELS,
        max_decibels: float = MAX_DECIBELS,
    ):
        if not is_power_of_two(fft_size) or not MIN_FFT_SIZE <= fft_size <= MAX_FFT_SIZE:
            raise ValueError(
                f"fft_size must be a power of two between {MIN_FFT_SIZE} and {MAX_FFT_SIZE}"
            )
        if max_decibels <= min_decibels:
            raise ValueError("max_decibels must be greater than min_decibels")
        self.fft_size = fft_size
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size >> 1

    def new_scratch(self) -> FftScratch:
        return FftScratch.allocate(self.fft_size)

    def byte_frequency_data(
        self,
        samples,
        offset: Optional[int] = None,
        out: Optional[np.ndarray] = None,
        scratch: Optional[FftScratch] = None,
    ) -> np.ndarray:
        """Byte spectrum of ``samples[offset : offset + fft_size]``.

        *offset* defaults to the most recent ``fft_size`` samples and may point
        before the start or past the end; missing samples count as silence.
        Input that cannot be read as numbers yields an all-zero spectrum.
        """
        n = self.fft_size
        if out is None:
            out = np.zeros(self.frequency_bin_count, dtype=np.uint8)
        elif out.shape != (self.frequency_bin_count,) or out.dtype != np.uint8:
            raise ValueError(f"out must be a uint8 array of length {self.frequency_bin_count}")
        if scratch is None:
            scratch = self.new_scratch()
        elif scratch.real.shape[0] != n or scratch.imag.shape[0] != n:
            raise ValueError(f"scratch buffers must have length {n}")

        try:
            pcm = np.asarray(samples, dtype=np.float64).reshape(-1)
            start = len(pcm) - n if offset is None else int(offset)
        except (TypeError, ValueError) as exc:
            logger.debug("Unreadable PCM input, returning silence: %s", exc)
            out.fill(0)
            return out

        real, imag = scratch.real, scratch.imag
        real.fill(0.0)
        imag.fill(0.0)
        lo = max(start, 0)
        hi = min(start + n, len(pcm))
        if hi > lo:
            real[lo - start:hi - start] = pcm[lo:hi]
        np.nan_to_num(real, copy=False, nan=0.0, posinf=0.0, neginf=0.0)
        real *= blackman_window(n)

        fft_in_place(real, imag)

        half = self.frequency_bin_count
        magnitude = np.hypot(real[:half], imag[:half]) / n
        with np.errstate(divide="ignore"):
            decibels = 20.0 * np.log10(magnitude)  # silent bin -> -inf
        normalized = (decibels - self.min_decibels) / (self.max_decibels - self.min_decibels)
        # floor(x + 0.5) rounds halves up like the browser does
        scaled = np.floor(normalized * 255.0 + 0.5)
        np.clip(scaled, 0, 255, out=scaled)
        out[:] = scaled.astype(np.uint8)
        return out


class SpectrumSmoother:
    """Peak-hold smoothing for one viewer: bars jump up, then decay by *smoothing* per frame."""

    def __init__(self, bin_count: int, smoothing: float = 0.93):
        if not 0.0 <= smoothing < 1.0:
            raise ValueError("smoothing must be in [0, 1)")
        self.smoothing = smoothing
        self._state = np.zeros(bin_count, dtype=np.float64)

    def apply(self, frame: np.ndarray) -> np.ndarray:
        frame = np.asarray(frame, dtype=np.float64)
        if frame.shape != self._state.shape:
            self._state = np.zeros(frame.shape, dtype=np.float64)
        self._state = np.maximum(self.smoothing * self._state, frame)
        return np.floor(self._state + 0.5).astype(np.uint8)

    def reset(self) -> None:
        self._state.fill(0.0)


def downmix_to_mono(frames) -> np.ndarray:
    """Average the first two channels of a (frames, channels) array."""
    data = np.asarray(frames, dtype=np.float64)
    if data.ndim == 1:
        return data
    if data.ndim != 2 or data.shape[1] == 0:
        raise ValueError("expected a (frames, channels) array")
    if data.shape[1] == 1:
        return data[:, 0].copy()
    return (data[:, 0] + data[:, 1]) * 0.5


def window_offset_for_time(seconds: float, sample_rate: int, fft_size: int) -> int:
    """Offset that centres the analysis window on playback position *seconds*."""
    position = seconds * sample_rate
    if not math.isfinite(position):
        raise ValueError(f"playback position out of range: {seconds!r}s at {sample_rate} Hz")
    return int(math.floor(position)) - (fft_size >> 1)


def pcm_from_bytes(raw: bytes, encoding: str = "f32le") -> np.ndarray:
    """Decode little-endian mono PCM; a trailing partial sample is dropped."""
    if encoding == "f32le":
        width, dtype, scale = 4, "<f4", 1.0
    elif encoding == "s16le":
        width, dtype, scale = 2, "<i2", 1.0 / 32768.0
    else:
        raise ValueError(f"unsupported PCM encoding: {encoding}")
    usable = len(raw) - (len(raw) % width)
    samples = np.frombuffer(raw[:usable], dtype=dtype).astype(np.float64)
    return samples * scale if scale != 1.0 else samples
