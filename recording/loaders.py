from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
import wave

import numpy as np

from shared.models import Recording

logger = logging.getLogger(__name__)


def _decode_pcm(raw_bytes: bytes, sample_width: int) -> np.ndarray:
    """
    Convert raw little-endian PCM bytes to float64 samples in [-1, 1).

    Handles 8-bit unsigned and 16/24/32-bit signed PCM.
    """
    if sample_width == 1:  # 8-bit unsigned
        data = np.frombuffer(raw_bytes, dtype=np.uint8)
        return (data.astype(np.float64) - 128.0) / 128.0
    if sample_width == 2:  # 16-bit signed
        data = np.frombuffer(raw_bytes, dtype="<i2")
        return data.astype(np.float64) / 32768.0
    if sample_width == 3:  # 24-bit signed
        raw_arr = np.frombuffer(raw_bytes, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        values = raw_arr[:, 0] | (raw_arr[:, 1] << 8) | (raw_arr[:, 2] << 16)
        values = np.where(values & 0x800000, values - 0x1000000, values)
        return values.astype(np.float64) / 8388608.0  # 2^23
    if sample_width == 4:  # 32-bit signed
        data = np.frombuffer(raw_bytes, dtype="<i4")
        return data.astype(np.float64) / 2147483648.0  # 2^31
    raise ValueError(f"Unsupported sample width: {sample_width}")


def load_wav(path: Path | str, *, channel: int = 0) -> Recording:
    path = Path(path)
    try:
        wav = wave.open(str(path), "rb")
    except (wave.Error, EOFError) as exc:
        raise ValueError(f"Failed to open WAV file: {exc}") from exc
    with wav:
        n_channels = wav.getnchannels()
        sample_rate = wav.getframerate()
        sample_width = wav.getsampwidth()
        raw_bytes = wav.readframes(wav.getnframes())
    if not 0 <= channel < n_channels:
        raise ValueError(f"channel {channel} not in WAV file with {n_channels} channel(s)")
    data = _decode_pcm(raw_bytes, sample_width)
    frames = data.size // n_channels
    data = data[: frames * n_channels].reshape((frames, n_channels))
    logger.info(
        "Opened WAV file: %s (%d channels, %d Hz, %d-bit, %d frames)",
        path.name,
        n_channels,
        sample_rate,
        sample_width * 8,
        frames,
    )
    return Recording(
        values=data[:, channel],
        sample_rate=float(sample_rate),
        channel=f"Ch{channel}",
        source_path=str(path),
        source_type="wav",
    )


def load_array(path: Path | str, *, sample_rate: Optional[float] = None, channel: int = 0) -> Recording:
    """
    Load ``.npy`` or delimited text. One column is a sample series (needs
    ``sample_rate``); two or more columns are read as time plus channels.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        data = np.load(path, allow_pickle=False)
    else:
        delimiter = "," if suffix == ".csv" else None
        data = np.loadtxt(path, delimiter=delimiter, ndmin=1)
    data = np.asarray(data, dtype=np.float64)
    source_type = suffix.lstrip(".") or "text"
    if data.ndim == 1:
        if sample_rate is None:
            raise ValueError("sample_rate is required for single-column data")
        return Recording(
            values=data,
            sample_rate=sample_rate,
            channel="Ch0",
            source_path=str(path),
            source_type=source_type,
        )
    if data.ndim != 2 or data.shape[1] < 2:
        raise ValueError("expected a 1D series or columns of time and values")
    column = channel + 1
    if column >= data.shape[1]:
        raise ValueError(f"channel {channel} not present in {path.name}")
    return Recording(
        values=data[:, column],
        times=data[:, 0],
        sample_rate=sample_rate,
        channel=f"Ch{channel}",
        source_path=str(path),
        source_type=source_type,
    )


def load_recording(path: Path | str, *, sample_rate: Optional[float] = None, channel: int = 0) -> Recording:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if path.suffix.lower() == ".wav":
        return load_wav(path, channel=channel)
    return load_array(path, sample_rate=sample_rate, channel=channel)


__all__ = ["load_array", "load_recording", "load_wav"]
