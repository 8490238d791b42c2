import numpy as np


def hamming_window(size: int) -> np.ndarray:
    """Symmetric Hamming window as float64 coefficients."""
    return np.hamming(int(size)).astype(np.float64)


def one_sided_magnitude(samples: np.ndarray, window: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
    """Windowed real FFT magnitude, scaled by 2/N with DC and Nyquist halved.

    `samples` and `window` must have the same length N; the result has N/2+1 bins.
    """
    n = len(samples)
    spectrum = np.fft.rfft(samples * window)
    if out is None:
        out = np.empty(len(spectrum), dtype=np.float64)
    np.abs(spectrum, out=out)
    out *= 2.0 / n
    out[0] *= 0.5
    out[-1] *= 0.5
    return out


def bin_width(sample_rate: float, fft_size: int) -> float:
    return float(sample_rate) / float(fft_size)


def band_bin_range(
    freq_low: float,
    freq_high: float,
    sample_rate: float,
    fft_size: int,
) -> tuple[int, int]:
    """Map a [low, high) Hz range to a half-open FFT bin range.

    The high edge is clamped to Nyquist and the range always covers at least
    one bin inside the one-sided spectrum.
    """
    num_bins = fft_size // 2 + 1
    freq_per_bin = bin_width(sample_rate, fft_size)
    nyquist = sample_rate / 2.0

    high = min(float(freq_high), nyquist)
    low_bin = min(num_bins - 1, max(0, int(freq_low / freq_per_bin)))
    high_bin = min(num_bins, max(0, int(high / freq_per_bin)))
    if high_bin <= low_bin:
        high_bin = low_bin + 1
    return low_bin, high_bin


def ceiling_bin(freq_ceiling: float, sample_rate: float, fft_size: int) -> int:
    """Number of leading bins that lie below `freq_ceiling` (at least 1)."""
    num_bins = fft_size // 2 + 1
    count = int(np.ceil(freq_ceiling / bin_width(sample_rate, fft_size)))
    return max(1, min(num_bins, count))


def band_rms_power(magnitude: np.ndarray, low_bin: int, high_bin: int) -> float:
    """sqrt(mean(magnitude^2)) over the bin range."""
    band = magnitude[low_bin:high_bin]
    if len(band) == 0:
        return 0.0
    return float(np.sqrt(np.mean(band * band)))


def band_magnitude_sum(magnitude: np.ndarray, low_bin: int, high_bin: int) -> float:
    """Plain magnitude sum over the bin range (used for stereo balance)."""
    return float(np.sum(magnitude[low_bin:high_bin]))
