"""
src/scoring/acoustic.py
========================
Acoustic Heuristic Scorer — SCAI Guard default scoring strategy

Responsibility:
    - Decode a chunk payload (WAV, or raw 16-bit little-endian mono PCM)
    - Estimate line noise, line stability and speech naturalness
    - Turn those signals into a 0–100 risk score, a confidence, and a
      list of matched scam patterns

Signals (empirically tuned for 16 kHz telephone audio):
    - Unnaturally regular pitch → synthetic / pre-recorded voice, the
      hallmark of robocalls
    - Erratic zero-crossing rate → unstable or heavily transcoded line,
      typical of spoofed VoIP routes
    - High noise floor → crowded call-centre background

This is a lightweight stand-in for a trained detection model. Any other
strategy with the same contract can be injected into ChunkScorer.

This module does NOT:
    - Perform STT or any language analysis
    - Keep any state between chunks
"""

import io
import logging
import wave

import numpy as np

from src.errors import InvalidChunk

logger = logging.getLogger("scai.scoring.acoustic")


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

DEFAULT_SAMPLE_RATE: int = 16000  # assumed for raw PCM payloads

# RMS energy of the quietest frames
_NOISE_THRESHOLD_HIGH: float = 0.08
_NOISE_THRESHOLD_MEDIUM: float = 0.03

# Coefficient of variation of per-frame zero-crossing rate
_STABILITY_THRESHOLD_LOW: float = 1.5
_STABILITY_THRESHOLD_MEDIUM: float = 0.8

# Regularity of autocorrelation peak positions across 1 s windows
_NATURALNESS_REGULARITY_THRESHOLD: float = 0.92

# Sub-scores (0–100) per signal value
_NOISE_SCORES: dict[str, float] = {"low": 0.0, "medium": 25.0, "high": 55.0}
_STABILITY_SCORES: dict[str, float] = {"high": 0.0, "medium": 25.0, "low": 55.0}
_NATURALNESS_SCORES: dict[str, float] = {"normal": 0.0, "suspicious": 95.0}

_WEIGHTS: dict[str, float] = {
    "naturalness": 0.60,
    "noise":       0.20,
    "stability":   0.20,
}

# Confidence reaches its ceiling at this much audio
_FULL_CONFIDENCE_SECONDS: float = 5.0


_PATTERNS: dict[str, tuple[str, str]] = {
    "synthetic_voice": (
        "SYNTHETIC_VOICE",
        "Pitch is unnaturally regular, consistent with a robocall or TTS voice.",
    ),
    "unstable_line": (
        "UNSTABLE_LINE",
        "Erratic signal characteristics, consistent with a spoofed or relayed VoIP route.",
    ),
    "call_centre_noise": (
        "CALL_CENTRE_NOISE",
        "High background noise floor, consistent with a crowded call centre.",
    ),
}


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class AcousticHeuristicScorer:
    """Callable scoring strategy: ``scorer(audio_bytes) -> dict``."""

    def __init__(self, default_sample_rate: int = DEFAULT_SAMPLE_RATE):
        self.default_sample_rate = default_sample_rate

    def __call__(self, audio: bytes) -> dict:
        pcm, sample_rate = decode_audio(audio, self.default_sample_rate)

        noise_level = _estimate_noise_level(pcm, sample_rate)
        call_stability = _estimate_call_stability(pcm, sample_rate)
        speech_naturalness = _estimate_speech_naturalness(pcm, sample_rate)

        sub_scores = {
            "naturalness": _NATURALNESS_SCORES[speech_naturalness],
            "noise": _NOISE_SCORES[noise_level],
            "stability": _STABILITY_SCORES[call_stability],
        }
        risk_score = sum(sub_scores[k] * _WEIGHTS[k] for k in _WEIGHTS)
        risk_score = round(min(max(risk_score, 0.0), 100.0), 2)

        duration = len(pcm) / float(sample_rate)
        confidence = round(0.2 + 0.7 * min(duration / _FULL_CONFIDENCE_SECONDS, 1.0), 2)

        patterns = []
        if speech_naturalness == "suspicious":
            patterns.append(_pattern("synthetic_voice", confidence))
        if call_stability == "low":
            patterns.append(_pattern("unstable_line", confidence))
        if noise_level == "high":
            patterns.append(_pattern("call_centre_noise", confidence))

        logger.debug(
            "Acoustic signals: noise=%s stability=%s naturalness=%s → risk=%.1f",
            noise_level, call_stability, speech_naturalness, risk_score,
        )
        return {
            "risk_score": risk_score,
            "confidence": confidence,
            "patterns": patterns,
        }


def _pattern(key: str, confidence: float) -> dict:
    name, description = _PATTERNS[key]
    return {"name": name, "description": description, "confidence": confidence}


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_audio(audio: bytes, default_sample_rate: int = DEFAULT_SAMPLE_RATE) -> tuple[np.ndarray, int]:
    """
    Decode WAV or raw PCM bytes into mono float32 samples in [-1.0, 1.0].

    Returns:
        (samples, sample_rate)

    Raises:
        InvalidChunk: If the payload cannot be decoded or has no samples.
    """
    if audio[:4] == b"RIFF":
        try:
            with wave.open(io.BytesIO(audio), "rb") as wf:
                n_frames = wf.getnframes()
                sampwidth = wf.getsampwidth()
                channels = wf.getnchannels()
                sample_rate = wf.getframerate()
                raw_pcm = wf.readframes(n_frames)
        except (wave.Error, EOFError) as exc:
            raise InvalidChunk(None, f"Audio chunk is not a decodable WAV file: {exc}")
    else:
        sampwidth, channels, sample_rate, raw_pcm = 2, 1, default_sample_rate, audio

    dtype_map = {1: np.uint8, 2: np.int16, 4: np.int32}
    norm_map = {1: 128.0, 2: 32768.0, 4: 2147483648.0}
    if sampwidth not in dtype_map:
        raise InvalidChunk(None, f"Unsupported sample width: {sampwidth} bytes.")

    frame_bytes = sampwidth * channels
    if len(raw_pcm) == 0 or len(raw_pcm) % frame_bytes != 0:
        raise InvalidChunk(None, "Audio chunk has no complete PCM frames.")

    pcm = np.frombuffer(raw_pcm, dtype=dtype_map[sampwidth]).astype(np.float32)
    if sampwidth == 1:
        pcm = pcm - 128.0  # 8-bit WAV is unsigned
    pcm = pcm / norm_map[sampwidth]

    if channels > 1:
        pcm = pcm.reshape(-1, channels).mean(axis=1)

    return pcm, sample_rate


# ---------------------------------------------------------------------------
# Internal analyzers
# ---------------------------------------------------------------------------


def _estimate_noise_level(pcm: np.ndarray, sample_rate: int) -> str:
    """Classify the RMS of the quietest 20% of 100 ms frames."""
    frame_size = max(1, sample_rate // 10)
    n_frames = len(pcm) // frame_size
    if n_frames < 2:
        return "medium"

    frames = pcm[: n_frames * frame_size].reshape(n_frames, frame_size)
    energies = np.sort(np.sqrt(np.mean(frames ** 2, axis=1)))
    noise_rms = float(np.mean(energies[: max(1, n_frames // 5)]))

    if noise_rms >= _NOISE_THRESHOLD_HIGH:
        return "high"
    elif noise_rms >= _NOISE_THRESHOLD_MEDIUM:
        return "medium"
    return "low"


def _estimate_call_stability(pcm: np.ndarray, sample_rate: int) -> str:
    """Classify the variability of per-frame zero-crossing rate."""
    frame_size = max(2, sample_rate // 10)
    n_frames = len(pcm) // frame_size
    if n_frames < 3:
        return "medium"

    frames = pcm[: n_frames * frame_size].reshape(n_frames, frame_size)
    crossings = np.sum(np.abs(np.diff(np.sign(frames), axis=1)) > 0, axis=1)
    zcr = crossings / float(frame_size)

    mean_zcr = float(np.mean(zcr))
    if mean_zcr == 0:
        return "low"

    cv = float(np.std(zcr)) / mean_zcr
    if cv >= _STABILITY_THRESHOLD_LOW:
        return "low"
    elif cv >= _STABILITY_THRESHOLD_MEDIUM:
        return "medium"
    return "high"


def _estimate_speech_naturalness(pcm: np.ndarray, sample_rate: int) -> str:
    """Flag pitch that repeats too regularly across 1 s windows."""
    window_size = sample_rate
    n_windows = len(pcm) // window_size
    if n_windows < 3:
        return "normal"

    search_start = max(1, sample_rate // 500)   # skip first 2 ms
    search_stop = sample_rate // 20             # up to 50 ms (20 Hz)

    peak_positions = []
    for i in range(min(n_windows, 10)):
        window = pcm[i * window_size : (i + 1) * window_size]
        spectrum = np.fft.rfft(window, n=2 * window_size)
        autocorr = np.fft.irfft(spectrum * np.conj(spectrum))[:window_size]
        if autocorr[0] <= 0:
            continue
        segment = autocorr[search_start:search_stop] / autocorr[0]
        if len(segment) < 3:
            continue
        peak_positions.append(int(np.argmax(segment)) + search_start)

    if len(peak_positions) < 3:
        return "normal"

    peaks = np.array(peak_positions, dtype=np.float64)
    mean_peak = float(np.mean(peaks))
    if mean_peak == 0:
        return "normal"

    regularity = 1.0 - float(np.std(peaks)) / mean_peak
    if regularity >= _NATURALNESS_REGULARITY_THRESHOLD:
        return "suspicious"
    return "normal"
