import asyncio
import io
import logging
from dataclasses import dataclass
from typing import List

import librosa
import numpy as np

logger = logging.getLogger(__name__)

SILENCE_ENERGY = 1e-6


@dataclass
class VisemeData:
    viseme: str
    start_time: float
    end_time: float
    confidence: float = 1.0

    def to_dict(self):
        return {
            "viseme": str(self.viseme),
            "start_time": float(self.start_time),
            "end_time": float(self.end_time),
            "confidence": float(self.confidence),
        }


def load_audio(data: bytes, sample_rate=None):
    """Decode an encoded audio payload (WAV, FLAC, OGG) into mono float32 samples"""
    if not data:
        raise ValueError("Empty audio payload")
    audio, sr = librosa.load(io.BytesIO(data), sr=sample_rate, mono=True)
    return audio.astype(np.float32), sr


def offset_visemes(visemes: List[VisemeData], chunk_start_time: float) -> List[VisemeData]:
    """Shift chunk-relative visemes onto the global speech timeline"""
    return [
        VisemeData(
            viseme=v.viseme,
            start_time=v.start_time + chunk_start_time,
            end_time=v.end_time + chunk_start_time,
            confidence=v.confidence,
        )
        for v in visemes
    ]


class VisemeExtractor:
    """Extract visemes from synthesized speech chunks using spectral features"""

    def __init__(self):
        self.hop_length = 512
        self.segments_per_second = 2
        self.min_segments = 2
        self.max_segments = 5

    def extract_features(self, audio_chunk: np.ndarray, sample_rate: int) -> np.ndarray:
        """Extract MFCC features from audio chunk"""
        if audio_chunk.dtype != np.float32:
            audio_chunk = audio_chunk.astype(np.float32)

        if len(audio_chunk) == 0:
            return np.array([])

        return librosa.feature.mfcc(
            y=audio_chunk,
            sr=sample_rate,
            n_mfcc=13,
            hop_length=self.hop_length
        )

    def _spectral_profile(self, segment: np.ndarray, sample_rate: int):
        n_fft = min(2048, len(segment))
        hop_length = max(1, min(self.hop_length, n_fft // 4))
        centroid = librosa.feature.spectral_centroid(
            y=segment, sr=sample_rate, n_fft=n_fft, hop_length=hop_length
        )
        zcr = librosa.feature.zero_crossing_rate(
            segment, frame_length=n_fft, hop_length=hop_length
        )
        avg_centroid = float(np.mean(centroid)) if centroid.size > 0 else 0.0
        avg_zcr = float(np.mean(zcr)) if zcr.size > 0 else 0.0
        return avg_centroid, avg_zcr

    def analyze_segment_for_viseme(self, segment: np.ndarray, sample_rate: int) -> str:
        """Classify a segment into one of the 15 viseme indices"""
        if len(segment) == 0:
            return '0'

        segment = segment.astype(np.float32)
        energy = float(np.mean(segment ** 2))
        if energy < SILENCE_ENERGY:
            return '0'

        avg_centroid, avg_zcr = self._spectral_profile(segment, sample_rate)

        # High frequency noise: fricatives and sibilants
        if avg_centroid > 3500:
            return '7' if avg_zcr > 0.2 else '6'
        elif avg_centroid > 2500:
            if avg_zcr > 0.15:
                return '2'  # Labiodental
            return '3' if avg_zcr > 0.1 else '4'
        elif avg_centroid > 1500:
            if avg_zcr > 0.1:
                return '5'  # Velar stop
            return '11' if energy > 0.01 else '12'
        elif avg_centroid > 800:
            if energy > 0.01:
                return '10'  # Open vowel
            return '1' if avg_zcr < 0.05 else '9'
        else:
            if avg_zcr < 0.05:
                return '14' if energy < 0.005 else '13'
            return '8'  # Nasal

    def extract_visemes_from_chunk(
            self,
            audio_chunk: np.ndarray,
            sample_rate: int
    ) -> List[VisemeData]:
        """Extract a handful of visemes from a single audio chunk"""
        if sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {sample_rate}")

        chunk_duration = len(audio_chunk) / sample_rate

        if len(audio_chunk) == 0 or float(np.mean(audio_chunk.astype(np.float32) ** 2)) < SILENCE_ENERGY:
            return [VisemeData(viseme='0', start_time=0.0, end_time=chunk_duration)]

        num_segments = min(self.max_segments,
                           max(self.min_segments, int(chunk_duration * self.segments_per_second)))
        segment_duration = chunk_duration / num_segments

        visemes = []
        for i in range(num_segments):
            start_idx = int((i / num_segments) * len(audio_chunk))
            end_idx = int(((i + 1) / num_segments) * len(audio_chunk))
            segment = audio_chunk[start_idx:end_idx]

            visemes.append(VisemeData(
                viseme=self.analyze_segment_for_viseme(segment, sample_rate),
                start_time=i * segment_duration,
                end_time=(i + 1) * segment_duration,
                confidence=0.8
            ))

        logger.debug(f"Extracted {len(visemes)} visemes from {chunk_duration:.3f}s chunk")
        return visemes

    async def extract_visemes_async(
            self,
            audio_chunk: np.ndarray,
            sample_rate: int
    ) -> List[VisemeData]:
        """Async version for non-blocking extraction"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self.extract_visemes_from_chunk,
            audio_chunk,
            sample_rate
        )

    def extract_visemes(self, audio: np.ndarray, sample_rate: int, chunk_seconds: float = 0.5) -> List[VisemeData]:
        """Split a full utterance into chunks and extract visemes onto one timeline"""
        chunk_size = max(1, int(chunk_seconds * sample_rate))
        visemes = []
        for start in range(0, len(audio), chunk_size):
            chunk = audio[start:start + chunk_size]
            visemes.extend(offset_visemes(
                self.extract_visemes_from_chunk(chunk, sample_rate),
                start / sample_rate
            ))
        return visemes
