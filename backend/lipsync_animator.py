"""
Lip Sync Animation for ActorCore / Character Creator avatars
Turns timed phonemes or visemes into per-frame morph weights with smooth
transitions, emotional overlays and coarticulation, and eases the rig from its
current weights toward a target.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from emotional_lipsync import emotional_blend_shapes, modulate_viseme
from speech_processing import PHONEME_TO_VISEME, VISEME_NAMES, TimedViseme
from viseme_config import ACTORCORE_VISEME_MAPPINGS, VisemeMapping, mapping_weights, resolve_viseme_name

logger = logging.getLogger(__name__)

PhonemeSpan = Tuple[str, float, float]

# Primary mouth shapes that fight each other when blended
MOUTH_SHAPES = ['V_Explosive', 'V_Dental_Lip', 'V_Affricate', 'V_Tight-O', 'V_Wide']


@dataclass
class VisemeFrame:
    """A frame of viseme animation with multiple blend shapes"""
    timestamp: float
    blend_shapes: Dict[str, float]
    viseme: str = 'sil'
    confidence: float = 1.0

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'viseme': self.viseme,
            'blend_shapes': self.blend_shapes,
            'confidence': self.confidence,
        }


class VisemeTransitionType(Enum):
    """Types of transitions between visemes"""
    LINEAR = "linear"
    SMOOTH = "smooth"
    CUBIC = "cubic"
    ANTICIPATE = "anticipate"


TRANSITION_CURVES: Dict[VisemeTransitionType, Callable[[float], float]] = {
    VisemeTransitionType.LINEAR: lambda t: t,
    VisemeTransitionType.SMOOTH: lambda t: t * t * (3.0 - 2.0 * t),  # smoothstep
    VisemeTransitionType.CUBIC: lambda t: t * t * t * (t * (6.0 * t - 15.0) + 10.0),  # smootherstep
    VisemeTransitionType.ANTICIPATE: lambda t: 2.0 * t * t if t < 0.5 else 1.0 - 2.0 * (1.0 - t) * (1.0 - t),
}


def symbol_to_viseme(symbol: str) -> str:
    """Resolve a phoneme (any case, ARPAbet or simplified) or a viseme name to a viseme name"""
    index = PHONEME_TO_VISEME.get(str(symbol).lower())
    if index is not None:
        return VISEME_NAMES[index]
    return resolve_viseme_name(symbol)


def timeline_to_phonemes(timeline: List[TimedViseme]) -> List[PhonemeSpan]:
    """Convert a millisecond viseme timeline to (viseme, start_s, end_s) spans"""
    return [(step.name, step.timestamp_ms / 1000.0, step.end_ms / 1000.0) for step in timeline]


def interpolate_weights(weights1: Dict[str, float], weights2: Dict[str, float], progress: float) -> Dict[str, float]:
    result = {}
    for shape in set(weights1) | set(weights2):
        w1 = weights1.get(shape, 0.0)
        w2 = weights2.get(shape, 0.0)
        result[shape] = w1 * (1.0 - progress) + w2 * progress
    return result


class LipSyncMapper:
    """
    Maps phoneme sequences to morph weight frames.
    Frames are sampled at frame_rate; during the last transition_speed seconds
    of each phoneme the weights ease toward the next viseme.
    """

    def __init__(
            self,
            frame_rate: int = 60,
            transition_speed: float = 0.15,
            emotion_intensity: float = 0.5,
            mouth_exclusivity: float = 0.7,
            intensity: float = 1.0,
            mappings: Optional[Dict[str, VisemeMapping]] = None
    ):
        if frame_rate <= 0:
            raise ValueError(f"frame_rate must be positive, got {frame_rate}")
        self.frame_rate = frame_rate
        self.transition_speed = transition_speed
        self.emotion_intensity = emotion_intensity
        self.mouth_exclusivity = mouth_exclusivity
        self.intensity = intensity
        self.mappings = mappings if mappings is not None else ACTORCORE_VISEME_MAPPINGS

    def viseme_weights_for(self, symbol: str) -> Dict[str, float]:
        name = symbol_to_viseme(symbol)
        return mapping_weights(self.mappings.get(name, ACTORCORE_VISEME_MAPPINGS[name]), self.intensity)

    def _apply_emotion(self, blend_shapes: Dict[str, float], emotion: str,
                       intensity: Optional[float] = None) -> Dict[str, float]:
        if intensity is None:
            intensity = self.emotion_intensity
        for shape_name, weight in emotional_blend_shapes(emotion, intensity).items():
            blend_shapes[shape_name] = min(1.0, blend_shapes.get(shape_name, 0.0) + weight)
        return blend_shapes

    @staticmethod
    def modulate_weights(weights: Dict[str, float], symbol: str, emotion: str, intensity: float) -> Dict[str, float]:
        """Scale a viseme's morph weights by the emotion's energy, smile and openness factors"""
        if emotion == 'neutral' or intensity <= 0:
            return weights
        index = VISEME_NAMES.index(symbol_to_viseme(symbol))
        return {shape: modulate_viseme({index: weight}, emotion, intensity)[index] for shape, weight in weights.items()}

    def normalize_weights(self, weights: Dict[str, float]) -> Dict[str, float]:
        """Clamp to [0, 1] and let the dominant mouth shape suppress the others"""
        normalized = {shape: max(0.0, min(1.0, weight)) for shape, weight in weights.items()}

        mouth_weights = {shape: normalized[shape] for shape in MOUTH_SHAPES if shape in normalized}
        if mouth_weights and self.mouth_exclusivity > 0:
            max_shape = max(mouth_weights, key=lambda k: mouth_weights[k])
            max_weight = mouth_weights[max_shape]
            for shape in mouth_weights:
                if shape != max_shape:
                    normalized[shape] *= (1.0 - max_weight * self.mouth_exclusivity)

        return normalized

    @staticmethod
    def _span_index_at(phonemes: List[PhonemeSpan], time_s: float) -> Optional[int]:
        """Spans own [start, end); the final instant of the sequence belongs to the span ending there"""
        for i, (_, start, end) in enumerate(phonemes):
            if start <= time_s < end:
                return i

        last = max(range(len(phonemes)), key=lambda i: phonemes[i][2])
        _, start, end = phonemes[last]
        if start <= time_s and math.isclose(time_s, end, abs_tol=1e-9):
            return last
        return None

    def _frame_at(
            self,
            time_s: float,
            previous: Optional[PhonemeSpan],
            current: Optional[PhonemeSpan],
            following: Optional[PhonemeSpan],
            emotion: str,
            transition_type: VisemeTransitionType,
            emotion_intensity: float,
            coarticulate: bool
    ) -> VisemeFrame:
        if current is None:
            viseme = 'sil'
            blend_shapes = {}
        else:
            phoneme, start, end = current
            viseme = symbol_to_viseme(phoneme)
            if coarticulate:
                position = (time_s - start) / (end - start) if end > start else 0.0
                blend_shapes = self.coarticulation_weights(
                    previous[0] if previous else None, phoneme, following[0] if following else None, position)
            else:
                blend_shapes = self.viseme_weights_for(phoneme)
            blend_shapes = self.modulate_weights(blend_shapes, phoneme, emotion, emotion_intensity)

            if following is not None and time_s > (end - self.transition_speed) and self.transition_speed > 0:
                transition_start = end - self.transition_speed
                progress = max(0.0, min(1.0, (time_s - transition_start) / self.transition_speed))
                smooth_progress = TRANSITION_CURVES[transition_type](progress)
                target = self.modulate_weights(self.viseme_weights_for(following[0]), following[0], emotion,
                                               emotion_intensity)
                blend_shapes = interpolate_weights(blend_shapes, target, smooth_progress)

        blend_shapes = self._apply_emotion(blend_shapes, emotion, emotion_intensity)
        return VisemeFrame(timestamp=time_s, blend_shapes=self.normalize_weights(blend_shapes), viseme=viseme)

    def process_phoneme_sequence(
            self,
            phonemes: List[PhonemeSpan],
            emotion: str = 'neutral',
            transition_type: VisemeTransitionType = VisemeTransitionType.SMOOTH,
            emotion_intensity: Optional[float] = None,
            coarticulate: bool = False
    ) -> List[VisemeFrame]:
        """
        Process a sequence of phonemes into viseme animation frames

        Args:
            phonemes: List of (phoneme, start_time, end_time) tuples in seconds
            emotion: Emotional context; modulates the visemes and adds a facial overlay
            transition_type: Curve used between consecutive visemes
            emotion_intensity: Strength of the emotion, defaults to the mapper's
            coarticulate: Let neighbouring phonemes shape each viseme

        Returns:
            Frames from t=0 to the end of the last phoneme
        """
        if emotion_intensity is None:
            emotion_intensity = self.emotion_intensity
        if not phonemes:
            return [self.rest_frame(0.0, emotion, emotion_intensity)]

        for phoneme, start, end in phonemes:
            if end < start:
                raise ValueError(f"Phoneme '{phoneme}' ends before it starts ({start} > {end})")

        phonemes = sorted(phonemes, key=lambda span: span[1])
        total_duration = max(span[2] for span in phonemes)
        frame_count = int(total_duration * self.frame_rate) + 1

        frames = []
        for i in range(frame_count):
            time_s = i / self.frame_rate
            index = self._span_index_at(phonemes, time_s)
            if index is None:
                previous = current = following = None
            else:
                previous = phonemes[index - 1] if index > 0 else None
                current = phonemes[index]
                following = phonemes[index + 1] if index + 1 < len(phonemes) else None
            frames.append(self._frame_at(time_s, previous, current, following, emotion, transition_type,
                                         emotion_intensity, coarticulate))
        return frames

    def process_timeline(
            self,
            timeline: List[TimedViseme],
            emotion: str = 'neutral',
            transition_type: VisemeTransitionType = VisemeTransitionType.SMOOTH,
            emotion_intensity: Optional[float] = None,
            coarticulate: bool = False
    ) -> List[VisemeFrame]:
        return self.process_phoneme_sequence(timeline_to_phonemes(timeline), emotion, transition_type,
                                             emotion_intensity, coarticulate)

    def rest_frame(self, time_s: float = 0.0, emotion: str = 'neutral',
                   emotion_intensity: Optional[float] = None) -> VisemeFrame:
        return VisemeFrame(timestamp=time_s,
                           blend_shapes=self.normalize_weights(self._apply_emotion({}, emotion, emotion_intensity)))

    def instantaneous_weights(self, phoneme: str, emotion: str = 'neutral') -> Dict[str, float]:
        """Weights for a single phoneme or viseme, for real-time lip sync without pre-processing"""
        weights = self._apply_emotion(self.viseme_weights_for(phoneme), emotion)
        return self.normalize_weights(weights)

    def coarticulation_weights(
            self,
            prev_phoneme: Optional[str],
            current_phoneme: str,
            next_phoneme: Optional[str],
            position_in_phoneme: float = 0.5
    ) -> Dict[str, float]:
        """
        Weights for a phoneme shaped by its neighbours: the previous one lingers
        at the start, the next one is anticipated toward the end.
        """
        position = max(0.0, min(1.0, position_in_phoneme))
        weights = self.instantaneous_weights(current_phoneme)

        prev_influence = (1.0 - position) * 0.3
        if prev_phoneme and prev_influence > 0:
            weights = interpolate_weights(weights, self.instantaneous_weights(prev_phoneme), prev_influence)

        next_influence = position * 0.2
        if next_phoneme and next_influence > 0:
            weights = interpolate_weights(weights, self.instantaneous_weights(next_phoneme), next_influence)

        return self.normalize_weights(weights)


class MorphSmoother:
    """
    Eases current morph weights toward target weights, one lerp step per frame.
    Can run its own 60 FPS loop on a daemon thread.
    """

    def __init__(
            self,
            transition_speed: float = 0.15,
            on_frame: Optional[Callable[[Dict[str, float]], None]] = None,
            frame_rate: int = 60
    ):
        self.transition_speed = 0.15
        self.set_transition_speed(transition_speed)
        self.on_frame = on_frame
        self.frame_rate = frame_rate

        self.current_weights: Dict[str, float] = {}
        self.target_weights: Dict[str, float] = {}
        self._lock = threading.Lock()
        self.is_running = False
        self.animation_thread = None

    def set_transition_speed(self, speed: float):
        self.transition_speed = max(0.01, min(1.0, speed))
        logger.debug(f"Transition speed set to: {self.transition_speed}")

    def set_target(self, weights: Dict[str, float]):
        """Replace the target: every known morph goes to 0 unless named in weights"""
        with self._lock:
            self.target_weights = {shape: 0.0 for shape in set(self.target_weights) | set(self.current_weights)}
            self.target_weights.update(weights)

    def snap(self):
        with self._lock:
            self.current_weights = dict(self.target_weights)

    def step(self) -> bool:
        """Advance one frame; returns True if any weight changed"""
        changed = False
        with self._lock:
            for shape in set(self.current_weights) | set(self.target_weights):
                current = self.current_weights.get(shape, 0.0)
                target = self.target_weights.get(shape, 0.0)
                diff = target - current

                if abs(diff) > 0.001:
                    self.current_weights[shape] = current + diff * self.transition_speed
                    changed = True
                elif current != target:
                    self.current_weights[shape] = target
                    changed = True
            snapshot = dict(self.current_weights) if changed else None

        if snapshot is not None and self.on_frame is not None:
            self.on_frame(snapshot)
        return changed

    def get_current_weights(self) -> Dict[str, float]:
        with self._lock:
            return dict(self.current_weights)

    def start_animation_loop(self):
        if not self.is_running:
            self.is_running = True
            self.animation_thread = threading.Thread(target=self._animation_loop, daemon=True)
            self.animation_thread.start()

    def stop_animation_loop(self):
        self.is_running = False
        if self.animation_thread:
            self.animation_thread.join()
            self.animation_thread = None

    def _animation_loop(self):
        frame_time = 1.0 / self.frame_rate

        while self.is_running:
            start_time = time.time()
            try:
                self.step()
            except Exception as e:
                logger.error(f"Morph smoothing step failed: {e}")

            elapsed = time.time() - start_time
            time.sleep(max(0.0, frame_time - elapsed))
