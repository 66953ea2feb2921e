"""
Speech processing utilities for the bartender avatar.
Turns reply text into phonemes, phonemes into viseme indices, and lays the
visemes out on a timeline that a renderer (or the avatar controller) can play.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Viseme index -> name, following the 15-shape Oculus/Reallusion ordering
VISEME_NAMES = ['sil', 'PP', 'FF', 'TH', 'DD', 'kk', 'CH', 'SS', 'nn', 'RR', 'aa', 'E', 'I', 'O', 'U']

SILENCE = {0: 1.0}

PHONEME_TO_VISEME = {
    # Silence
    'sil': 0, 'pau': 0, 'sp': 0,

    # Bilabials - lips pressed together
    'p': 1, 'b': 1, 'm': 1,

    # Labiodentals - lower lip to upper teeth
    'f': 2, 'v': 2,

    # Dental fricatives - tongue between teeth
    'th': 3, 'dh': 3,

    # Alveolars - tongue to alveolar ridge
    't': 4, 'd': 4, 'n': 4, 'l': 4,

    # Velars
    'k': 5, 'g': 5,

    # Post-alveolars
    'ch': 6, 'jh': 6, 'sh': 6, 'zh': 6,

    # Sibilants
    's': 7, 'z': 7,

    # Velar nasal
    'ng': 8,

    # Liquids
    'r': 9, 'er': 9,

    # Open vowels
    'aa': 10, 'ae': 10, 'ah': 10, 'ao': 10, 'aw': 10, 'ay': 10, 'ax': 10,

    # Front vowels
    'eh': 11, 'ey': 11,

    # Close front vowels
    'ih': 12, 'iy': 12, 'ix': 12, 'y': 12,

    # Back vowels
    'oh': 13, 'ow': 13, 'oy': 13,

    # Close back vowels
    'uh': 14, 'uw': 14, 'w': 14,

    'h': 0, 'hh': 0,
}

# Longest patterns first; a grapheme may expand to more than one phoneme
_DIGRAPHS = {
    'ch': ['ch'], 'sh': ['sh'], 'th': ['th'], 'ng': ['ng'], 'ph': ['f'],
    'ee': ['iy'], 'ea': ['iy'],
    'oo': ['uw'],
    'ou': ['ow'], 'ow': ['ow'],
    'ai': ['ay'], 'ay': ['ay'],
    'oi': ['oy'], 'oy': ['oy'],
    'au': ['aw'], 'aw': ['aw'],
}

_LETTERS = {
    'a': ['aa'], 'e': ['eh'], 'i': ['ih'], 'o': ['oh'], 'u': ['uh'],
    'c': ['k'], 'q': ['k'], 'j': ['jh'], 'x': ['k', 's'],
}
for _consonant in 'pbmfvtdnlszkgrwyh':
    _LETTERS[_consonant] = [_consonant]

_PUNCTUATION = re.compile(r'[^\w\s]')


@dataclass
class TimedViseme:
    """A viseme placed on the speech timeline (milliseconds)"""
    viseme: int
    timestamp_ms: float
    duration_ms: float
    intensity: float = 1.0
    phoneme: str = ''
    word: Optional[str] = None

    @property
    def end_ms(self) -> float:
        return self.timestamp_ms + self.duration_ms

    @property
    def name(self) -> str:
        return VISEME_NAMES[self.viseme]

    @property
    def weights(self) -> Dict[int, float]:
        return {self.viseme: self.intensity}

    def to_dict(self) -> Dict:
        return {
            'viseme': self.viseme,
            'name': self.name,
            'timestamp_ms': self.timestamp_ms,
            'duration_ms': self.duration_ms,
            'intensity': self.intensity,
            'phoneme': self.phoneme,
            'word': self.word,
        }


def phoneme_to_viseme(phoneme: str) -> int:
    return PHONEME_TO_VISEME.get(phoneme.lower(), 0)


def word_to_phonemes(word: str) -> List[str]:
    """Greedy longest-match grapheme tokenizer for a single lowercase word"""
    phonemes = []
    i = 0
    while i < len(word):
        pair = word[i:i + 2]
        if len(pair) == 2 and pair in _DIGRAPHS:
            phonemes.extend(_DIGRAPHS[pair])
            i += 2
            continue
        phonemes.extend(_LETTERS.get(word[i], []))
        i += 1
    return phonemes


def text_to_phonemes(text) -> List[str]:
    """
    Convert text to an approximate phoneme sequence.
    Words are separated by a 'pau' phoneme; words that produce no phonemes
    (numbers, stray symbols) are dropped.
    """
    if not text or not isinstance(text, str):
        return []

    processed = _PUNCTUATION.sub(' ', text.lower())
    phonemes = []

    for word in processed.split():
        word_phonemes = word_to_phonemes(word)
        if not word_phonemes:
            continue
        if phonemes:
            phonemes.append('pau')
        phonemes.extend(word_phonemes)

    return phonemes


def phonemes_to_visemes(phonemes) -> List[Dict[int, float]]:
    if not isinstance(phonemes, (list, tuple)):
        return []
    return [{phoneme_to_viseme(p): 1.0} for p in phonemes]


def text_to_visemes(text: str, duration_ms: float = 200, intensity: float = 1.0) -> List[TimedViseme]:
    """Convert text directly to evenly spaced visemes"""
    return [
        TimedViseme(
            viseme=phoneme_to_viseme(phoneme),
            timestamp_ms=index * duration_ms,
            duration_ms=duration_ms,
            intensity=intensity,
            phoneme=phoneme,
        )
        for index, phoneme in enumerate(text_to_phonemes(text))
    ]


def speech_rate_duration(rate: float) -> float:
    """Per-viseme duration in ms for a speech synthesis rate (1.0 = normal)"""
    if rate <= 0:
        raise ValueError(f"Speech rate must be positive, got {rate}")
    return 60000 / (rate * 200)


def create_viseme_animation(
        text: str,
        words_per_minute: int = 150,
        pause_ms: float = 300,
        intensity: float = 1.0
) -> List[TimedViseme]:
    """
    Build a contiguous animation timeline from text.

    Each viseme of a word lasts (60000 / words_per_minute) / len(word) ms,
    so spelling rather than pronunciation sets the pace. Consecutive words
    are separated by a silent pause.
    """
    if words_per_minute <= 0:
        raise ValueError(f"words_per_minute must be positive, got {words_per_minute}")
    if not text or not isinstance(text, str):
        return []

    ms_per_word = 60000 / words_per_minute
    animation = []
    current_time = 0.0

    for word in text.split():
        word_phonemes = text_to_phonemes(word)
        if not word_phonemes:
            continue

        if animation:
            animation.append(TimedViseme(
                viseme=0,
                timestamp_ms=current_time,
                duration_ms=pause_ms,
                intensity=1.0,
                phoneme='pau',
            ))
            current_time += pause_ms

        duration = ms_per_word / len(word)
        for phoneme in word_phonemes:
            animation.append(TimedViseme(
                viseme=phoneme_to_viseme(phoneme),
                timestamp_ms=current_time,
                duration_ms=duration,
                intensity=intensity,
                phoneme=phoneme,
                word=word,
            ))
            current_time += duration

    return animation


def animation_duration_ms(animation: List[TimedViseme]) -> float:
    return animation[-1].end_ms if animation else 0.0


class VisemePlayer:
    """
    Plays a viseme timeline against a monotonic clock.
    The callback receives {viseme_index: weight} whenever the active step changes,
    and silence once playback finishes or is stopped.
    """

    def __init__(
            self,
            animation: List[TimedViseme],
            on_update: Callable[[Dict[int, float]], None],
            clock: Callable[[], float] = time.monotonic,
            frame_interval: float = 1.0 / 60.0
    ):
        self.animation = animation
        self.on_update = on_update
        self.clock = clock
        self.frame_interval = frame_interval

        self.current_index = 0
        self.is_playing = False
        self.is_finished = False
        self._start_time = 0.0
        self._last_emitted = None
        self._resumed = asyncio.Event()

    def _elapsed_ms(self) -> float:
        return (self.clock() - self._start_time) * 1000.0

    def viseme_at(self, elapsed_ms: float) -> Optional[TimedViseme]:
        """Advance past finished steps and return the step active at elapsed_ms"""
        while self.current_index < len(self.animation):
            current = self.animation[self.current_index]
            if current.timestamp_ms <= elapsed_ms < current.end_ms:
                return current
            if elapsed_ms >= current.end_ms:
                self.current_index += 1
            else:
                break
        return None

    def tick(self) -> bool:
        """Process one frame; returns False once the animation is complete"""
        step = self.viseme_at(self._elapsed_ms())
        if step is not None and step is not self._last_emitted:
            self._last_emitted = step
            self.on_update(step.weights)

        if self.current_index >= len(self.animation):
            self._finish()
            return False
        return True

    def _finish(self):
        if not self.is_finished:
            self.is_finished = True
            self.is_playing = False
            self.on_update(dict(SILENCE))

    async def play(self):
        if not self.animation:
            self._finish()
            return

        self._start_time = self.clock()
        self.is_playing = True
        self._resumed.set()

        while not self.is_finished:
            await self._resumed.wait()
            if self.is_finished or not self.tick():
                break
            await asyncio.sleep(self.frame_interval)

        logger.debug(f"Viseme playback finished at step {self.current_index}/{len(self.animation)}")

    def pause(self):
        self.is_playing = False
        self._resumed.clear()

    def resume(self):
        if self.is_playing or self.is_finished:
            return
        if self.current_index < len(self.animation):
            offset = self.animation[self.current_index].timestamp_ms / 1000.0
        else:
            offset = 0.0
        self._start_time = self.clock() - offset
        self.is_playing = True
        self._resumed.set()

    def stop(self):
        self.current_index = len(self.animation)
        self._finish()
        self._resumed.set()
