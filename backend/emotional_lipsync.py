"""
Emotional context for lip sync: a keyword-based read of the bartender's reply
and the facial overlays / viseme modulation each emotion implies.
"""

import logging
from typing import Dict

logger = logging.getLogger(__name__)

EMOTIONAL_KEYWORDS = {
    'happy': ['great', 'wonderful', 'amazing', 'fantastic', 'excellent', 'love', 'perfect', 'awesome', 'cheers'],
    'sad': ['sorry', 'unfortunately', 'sadly', 'disappointed', 'trouble', 'problem', 'difficult'],
    'excited': ['wow', 'incredible', 'unbelievable', 'spectacular', 'outstanding', 'brilliant'],
    'calm': ['certainly', 'indeed', 'precisely', 'specifically', 'naturally', 'obviously'],
    'surprised': ['really', 'seriously', 'actually', 'honestly', 'truly', 'remarkable'],
    'angry': ['angry', 'mad', 'frustrated', 'annoying', 'ridiculous', 'stupid'],
}

EMOTIONS = ['neutral'] + list(EMOTIONAL_KEYWORDS)

EMOTION_MODIFIERS = {
    'happy': {'smile_boost': 1.3, 'energy_multiplier': 1.2, 'mouth_openness': 1.1},
    'sad': {'smile_boost': 0.7, 'energy_multiplier': 0.8, 'mouth_openness': 0.9},
    'excited': {'smile_boost': 1.4, 'energy_multiplier': 1.5, 'mouth_openness': 1.3},
    'calm': {'smile_boost': 1.0, 'energy_multiplier': 0.9, 'mouth_openness': 1.0},
    'surprised': {'smile_boost': 1.1, 'energy_multiplier': 1.3, 'mouth_openness': 1.4},
    'angry': {'smile_boost': 0.6, 'energy_multiplier': 1.2, 'mouth_openness': 0.9},
}

# Viseme indices (see speech_processing.VISEME_NAMES)
SMILE_VISEMES = {11, 13}
OPEN_VISEMES = {10, 11, 12, 13, 14}

_EXPRESSIONS = {
    'happy': {
        'Mouth_Smile_L': 0.6, 'Mouth_Smile_R': 0.6,
        'Eye_Smile_L': 0.4, 'Eye_Smile_R': 0.4,
        'Cheek_Raise_L': 0.3, 'Cheek_Raise_R': 0.3,
    },
    'sad': {
        'Mouth_Frown_L': 0.5, 'Mouth_Frown_R': 0.5,
        'Mouth_Down': 0.4,
        'Eye_Droop_L': 0.3, 'Eye_Droop_R': 0.3,
        'Brow_Down_L': 0.2, 'Brow_Down_R': 0.2,
    },
    'excited': {
        'Mouth_Smile_L': 0.8, 'Mouth_Smile_R': 0.8,
        'Eye_Wide_L': 0.5, 'Eye_Wide_R': 0.5,
        'Brow_Up_L': 0.4, 'Brow_Up_R': 0.4,
        'Cheek_Raise_L': 0.6, 'Cheek_Raise_R': 0.6,
    },
    'surprised': {
        'Mouth_Drop_Lower': 0.7,
        'Eye_Wide_L': 0.8, 'Eye_Wide_R': 0.8,
        'Brow_Up_L': 0.9, 'Brow_Up_R': 0.9,
        'Open_Jaw': 0.3,
    },
    'angry': {
        'Brow_Drop_L': 0.5, 'Brow_Drop_R': 0.5,
        'Mouth_Frown_L': 0.3, 'Mouth_Frown_R': 0.3,
        'Eye_Squint_L': 0.3, 'Eye_Squint_R': 0.3,
    },
}

# Calm is a fixed neutral pose, not scaled by intensity
_CALM = {'Mouth_Neutral': 1.0, 'Eye_Neutral': 1.0}


def analyze_emotional_content(text: str) -> Dict:
    """
    Score each emotion by how many of its keywords occur in the text.
    Ties resolve to the emotion listed last.
    """
    words = (text or '').lower().split()
    scores = {}
    for emotion, keywords in EMOTIONAL_KEYWORDS.items():
        scores[emotion] = sum(1 for keyword in keywords if any(keyword in word for word in words))

    dominant = max(reversed(list(scores)), key=lambda e: scores[e])
    if scores[dominant] == 0:
        return {'emotion': 'neutral', 'intensity': 0.0, 'scores': scores}

    return {
        'emotion': dominant,
        'intensity': min(scores[dominant] / 3, 1.0),
        'scores': scores,
    }


def detect_emotion(text: str) -> str:
    return analyze_emotional_content(text)['emotion']


def modulate_viseme(viseme: Dict[int, float], emotion: str, intensity: float = 1.0) -> Dict[int, float]:
    """Scale {viseme_index: weight} by the emotion's energy, smile and openness factors"""
    modifier = EMOTION_MODIFIERS.get(emotion, EMOTION_MODIFIERS['calm'])
    modulated = {}

    for key, current in viseme.items():
        index = int(key)
        value = current * modifier['energy_multiplier']
        if index in SMILE_VISEMES:
            value *= modifier['smile_boost']
        if index in OPEN_VISEMES:
            value *= modifier['mouth_openness']

        value = current + (value - current) * intensity
        modulated[key] = max(0.0, min(1.0, value))

    return modulated


def emotional_blend_shapes(emotion: str, intensity: float = 1.0) -> Dict[str, float]:
    """Facial overlay for an emotion; neutral has none, unknown emotions fall back to calm"""
    if emotion == 'neutral':
        return {}
    expression = _EXPRESSIONS.get(emotion)
    if expression is None:
        return dict(_CALM)
    return {shape: weight * intensity for shape, weight in expression.items()}
