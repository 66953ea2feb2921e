"""
Viseme to morph target tables for Character Creator / ActorCore avatars.
Weights were calibrated against the Savannah GLB export; the morph names are
the CC4 blend shape names as they appear in the file.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from speech_processing import VISEME_NAMES


@dataclass
class VisemeMapping:
    morphs: List[str] = field(default_factory=list)
    weights: List[float] = field(default_factory=list)
    intensity: float = 1.0
    description: str = ''

    def __post_init__(self):
        if len(self.weights) < len(self.morphs):
            self.weights = list(self.weights) + [1.0] * (len(self.morphs) - len(self.weights))

    def to_dict(self) -> Dict:
        return {
            'morphs': list(self.morphs),
            'weights': list(self.weights),
            'intensity': self.intensity,
            'description': self.description,
        }


ACTORCORE_VISEME_MAPPINGS: Dict[str, VisemeMapping] = {
    'sil': VisemeMapping([], [], 0.0, 'Silence/Neutral'),

    # Consonants
    'PP': VisemeMapping(
        ['V_Explosive', 'V_Lip_Open', 'Mouth_Press_L', 'Mouth_Press_R'],
        [1.0, 0.3, 0.6, 0.6], 0.9, 'Bilabial /p/, /b/, /m/'),
    'FF': VisemeMapping(
        ['V_Dental_Lip', 'V_Open', 'Mouth_Press_L'],
        [1.0, 0.4, 0.5], 0.85, 'Labiodental /f/, /v/'),
    'TH': VisemeMapping(
        ['V_Tongue_Out', 'V_Dental_Lip', 'V_Open', 'V_Tight'],
        [0.8, 0.7, 0.5, 0.3], 0.8, 'Dental /θ/, /ð/'),
    'DD': VisemeMapping(
        ['Tongue_Up', 'V_Dental_Lip', 'V_Open', 'V_Lip_Open'],
        [0.9, 0.6, 0.5, 0.4], 0.75, 'Alveolar /t/, /d/, /n/, /l/'),
    'kk': VisemeMapping(
        ['V_Tongue_up', 'V_Open', 'Tongue_Wide', 'V_Tight', 'Jaw_Open'],
        [1.0, 0.6, 0.7, 0.4, 0.3], 0.8, 'Velar /k/, /g/'),
    'CH': VisemeMapping(
        ['V_Affricate', 'V_Open', 'V_Tight-O', 'Tongue_Up'],
        [1.0, 0.5, 0.6, 0.7], 0.85, 'Postalveolar /tʃ/, /dʒ/, /ʃ/, /ʒ/'),
    'SS': VisemeMapping(
        ['V_Wide', 'V_Open', 'V_Tongue_Narrow', 'V_Tight', 'Jaw_Open'],
        [0.9, 0.6, 0.8, 0.7, 0.4], 0.9, 'Fricative /s/, /z/'),
    'nn': VisemeMapping(
        ['Tongue_Tip_Up', 'V_Open', 'V_Lip_Open', 'V_Tongue_Narrow'],
        [1.0, 0.3, 0.5, 0.6], 0.7, 'Nasal /n/, /ŋ/'),
    'RR': VisemeMapping(
        ['V_Tongue_Curl-U', 'V_Tight-O', 'V_Open', 'Tongue_Roll'],
        [0.8, 0.5, 0.4, 0.9], 0.75, 'Rhotic /r/'),

    # Vowels
    'aa': VisemeMapping(
        ['V_Open', 'Jaw_Open', 'Tongue_Down', 'V_Lip_Open'],
        [1.0, 1.0, 0.7, 0.6], 1.0, 'Open vowel /ɑ/, /æ/'),
    'E': VisemeMapping(
        ['V_Wide', 'V_Open', 'V_Lip_Open', 'Tongue_Tip_Down', 'Jaw_Open'],
        [0.8, 0.7, 0.6, 0.5, 0.5], 0.85, 'Mid vowel /ɛ/'),
    'I': VisemeMapping(
        ['V_Wide', 'V_Tight', 'Tongue_Up', 'V_Lip_Open'],
        [0.9, 0.6, 0.7, 0.5], 0.8, 'High vowel /ɪ/'),
    'O': VisemeMapping(
        ['V_Tight-O', 'V_Open', 'Jaw_Open', 'Mouth_Pucker'],
        [0.8, 0.8, 0.7, 0.5], 0.9, 'Mid-back vowel /oʊ/'),
    'U': VisemeMapping(
        ['V_Tight-O', 'V_Open', 'Tongue_Up', 'Mouth_Pucker', 'Jaw_Open'],
        [0.9, 0.6, 0.5, 0.8, 0.4], 0.85, 'High-back vowel /u/'),
}

FACIAL_EXPRESSIONS: Dict[str, VisemeMapping] = {
    'smile': VisemeMapping(['Mouth_Smile_L', 'Mouth_Smile_R', 'Cheek_Raise_L', 'Cheek_Raise_R'], [], 0.8),
    'frown': VisemeMapping(['Mouth_Frown_L', 'Mouth_Frown_R', 'Brow_Drop_L', 'Brow_Drop_R'], [], 0.7),
    'surprise': VisemeMapping(
        ['Brow_Raise_Inner_L', 'Brow_Raise_Inner_R', 'Eye_Wide_L', 'Eye_Wide_R', 'Jaw_Open'], [], 0.9),
    'squint': VisemeMapping(['Eye_Squint_L', 'Eye_Squint_R', 'Cheek_Raise_L', 'Cheek_Raise_R'], [], 0.6),
    'puff': VisemeMapping(['Cheek_Puff_L', 'Cheek_Puff_R', 'Mouth_Close'], [], 0.8),
}

_LOOKUP = {name.lower(): name for name in ACTORCORE_VISEME_MAPPINGS}


def resolve_viseme_name(viseme) -> str:
    """Accept a viseme index, an index string, or a name in any case"""
    if isinstance(viseme, int) or (isinstance(viseme, str) and viseme.isdigit()):
        index = int(viseme)
        return VISEME_NAMES[index] if 0 <= index < len(VISEME_NAMES) else 'sil'
    return _LOOKUP.get(str(viseme).lower(), 'sil')


def get_viseme_config(viseme) -> VisemeMapping:
    return ACTORCORE_VISEME_MAPPINGS[resolve_viseme_name(viseme)]


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def mapping_weights(config: VisemeMapping, intensity: float = 1.0, global_multiplier: float = 1.0) -> Dict[str, float]:
    scale = config.intensity * intensity * global_multiplier
    return {morph: _clamp(weight * scale) for morph, weight in zip(config.morphs, config.weights)}


def viseme_weights(viseme, intensity: float = 1.0, global_multiplier: float = 1.0) -> Dict[str, float]:
    """Morph weights for a viseme, scaled by its calibrated intensity"""
    return mapping_weights(get_viseme_config(viseme), intensity, global_multiplier)


def expression_weights(expression: str, intensity: float = 1.0) -> Dict[str, float]:
    config = FACIAL_EXPRESSIONS.get(expression.lower())
    if config is None:
        raise ValueError(f"Unknown facial expression: {expression}")
    return {morph: _clamp(w * config.intensity * intensity) for morph, w in zip(config.morphs, config.weights)}


def blend_visemes(viseme1, viseme2, blend_factor: float) -> Dict[str, float]:
    """blend_factor: 0 = fully viseme1, 1 = fully viseme2"""
    blend_factor = _clamp(blend_factor)
    result: Dict[str, float] = {}

    for morph, weight in viseme_weights(viseme1).items():
        result[morph] = result.get(morph, 0.0) + weight * (1.0 - blend_factor)
    for morph, weight in viseme_weights(viseme2).items():
        result[morph] = result.get(morph, 0.0) + weight * blend_factor

    return {morph: _clamp(weight) for morph, weight in result.items()}


def analyze_morph_targets(morph_names: List[str]) -> Dict:
    analysis = {
        'total_morphs': len(morph_names),
        'viseme_specific_morphs': [],
        'tongue_morphs': [],
        'jaw_morphs': [],
        'mouth_morphs': [],
    }

    for name in morph_names:
        if name.startswith('V_'):
            analysis['viseme_specific_morphs'].append(name)
        if 'Tongue' in name:
            analysis['tongue_morphs'].append(name)
        if 'Jaw' in name:
            analysis['jaw_morphs'].append(name)
        if 'Mouth' in name:
            analysis['mouth_morphs'].append(name)

    return analysis


def missing_morphs(morph_names: List[str]) -> Dict[str, List[str]]:
    """Mapped morphs per viseme that a rig does not provide"""
    available = set(morph_names)
    missing = {}
    for viseme, config in ACTORCORE_VISEME_MAPPINGS.items():
        absent = [m for m in config.morphs if m not in available]
        if absent:
            missing[viseme] = absent
    return missing
