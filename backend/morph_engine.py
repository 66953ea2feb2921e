"""
Morph recommendation engine.

Reads free-text tuning advice (for example the output of a vision model
reviewing a viseme screenshot), extracts morph-level instructions such as
"Increase V_Explosive from 0.8 to 0.95" and applies them to the rig and to
the viseme mapping being tuned. Morph names in the advice are matched
fuzzily against the names the rig really has.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from morph_rig import MorphRig
from viseme_config import VisemeMapping, resolve_viseme_name

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6

_NUMBER = re.compile(r'\d+(?:\.\d+)?|\.\d+')

INSTRUCTION_PATTERNS = [
    # "Increase V_Explosive from 0.8 to 0.95 (+0.15)"
    re.compile(r'(?:increase|decrease|set|adjust)\s+([A-Z][A-Za-z_]+)\s+from\s+([\d.]+)\s+to\s+([\d.]+)(?:\s*\([^)]+\))?',
               re.IGNORECASE),
    # "Add Jaw_Up at 0.3 intensity"
    re.compile(r'(?:add|introduce|implement)\s+([A-Z][A-Za-z_]+)(?:\s+morph)?\s+at\s+([\d.]+)(?:\s+intensity)?',
               re.IGNORECASE),
    # "Remove Mouth_Stretch"
    re.compile(r'(?:remove|eliminate|reduce)\s+([A-Z][A-Za-z_]+)', re.IGNORECASE),
    # "V_Explosive: 0.95"
    re.compile(r'(?:^|[^a-z])(V_[A-Za-z_-]+|[A-Z][a-z_]+[A-Z][A-Za-z_]*)\s*[:\s]+\s*([\d.]+)',
               re.IGNORECASE | re.MULTILINE),
    # "- Primary V_Explosive: 0.85"
    re.compile(r'-\s*(?:primary|secondary|tertiary)?\s*(V_[A-Za-z_-]+|[A-Z][A-Za-z_]+):\s*([\d.]+)', re.IGNORECASE),
]

NON_MORPH_WORDS = {
    'at', 'to', 'from', 'with', 'by', 'for', 'in', 'on', 'of', 'the', 'and', 'or',
    'approximately', 'compression', 'intensity', 'morph', 'value', 'adjustment',
    'target', 'current', 'position', 'angle', 'degree', 'percentage', 'ratio',
    'adjustments', 'analysis', 'score', 'primary', 'secondary', 'reduce',
}

RECOMMENDATION_FIELDS = ('recommendations', 'issues', 'observations', 'aiRawResponse', 'rawResponse')

_PREFIXES = ('V_', 'Mouth_', 'Jaw_', 'Tongue_')

VISEME_KEYWORDS = {
    'PP': ['explosive', 'bilabial', 'close', 'press', 'pucker'],
    'FF': ['dental', 'lip', 'labiodental', 'bite'],
    'TH': ['tongue', 'dental', 'tip', 'out'],
    'DD': ['tongue', 'alveolar', 'up', 'tip'],
    'kk': ['velar', 'back', 'open', 'jaw'],
    'CH': ['affricate', 'fricative', 'sibilant'],
    'SS': ['sibilant', 'tight', 'smile', 'narrow'],
    'nn': ['nasal', 'tongue', 'up', 'close'],
    'RR': ['rhotic', 'curl', 'tongue', 'retroflex'],
    'aa': ['open', 'wide', 'jaw', 'low'],
    'E': ['mid', 'wide', 'spread'],
    'I': ['high', 'front', 'wide', 'smile'],
    'O': ['mid', 'back', 'round', 'o'],
    'U': ['high', 'back', 'round', 'tight', 'pucker'],
}


@dataclass
class MorphInstruction:
    original: str
    morph_name: str
    value: Optional[float]
    target_value: Optional[float]
    action: str
    pattern_index: int


@dataclass
class MorphChange:
    type: str  # 'specific_morph' or 'intensity_adjustment'
    description: str
    morph_name: Optional[str] = None
    value: float = 0.0
    action: Optional[str] = None
    adjustment: float = 0.0

    def to_dict(self) -> Dict:
        return {
            'type': self.type,
            'description': self.description,
            'morph_name': self.morph_name,
            'value': self.value,
            'action': self.action,
            'adjustment': self.adjustment,
        }


@dataclass
class ApplyResult:
    results: List[Dict] = field(default_factory=list)
    new_mapping: Optional[VisemeMapping] = None
    applied_count: int = 0
    summary: str = ''


def _parse_number(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _NUMBER.match(text)
    return float(match.group(0)) if match else None


def clean_morph_name(name: str) -> str:
    name = re.sub(r'\s+', '_', name)
    name = re.sub(r'[^A-Za-z0-9_]', '', name)
    name = re.sub(r'_+', '_', name)
    return name.strip('_').strip()


def determine_action(text: str) -> str:
    lower = text.lower()
    if 'increase' in lower:
        return 'increase'
    if 'decrease' in lower or 'reduce' in lower:
        return 'decrease'
    if 'add' in lower or 'introduce' in lower or 'implement' in lower:
        return 'add'
    if 'remove' in lower or 'eliminate' in lower:
        return 'remove'
    return 'set'


def similarity(a: str, b: str) -> float:
    """1 - normalized Levenshtein distance"""
    if not a and not b:
        return 1.0
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return 1.0 - previous[-1] / max(len(a), len(b))


def recommendation_text(data) -> str:
    """Flatten a recommendation payload (str, list, or dict of fields) into one string"""
    if isinstance(data, str):
        return data
    if isinstance(data, (list, tuple)):
        return ' '.join(str(item) for item in data)
    if isinstance(data, dict):
        parts = []
        for key in RECOMMENDATION_FIELDS:
            source = data.get(key)
            if not source:
                continue
            parts.append(' '.join(str(s) for s in source) if isinstance(source, (list, tuple)) else str(source))
        return ' '.join(parts)
    return ''


class MorphEngine:
    """Fuzzy morph lookup and recommendation application for one rig"""

    def __init__(self, rig: MorphRig):
        self.rig = rig
        self.name_cache: Dict[str, str] = {}
        self.build_name_cache()

    def build_name_cache(self):
        self.name_cache.clear()
        for name in self.rig.morph_names():
            variations = [
                name,
                name.lower(),
                name.replace('_', ''),
                re.sub(r'([A-Z])', r'_\1', name).lower(),
            ]
            variations.extend(name[len(prefix):] for prefix in _PREFIXES if name.startswith(prefix))

            for variation in variations:
                if variation and variation not in self.name_cache:
                    self.name_cache[variation] = name

        logger.info(f"Morph cache built: {len(self.name_cache)} name variations")

    def find_morph(self, morph_name: str) -> Optional[str]:
        if not morph_name:
            return None

        exact = self.name_cache.get(morph_name)
        if exact:
            return exact

        lower = morph_name.lower()
        if lower in self.name_cache:
            return self.name_cache[lower]

        for key, name in self.name_cache.items():
            if lower in key or key in lower:
                return name

        best_key, best_score = None, 0.0
        for key in self.name_cache:
            score = similarity(lower, key.lower())
            if score > best_score:
                best_key, best_score = key, score

        if best_key is not None and best_score > SIMILARITY_THRESHOLD:
            return self.name_cache[best_key]
        return None

    def extract_instructions(self, text: str) -> List[MorphInstruction]:
        instructions = []

        for pattern_index, pattern in enumerate(INSTRUCTION_PATTERNS):
            for match in pattern.finditer(text):
                morph_name = (match.group(1) or '').strip()
                value = _parse_number(match.group(2)) if pattern.groups >= 2 else None
                target_value = _parse_number(match.group(3)) if pattern.groups >= 3 else None

                if len(morph_name) < 2:
                    continue
                if pattern.groups >= 2 and value is None:
                    continue
                if value is not None and not 0 <= value <= 2:
                    continue
                if morph_name.lower() in NON_MORPH_WORDS:
                    continue

                instructions.append(MorphInstruction(
                    original=match.group(0),
                    morph_name=clean_morph_name(morph_name),
                    value=value,
                    target_value=target_value,
                    action=determine_action(match.group(0)),
                    pattern_index=pattern_index,
                ))

        # Keep the last instruction per (morph, action), in order of appearance
        unique = []
        seen = set()
        for instruction in reversed(instructions):
            key = (instruction.morph_name, instruction.action)
            if key not in seen:
                seen.add(key)
                unique.append(instruction)
        unique.reverse()

        logger.debug(f"Deduplicated: {len(instructions)} -> {len(unique)} instructions")
        return unique

    def process_instruction(self, instruction: MorphInstruction) -> Optional[MorphChange]:
        morph = self.find_morph(instruction.morph_name)
        if morph is None:
            logger.warning(f"Morph not found: {instruction.morph_name}")
            return None

        value, target, action = instruction.value, instruction.target_value, instruction.action
        base = value if value is not None else 0.5

        if action == 'increase':
            final = target if (target is not None and value is not None) else min(1.0, base + 0.1)
        elif action == 'decrease':
            final = target if (target is not None and value is not None) else max(0.0, base - 0.1)
        elif action == 'add':
            final = value if value is not None else 0.3
        elif action == 'remove':
            final = 0.0
        else:
            final = target if target is not None else base

        final = max(0.0, min(1.0, final))
        return MorphChange(
            type='specific_morph',
            morph_name=morph,
            value=final,
            action=action,
            description=f"{action.capitalize()} {morph} to {final:.2f}",
        )

    def parse_general_recommendations(self, text: str) -> Optional[MorphChange]:
        lower = text.lower()

        percent = re.search(r'(?:increase|decrease).*?(?:by\s+)?(\d+)%', text, re.IGNORECASE)
        if percent:
            amount = int(percent.group(1)) / 100
            is_increase = 'increase' in percent.group(0).lower()
            return MorphChange(
                type='intensity_adjustment',
                adjustment=amount if is_increase else -amount,
                description=f"{'Increase' if is_increase else 'Decrease'} overall intensity by {amount * 100:g}%",
            )

        if 'stronger' in lower or 'more pronounced' in lower:
            return MorphChange(type='intensity_adjustment', adjustment=0.1,
                               description='Strengthen overall expression')

        if 'weaker' in lower or 'subtle' in lower:
            return MorphChange(type='intensity_adjustment', adjustment=-0.1,
                               description='Soften overall expression')

        return None

    def parse_recommendations(self, data) -> List[MorphChange]:
        text = recommendation_text(data)
        changes = []

        for instruction in self.extract_instructions(text):
            change = self.process_instruction(instruction)
            if change:
                changes.append(change)

        if not changes:
            general = self.parse_general_recommendations(text)
            if general:
                changes.append(general)

        logger.info(f"Parsed {len(changes)} morph changes from recommendations")
        return changes

    def _apply_specific(self, change: MorphChange) -> Dict:
        old_value = self.rig.value(change.morph_name)
        self.rig.set_morph(change.morph_name, change.value)
        return {
            'success': True,
            'morph_name': change.morph_name,
            'old_value': old_value,
            'new_value': change.value,
            'description': change.description,
        }

    def _apply_intensity(self, change: MorphChange, mapping: VisemeMapping) -> Dict:
        affected = 0
        for morph_name in mapping.morphs:
            morph = self.find_morph(morph_name)
            if morph is None:
                continue
            current = self.rig.value(morph) or 0.0
            self.rig.set_morph(morph, current + change.adjustment)
            affected += 1
        return {
            'success': True,
            'affected_morphs': affected,
            'adjustment': change.adjustment,
            'description': change.description,
        }

    @staticmethod
    def update_mapping(mapping: VisemeMapping, change: MorphChange) -> VisemeMapping:
        morphs, weights = list(mapping.morphs), list(mapping.weights)

        if change.type == 'specific_morph':
            if change.action == 'add' and change.morph_name not in morphs:
                morphs.append(change.morph_name)
                weights.append(change.value)
            elif change.action == 'remove' and change.morph_name in morphs:
                index = morphs.index(change.morph_name)
                del morphs[index]
                del weights[index]
            return replace(mapping, morphs=morphs, weights=weights)

        intensity = max(0.1, min(1.0, mapping.intensity + change.adjustment))
        return replace(mapping, morphs=morphs, weights=weights, intensity=intensity)

    def apply_changes(self, changes: List[MorphChange], mapping: VisemeMapping) -> ApplyResult:
        results = []
        new_mapping = replace(mapping, morphs=list(mapping.morphs), weights=list(mapping.weights))

        for change in changes:
            if change.type == 'specific_morph':
                result = self._apply_specific(change)
            elif change.type == 'intensity_adjustment':
                result = self._apply_intensity(change, new_mapping)
            else:
                logger.error(f"Unknown change type: {change.type}")
                results.append({'success': False, 'description': change.description,
                                'error': f"Unknown change type: {change.type}"})
                continue
            results.append(result)
            new_mapping = self.update_mapping(new_mapping, change)

        return ApplyResult(
            results=results,
            new_mapping=new_mapping,
            applied_count=sum(1 for r in results if r['success']),
            summary=self.change_summary(results),
        )

    @staticmethod
    def change_summary(results: List[Dict]) -> str:
        successful = [r for r in results if r['success']]
        failed = len(results) - len(successful)

        summary = f"Applied {len(successful)} changes successfully"
        if failed:
            summary += f", {failed} failed"
        descriptions = [r['description'] for r in successful if r.get('description')]
        if descriptions:
            summary += ': ' + '; '.join(descriptions)
        return summary

    def discover_alternatives(self, viseme, mapping: VisemeMapping, limit: int = 5) -> List[Dict]:
        """Rig morphs outside the mapping whose names suggest the viseme's mouth shape"""
        keywords = VISEME_KEYWORDS.get(resolve_viseme_name(viseme), [])
        alternatives = []

        for name in self.rig.morph_names():
            if name in mapping.morphs:
                continue
            lower = name.lower()
            matched = [k for k in keywords if k in lower]
            if matched:
                alternatives.append({'morph_name': name, 'match_score': len(matched), 'matched_keywords': matched})

        alternatives.sort(key=lambda a: a['match_score'], reverse=True)
        return alternatives[:limit]
