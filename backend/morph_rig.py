"""
Morph target state for the avatar rig, plus GLB loading (pygltflib) used to
discover which meshes carry morph targets and what they are called.
"""

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
from pygltflib import GLTF2, Mesh

logger = logging.getLogger(__name__)

GLB_MAGIC = b'glTF'
GLB_HEADER_SIZE = 12

ACTIVE_THRESHOLD = 0.001

BODY_MESH_MARKER = 'CC_Game_Body'
TONGUE_MESH_MARKER = 'CC_Game_Tongue'

_FACIAL_KEYWORDS = ('mouth', 'lip', 'jaw', 'smile', 'frown', 'eye', 'brow', 'cheek', 'nose', 'viseme', 'tongue')
_POSE_KEYWORDS = ('pose', 'body', 'arm', 'hand')


class GLBFormatError(ValueError):
    """Raised when a binary glTF container is malformed"""


@dataclass
class GLBDocument:
    version: int
    gltf: GLTF2
    binary: Optional[bytes] = None


def read_glb(source: Union[str, Path, bytes]) -> GLBDocument:
    """
    Load a GLB container with pygltflib.
    The header is checked up front so foreign, old or truncated files fail
    with a clear message; the BIN chunk is returned untouched.
    """
    if isinstance(source, (str, Path)):
        data = Path(source).read_bytes()
    else:
        data = bytes(source)

    if len(data) < GLB_HEADER_SIZE + 8:
        raise GLBFormatError(f"File too short for GLB: {len(data)} bytes")
    if data[:4] != GLB_MAGIC:
        raise GLBFormatError("Invalid GLB file: incorrect magic number")
    version = int.from_bytes(data[4:8], 'little')
    if version != 2:
        raise GLBFormatError(f"Unsupported GLB version: {version}")
    length = int.from_bytes(data[8:12], 'little')
    if length > len(data):
        raise GLBFormatError(f"Declared length {length} exceeds file size {len(data)}")
    if data[16:20] != b'JSON':
        raise GLBFormatError("Invalid GLB file: first chunk is not JSON")

    try:
        gltf = GLTF2.load_from_bytes(data[:length])
    except (OSError, ValueError, KeyError, TypeError, AttributeError, UnicodeDecodeError, struct.error) as e:
        raise GLBFormatError(f"Invalid GLB file: {e}") from e
    if gltf is None:
        raise GLBFormatError("Invalid GLB file: no JSON chunk")

    binary = gltf.binary_blob()
    logger.debug(f"GLB v{version}: {length} bytes, {len(gltf.meshes or [])} meshes, "
                 f"BIN {len(binary) if binary is not None else 0} bytes")
    return GLBDocument(version=version, gltf=gltf, binary=binary)


def summarize_glb(doc: GLBDocument) -> Dict:
    gltf = doc.gltf
    meshes = gltf.meshes or []
    primitives = [p for mesh in meshes for p in mesh.primitives or []]
    morph_primitives = [p for p in primitives if p.targets]
    return {
        'gltf_version': gltf.asset.version if gltf.asset else 'unknown',
        'meshes': len(meshes),
        'primitives': len(primitives),
        'primitives_with_morph_targets': len(morph_primitives),
        'morph_targets': sum(len(p.targets) for p in morph_primitives),
        'nodes': len(gltf.nodes or []),
        'skins': len(gltf.skins or []),
        'animations': len(gltf.animations or []),
        'materials': len(gltf.materials or []),
    }


def categorize_morph(name: str) -> str:
    lower = name.lower()
    if any(k in lower for k in _FACIAL_KEYWORDS) or lower in ('a', 'e', 'i', 'o', 'u'):
        return 'facial'
    if any(k in lower for k in _POSE_KEYWORDS):
        return 'pose'
    return 'other'


class MorphMesh:
    """A mesh with named morph targets and their current influences"""

    def __init__(self, name: str, morph_names: List[str]):
        self.name = name
        self.morph_dictionary = {morph: index for index, morph in enumerate(morph_names)}
        self.influences = np.zeros(len(morph_names), dtype=np.float32)

    @property
    def morph_names(self) -> List[str]:
        return list(self.morph_dictionary)

    def set(self, morph: str, value: float) -> bool:
        index = self.morph_dictionary.get(morph)
        if index is None:
            return False
        self.influences[index] = value
        return True

    def get(self, morph: str) -> Optional[float]:
        index = self.morph_dictionary.get(morph)
        return None if index is None else float(self.influences[index])

    def reset(self):
        self.influences.fill(0.0)

    def active_morphs(self) -> List[Dict]:
        return [
            {'name': name, 'index': index, 'influence': float(self.influences[index])}
            for name, index in self.morph_dictionary.items()
            if self.influences[index] > ACTIVE_THRESHOLD
        ]


class MorphRig:
    """The set of morph-bearing meshes of one avatar"""

    def __init__(self, meshes: List[MorphMesh]):
        self.meshes = meshes
        self.body_mesh = next((m for m in meshes if BODY_MESH_MARKER in m.name), None)
        self.tongue_mesh = next((m for m in meshes if TONGUE_MESH_MARKER in m.name), None)

        if meshes and self.body_mesh is None:
            logger.warning("Body mesh not found - some visemes may not work correctly")
        if meshes and self.tongue_mesh is None:
            logger.warning("Tongue mesh not found - tongue morphs will be limited")

    @classmethod
    def from_morph_names(cls, morph_names: List[str], mesh_name: str = BODY_MESH_MARKER) -> 'MorphRig':
        return cls([MorphMesh(mesh_name, morph_names)])

    def morph_names(self) -> List[str]:
        names = []
        seen = set()
        for mesh in self.meshes:
            for name in mesh.morph_names:
                if name not in seen:
                    seen.add(name)
                    names.append(name)
        return names

    def has_morph(self, morph: str) -> bool:
        return any(morph in mesh.morph_dictionary for mesh in self.meshes)

    def value(self, morph: str) -> Optional[float]:
        for mesh in self.meshes:
            current = mesh.get(morph)
            if current is not None:
                return current
        return None

    def set_morph(self, morph: str, value: float) -> bool:
        """Apply a value to every mesh carrying the morph; False if none does"""
        value = max(0.0, min(1.0, float(value)))
        applied = False
        for mesh in self.meshes:
            applied = mesh.set(morph, value) or applied
        return applied

    def resolve(self, morph: str) -> List[str]:
        """Exact name first, then case-insensitive partial matches"""
        if self.has_morph(morph):
            return [morph]
        lower = morph.lower()
        return [name for name in self.morph_names() if lower in name.lower()]

    def apply_weights(self, weights: Dict[str, float], reset: bool = True) -> int:
        if reset:
            self.reset()
        applied = 0
        for morph, weight in weights.items():
            for name in self.resolve(morph):
                if self.set_morph(name, weight):
                    applied += 1
        return applied

    def safe_apply(self, morph: str, value: float, max_intensity: float = 0.6) -> bool:
        return self.set_morph(morph, min(value, max_intensity))

    def reset(self):
        for mesh in self.meshes:
            mesh.reset()

    def weights(self) -> Dict[str, float]:
        return {name: self.value(name) for name in self.morph_names()}

    def morph_state(self) -> Dict:
        return {
            mesh.name: {
                'total_morphs': len(mesh.morph_dictionary),
                'active_morphs': mesh.active_morphs(),
                'morph_dictionary': dict(mesh.morph_dictionary),
            }
            for mesh in self.meshes
        }

    def facial_morphs(self) -> List[str]:
        return sorted(name for name in self.morph_names() if categorize_morph(name) == 'facial')

    def validate(self) -> Dict:
        issues = []
        if not self.meshes:
            issues.append("Rig has no morph-bearing meshes")
        for mesh in self.meshes:
            if len(mesh.morph_dictionary) == 0:
                issues.append(f"{mesh.name}: Missing morph targets")
            if not np.all(np.isfinite(mesh.influences)):
                issues.append(f"{mesh.name}: Non-finite morph influences")
            if np.any((mesh.influences < 0.0) | (mesh.influences > 1.0)):
                issues.append(f"{mesh.name}: Morph influences outside [0, 1]")
        return {'valid': not issues, 'issues': issues}


def _mesh_target_names(mesh: Mesh) -> List[str]:
    primitives = mesh.primitives or []
    target_count = max((len(p.targets or []) for p in primitives), default=0)
    names = list((mesh.extras or {}).get('targetNames') or [])
    # Some exporters put the names on the primitive instead of the mesh
    if not names:
        for primitive in primitives:
            names = list((primitive.extras or {}).get('targetNames') or [])
            if names:
                break
    names = names[:target_count]
    names.extend(f'target_{i}' for i in range(len(names), target_count))
    return names


def rig_from_glb(doc: GLBDocument) -> MorphRig:
    meshes = []
    for index, mesh in enumerate(doc.gltf.meshes or []):
        names = _mesh_target_names(mesh)
        if not names:
            continue
        mesh_name = mesh.name or f'mesh_{index}'
        meshes.append(MorphMesh(mesh_name, names))
        logger.info(f"Found mesh: {mesh_name} with {len(names)} morphs")

    logger.info(f"Rig ready - {len(meshes)} meshes with morphs")
    return MorphRig(meshes)


def load_rig(path: Union[str, Path]) -> MorphRig:
    return rig_from_glb(read_glb(path))
