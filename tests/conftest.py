"""Shared fixtures: synthetic GLB avatars, rigs, audio and fake WebSocket clients."""

import io
import json
import struct

import numpy as np
import pytest
import soundfile as sf

from morph_rig import MorphRig, rig_from_glb, read_glb

GLB_MAGIC = 0x46546C67  # "glTF"
CHUNK_JSON = 0x4E4F534A  # "JSON"
CHUNK_BIN = 0x004E4942  # "BIN\0"

BODY_MORPHS = [
    'V_Explosive', 'V_Lip_Open', 'Mouth_Press_L', 'Mouth_Press_R', 'V_Dental_Lip', 'V_Open',
    'V_Tight', 'V_Affricate', 'V_Tight-O', 'V_Wide', 'Jaw_Open', 'Mouth_Pucker',
    'Mouth_Smile_L', 'Mouth_Smile_R', 'Eye_Blink_L', 'Arm_Raise',
]

TONGUE_MORPHS = [
    'V_Open', 'V_Tongue_Out', 'Tongue_Up', 'V_Tongue_up', 'Tongue_Wide', 'V_Tongue_Narrow',
    'Tongue_Tip_Up', 'V_Tongue_Curl-U', 'Tongue_Roll', 'Tongue_Down', 'Tongue_Tip_Down',
]


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * ((4 - len(data) % 4) % 4)


def build_glb(gltf, binary=None, magic=GLB_MAGIC, version=2) -> bytes:
    """Assemble a GLB container from a glTF dict and an optional BIN payload"""
    json_bytes = _pad(json.dumps(gltf).encode('utf-8'), b' ')
    chunks = struct.pack('<II', len(json_bytes), CHUNK_JSON) + json_bytes
    if binary is not None:
        binary = _pad(binary, b'\x00')
        chunks += struct.pack('<II', len(binary), CHUNK_BIN) + binary
    return struct.pack('<III', magic, version, 12 + len(chunks)) + chunks


def morph_mesh(name, morph_names, names_on_primitive=False):
    primitive = {'attributes': {'POSITION': 0}, 'targets': [{'POSITION': 0} for _ in morph_names]}
    mesh = {'name': name, 'primitives': [primitive]}
    if names_on_primitive:
        primitive['extras'] = {'targetNames': list(morph_names)}
    else:
        mesh['extras'] = {'targetNames': list(morph_names)}
    return mesh


def avatar_gltf():
    return {
        'asset': {'version': '2.0', 'generator': 'test'},
        'meshes': [
            morph_mesh('CC_Game_Body', BODY_MORPHS),
            morph_mesh('CC_Game_Tongue', TONGUE_MORPHS),
            {'name': 'Hair', 'primitives': [{'attributes': {'POSITION': 0}}]},
        ],
        'nodes': [{'mesh': 0}, {'mesh': 1}, {'mesh': 2}],
        'skins': [{'joints': [0]}],
        'materials': [{}, {}],
    }


@pytest.fixture
def avatar_glb():
    return build_glb(avatar_gltf(), binary=b'\x01\x02\x03')


@pytest.fixture
def avatar_rig(avatar_glb) -> MorphRig:
    return rig_from_glb(read_glb(avatar_glb))


@pytest.fixture
def wav_bytes():
    """Encode float samples as an in-memory 16-bit WAV file"""
    def encode(samples, sample_rate=16000):
        buffer = io.BytesIO()
        sf.write(buffer, np.asarray(samples, dtype=np.float32), sample_rate, format='WAV', subtype='PCM_16')
        return buffer.getvalue()
    return encode


def sine(frequency, seconds, sample_rate=16000, amplitude=0.5):
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


class FakeWebSocket:
    """Records what the controller sends; can be told to fail like a dropped client"""

    def __init__(self):
        self.accepted = False
        self.fail = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(text))
