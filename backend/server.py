"""
Lip sync server for the bartender avatar.
Computes ActorCore blend shape weights from text, phoneme timings or audio and
streams them to the renderer over a WebSocket.
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import config
from avatar_controller import AvatarController
from emotional_lipsync import EMOTIONS
from lipsync_animator import VisemeTransitionType
from morph_rig import GLBFormatError, MorphRig, read_glb, rig_from_glb, summarize_glb
from speech_processing import PHONEME_TO_VISEME, VISEME_NAMES
from viseme_config import FACIAL_EXPRESSIONS, analyze_morph_targets, missing_morphs
from viseme_extractor import VisemeExtractor, load_audio, offset_visemes

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


def load_avatar_rig(path: str) -> Tuple[Optional[MorphRig], Optional[Dict]]:
    """Load the avatar GLB if present; the server still runs without one"""
    if not path or not os.path.exists(path):
        logger.warning(f"Avatar GLB not found at {path}. Rig endpoints will be unavailable.")
        return None, None
    try:
        doc = read_glb(path)
    except (OSError, GLBFormatError) as e:
        logger.error(f"Failed to load avatar GLB {path}: {e}")
        return None, None

    summary = summarize_glb(doc)
    logger.info(f"Loaded avatar GLB {path}: {summary['meshes']} meshes, {summary['morph_targets']} morph targets")
    return rig_from_glb(doc), summary


avatar_rig, glb_summary = load_avatar_rig(config.AVATAR_GLB_PATH)
avatar_controller = AvatarController(rig=avatar_rig)
viseme_extractor = VisemeExtractor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    avatar_controller.start()
    yield
    avatar_controller.stop()


app = FastAPI(title="Bartender Avatar Lip Sync Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =====================================================
# PYDANTIC MODELS
# =====================================================

class PhonemeItem(BaseModel):
    phoneme: str
    start: float
    end: float


class PhonemeSeq(BaseModel):
    items: List[PhonemeItem]
    emotion: Optional[str] = None
    transition: str = "smooth"


class SpeakRequest(BaseModel):
    text: str
    emotion: Optional[str] = None
    words_per_minute: Optional[int] = None


class EmotionRequest(BaseModel):
    emotion: str


class VisemeRequest(BaseModel):
    phoneme: str
    emotion: Optional[str] = None


class RecommendationRequest(BaseModel):
    viseme: str
    recommendations: Union[str, List[str], Dict[str, Any]]


def _require_rig() -> MorphRig:
    if avatar_controller.rig is None:
        raise HTTPException(status_code=404, detail="No avatar rig loaded")
    return avatar_controller.rig


# =====================================================
# API ENDPOINTS
# =====================================================

@app.websocket("/ws/avatar")
async def avatar_websocket_endpoint(websocket: WebSocket):
    await avatar_controller.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON avatar message: {data[:80]}")
                continue
            if not isinstance(message, dict):
                logger.warning(f"Ignoring avatar message that is not an object: {data[:80]}")
                continue

            try:
                if message.get("type") == "update_viseme":
                    await avatar_controller.trigger_viseme(message.get("phoneme", "sil"), message.get("emotion"))
                elif message.get("type") == "set_emotion":
                    await avatar_controller.set_emotion(message.get("emotion", "neutral"))
            except ValueError as e:
                logger.warning(f"Rejected avatar message: {e}")

    except WebSocketDisconnect:
        logger.info("Avatar client closed the connection")
    finally:
        avatar_controller.disconnect(websocket)


@app.post("/speak")
async def speak_endpoint(request: SpeakRequest):
    """Animate the avatar speaking a line of text"""
    try:
        result = await avatar_controller.speak_text(request.text, request.emotion, request.words_per_minute)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", **result}


@app.post("/play_phonemes")
async def play_phonemes_endpoint(seq: PhonemeSeq):
    """Play a timed phoneme sequence, e.g. from a TTS engine's alignment output"""
    phoneme_sequence = [(i.phoneme, i.start, i.end) for i in seq.items]
    try:
        transition = VisemeTransitionType(seq.transition)
        if seq.emotion is not None and seq.emotion not in EMOTIONS:
            raise ValueError(f"Unknown emotion: {seq.emotion}")
        result = await avatar_controller.play_phoneme_sequence(phoneme_sequence, seq.emotion, transition)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "phonemes": len(phoneme_sequence), **result}


@app.post("/set_emotion")
async def set_emotion_endpoint(request: EmotionRequest):
    try:
        await avatar_controller.set_emotion(request.emotion)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "emotion": request.emotion}


@app.post("/trigger_viseme")
async def trigger_viseme_endpoint(request: VisemeRequest):
    """Manually trigger a viseme"""
    try:
        weights = await avatar_controller.trigger_viseme(request.phoneme, request.emotion)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "status": "success",
        "phoneme": request.phoneme,
        "viseme": avatar_controller.current_viseme,
        "blend_shapes": weights,
    }


@app.post("/reset_avatar")
async def reset_avatar_endpoint():
    await avatar_controller.reset_to_neutral()
    return {"status": "success", "message": "Avatar reset to neutral"}


@app.get("/avatar_status")
async def avatar_status_endpoint():
    return avatar_controller.current_state()


@app.get("/viseme_info")
async def viseme_info_endpoint():
    """Viseme scheme, phoneme table and the morph mappings currently in use"""
    return {
        "visemes": VISEME_NAMES,
        "phoneme_mapping": PHONEME_TO_VISEME,
        "viseme_mappings": {name: m.to_dict() for name, m in avatar_controller.mappings.items()},
        "facial_expressions": sorted(FACIAL_EXPRESSIONS),
        "available_emotions": avatar_controller.get_available_emotions(),
        "transition_types": [t.value for t in VisemeTransitionType],
    }


@app.get("/rig")
async def rig_endpoint():
    rig = _require_rig()
    names = rig.morph_names()
    return {
        "glb": glb_summary,
        "meshes": rig.morph_state(),
        "validation": rig.validate(),
        "analysis": analyze_morph_targets(names),
        "missing_morphs": missing_morphs(names),
        "facial_morphs": rig.facial_morphs(),
    }


@app.post("/rig/recommendations")
async def rig_recommendations_endpoint(request: RecommendationRequest):
    """Apply tuning advice for one viseme to the rig and its working mapping"""
    _require_rig()
    return {"status": "success", **avatar_controller.apply_recommendations(request.viseme, request.recommendations)}


@app.post("/extract_visemes")
async def extract_visemes_endpoint(request: Request, chunk_start: Optional[float] = None, play: bool = False):
    """
    Extract visemes from an encoded audio body (WAV, FLAC, OGG).
    With chunk_start the body is treated as one streamed chunk placed at that
    offset; otherwise it is a whole utterance split into half-second chunks.
    """
    body = await request.body()
    try:
        audio, sample_rate = load_audio(body)
    except (ValueError, RuntimeError) as e:
        raise HTTPException(status_code=422, detail=f"Could not decode audio: {e}")

    if chunk_start is not None:
        visemes = offset_visemes(await viseme_extractor.extract_visemes_async(audio, sample_rate), chunk_start)
    else:
        loop = asyncio.get_running_loop()
        visemes = await loop.run_in_executor(None, viseme_extractor.extract_visemes, audio, sample_rate)

    result = {
        "status": "success",
        "sample_rate": sample_rate,
        "duration": len(audio) / sample_rate,
        "visemes": [v.to_dict() for v in visemes],
    }
    if play and visemes:
        origin = visemes[0].start_time
        spans = [(v.viseme, v.start_time - origin, v.end_time - origin) for v in visemes]
        result.update(await avatar_controller.play_phoneme_sequence(spans))
    return result


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "avatar_connections": len(avatar_controller.active_connections),
        "rig_loaded": avatar_controller.rig is not None,
        "viseme_extractor": type(viseme_extractor).__name__,
        "avatar_state": avatar_controller.current_state(),
    }


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting lip sync server on http://{config.HOST}:{config.PORT}")
    uvicorn.run(app, host=config.HOST, port=config.PORT)
