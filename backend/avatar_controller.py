"""
Avatar controller: owns the connected renderers, the current emotion and
blend shapes, and the morph rig. Lip sync frames are computed by the
LipSyncMapper and pushed to every client over WebSocket in real time.
"""

import asyncio
import json
import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

import config
from emotional_lipsync import EMOTIONS, analyze_emotional_content
from lipsync_animator import (LipSyncMapper, MorphSmoother, PhonemeSpan, VisemeFrame, VisemeTransitionType,
                              symbol_to_viseme)
from morph_engine import MorphEngine
from morph_rig import MorphRig
from speech_processing import animation_duration_ms, create_viseme_animation
from viseme_config import ACTORCORE_VISEME_MAPPINGS, VisemeMapping, resolve_viseme_name

logger = logging.getLogger(__name__)

MAX_FRAME_WAIT = 1.0
MAX_FRAME_ERRORS = 10


class AvatarController:
    """Tracks WebSocket clients and drives the avatar's face from speech"""

    def __init__(
            self,
            rig: Optional[MorphRig] = None,
            frame_rate: int = config.LIPSYNC_FRAME_RATE,
            transition_speed: float = config.LIPSYNC_TRANSITION_SPEED,
            max_intensity: float = config.LIPSYNC_MAX_INTENSITY,
            words_per_minute: int = config.LIPSYNC_WORDS_PER_MINUTE
    ):
        self.active_connections: List[WebSocket] = []

        # Working copy, tuned by recommendations without touching the calibrated table
        self.mappings: Dict[str, VisemeMapping] = {
            name: replace(mapping, morphs=list(mapping.morphs), weights=list(mapping.weights))
            for name, mapping in ACTORCORE_VISEME_MAPPINGS.items()
        }
        self.mapper = LipSyncMapper(frame_rate=frame_rate, transition_speed=transition_speed,
                                    mappings=self.mappings)
        self.smoother = MorphSmoother(transition_speed=transition_speed, on_frame=self._apply_to_rig,
                                      frame_rate=frame_rate)
        self.max_intensity = max_intensity
        self.words_per_minute = words_per_minute

        self.rig = rig
        self.engine = MorphEngine(rig) if rig is not None else None

        self.current_blend_shapes: Dict[str, float] = {}
        self.current_emotion = 'neutral'
        self.current_viseme = 'sil'
        self.is_animating = False

        logger.info("Avatar controller initialized" + (" with rig" if rig is not None else " without rig"))

    def start(self):
        if self.rig is not None:
            self.smoother.start_animation_loop()

    def stop(self):
        self.smoother.stop_animation_loop()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"Avatar client connected. Total: {len(self.active_connections)}")

        # Bring the new client to the current pose
        await self._send(websocket, self._message(self.current_blend_shapes))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"Avatar client disconnected. Total: {len(self.active_connections)}")

    def _message(self, blend_shapes: Dict[str, float]) -> Dict[str, Any]:
        return {
            "type": "viseme_update",
            "blend_shapes": blend_shapes,
            "timestamp": time.time(),
            "emotion": self.current_emotion,
            "viseme": self.current_viseme,
        }

    @staticmethod
    async def _send(websocket: WebSocket, message: Dict[str, Any]):
        await websocket.send_text(json.dumps(message))

    def _apply_to_rig(self, weights: Dict[str, float]):
        if self.rig is None:
            return
        capped = {morph: min(value, self.max_intensity) for morph, value in weights.items()}
        self.rig.apply_weights(capped, reset=True)

    def _update_rig(self, blend_shapes: Dict[str, float]):
        if self.rig is None:
            return
        self.smoother.set_target(blend_shapes)
        if not self.smoother.is_running:
            self.smoother.snap()
            self._apply_to_rig(self.smoother.get_current_weights())

    async def broadcast(self, blend_shapes: Dict[str, float]) -> int:
        """Send a blend shape update to every client; returns how many received it"""
        self.current_blend_shapes = dict(blend_shapes)
        self._update_rig(blend_shapes)

        if not self.active_connections:
            logger.debug("No avatar connections to broadcast to")
            return 0

        message = self._message(blend_shapes)
        disconnected = []
        sent = 0
        for connection in list(self.active_connections):
            try:
                await self._send(connection, message)
                sent += 1
            except Exception as e:
                logger.error(f"Failed to send to avatar connection: {e}")
                disconnected.append(connection)

        for connection in disconnected:
            self.disconnect(connection)

        return sent

    async def play_frames(self, frames: List[VisemeFrame]) -> Dict[str, int]:
        """Broadcast frames at their timestamps relative to the start of playback"""
        if not frames:
            logger.warning("No frames to play")
            return {'frames_sent': 0, 'errors': 0}

        self.is_animating = True
        start_time = time.monotonic()
        frames_sent = 0
        errors = 0

        try:
            for i, frame in enumerate(frames):
                try:
                    wait_time = start_time + frame.timestamp - time.monotonic()
                    if 0 < wait_time < MAX_FRAME_WAIT:
                        await asyncio.sleep(wait_time)
                    elif wait_time >= MAX_FRAME_WAIT:
                        logger.warning(f"Frame {i} wait time too long: {wait_time:.3f}s, skipping wait")

                    self.current_viseme = frame.viseme
                    await self.broadcast(frame.blend_shapes)
                    frames_sent += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    errors += 1
                    logger.error(f"Error playing frame {i}: {e}")

                if errors > MAX_FRAME_ERRORS:
                    logger.error("Too many errors, stopping animation playback")
                    break
        finally:
            self.is_animating = False

        logger.info(f"Animation playback completed: {frames_sent}/{len(frames)} frames sent, {errors} errors")
        return {'frames_sent': frames_sent, 'errors': errors}

    async def speak_text(self, text: str, emotion: Optional[str] = None,
                         words_per_minute: Optional[int] = None) -> Dict[str, Any]:
        """
        Lay the text out on a viseme timeline and play it with coarticulation.
        When no emotion is given it is detected from the text, and the detected
        intensity drives both the viseme modulation and the facial overlay.
        """
        analysis = analyze_emotional_content(text)
        if emotion is None:
            emotion = analysis['emotion']
            intensity = analysis['intensity']
        elif emotion not in EMOTIONS:
            raise ValueError(f"Unknown emotion: {emotion}")
        else:
            intensity = self.mapper.emotion_intensity

        timeline = create_viseme_animation(
            text, self.words_per_minute if words_per_minute is None else words_per_minute)
        frames = self.mapper.process_timeline(timeline, emotion=emotion, emotion_intensity=intensity,
                                              coarticulate=True)
        self.current_emotion = emotion

        logger.info(f"Speaking {len(timeline)} visemes over {animation_duration_ms(timeline):.0f}ms "
                    f"with emotion {emotion} ({intensity:.2f})")
        playback = await self.play_frames(frames)
        await self.broadcast(self.mapper.rest_frame(emotion=emotion, emotion_intensity=intensity).blend_shapes)

        return {
            'emotion': emotion,
            'emotion_intensity': intensity,
            'visemes': [step.to_dict() for step in timeline],
            'duration_ms': animation_duration_ms(timeline),
            'frames': len(frames),
            **playback,
        }

    async def play_phoneme_sequence(
            self,
            phoneme_sequence: List[PhonemeSpan],
            emotion: Optional[str] = None,
            transition_type: VisemeTransitionType = VisemeTransitionType.SMOOTH
    ) -> Dict[str, int]:
        emotion = emotion or self.current_emotion
        frames = self.mapper.process_phoneme_sequence(phoneme_sequence, emotion=emotion,
                                                      transition_type=transition_type)
        playback = await self.play_frames(frames)
        return {'frames': len(frames), **playback}

    async def trigger_viseme(self, phoneme: str, emotion: Optional[str] = None) -> Dict[str, float]:
        """Jump straight to a single viseme, for manual control"""
        if emotion is not None and emotion not in EMOTIONS:
            raise ValueError(f"Unknown emotion: {emotion}")
        weights = self.mapper.instantaneous_weights(phoneme, emotion or self.current_emotion)
        self.current_viseme = symbol_to_viseme(phoneme)
        await self.broadcast(weights)
        logger.debug(f"Triggered viseme {self.current_viseme} from {phoneme}")
        return weights

    async def set_emotion(self, emotion: str):
        if emotion not in EMOTIONS:
            raise ValueError(f"Unknown emotion: {emotion}. Available: {', '.join(EMOTIONS)}")
        self.current_emotion = emotion
        await self.trigger_viseme(self.current_viseme, emotion)
        logger.info(f"Emotion set to: {emotion}")

    async def reset_to_neutral(self):
        self.current_emotion = 'neutral'
        self.current_viseme = 'sil'
        await self.broadcast(self.mapper.instantaneous_weights('sil', 'neutral'))
        logger.info("Reset to neutral expression")

    def apply_recommendations(self, viseme, recommendations) -> Dict[str, Any]:
        """Apply free-text tuning advice for one viseme to the rig and the working mapping"""
        if self.engine is None:
            raise LookupError("No avatar rig loaded")

        name = resolve_viseme_name(viseme)
        changes = self.engine.parse_recommendations(recommendations)
        result = self.engine.apply_changes(changes, self.mappings[name])
        self.mappings[name] = result.new_mapping
        logger.info(f"Viseme {name}: {result.summary}")

        return {
            'viseme': name,
            'changes': [change.to_dict() for change in changes],
            'results': result.results,
            'applied_count': result.applied_count,
            'summary': result.summary,
            'mapping': result.new_mapping.to_dict(),
            'alternatives': self.engine.discover_alternatives(name, result.new_mapping),
        }

    def get_available_emotions(self) -> List[str]:
        return list(EMOTIONS)

    def current_state(self) -> Dict[str, Any]:
        return {
            'connected_clients': len(self.active_connections),
            'current_emotion': self.current_emotion,
            'current_viseme': self.current_viseme,
            'current_blend_shapes': self.current_blend_shapes,
            'is_animating': self.is_animating,
            'rig_loaded': self.rig is not None,
        }
