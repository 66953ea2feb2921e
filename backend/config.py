# backend/config.py
import os
from dotenv import load_dotenv

load_dotenv()

# Avatar rig
AVATAR_GLB_PATH = os.getenv("AVATAR_GLB_PATH", "static/SavannahAvatar.glb")

# Lip sync timing
LIPSYNC_FRAME_RATE = int(os.getenv("LIPSYNC_FRAME_RATE", "60"))
LIPSYNC_TRANSITION_SPEED = float(os.getenv("LIPSYNC_TRANSITION_SPEED", "0.15"))
LIPSYNC_MAX_INTENSITY = float(os.getenv("LIPSYNC_MAX_INTENSITY", "0.6"))  # safe cap for validated morphs
LIPSYNC_WORDS_PER_MINUTE = int(os.getenv("LIPSYNC_WORDS_PER_MINUTE", "150"))

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS
ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
]
