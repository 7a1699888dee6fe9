"""Environment-driven settings and the model catalog."""

import os
import sys
from pathlib import Path

from .core import Identity

DEFAULT_API_BASE = "https://api.a4f.co/v1"
DEFAULT_CHAT_MODEL = "provider-5/gpt-4o"
DEFAULT_IMAGE_MODEL = "provider-3/FLUX.1-schnell"
DEFAULT_VIDEO_MODEL = "provider-6/wan-2.1"
KNOWLEDGE_MODEL = "knowledge-base"

# Selecting one of these routes plain input to image generation.
IMAGE_MODELS = frozenset({
    "provider-1/FLUX.1-dev",
    "provider-1/FLUX.1-kontext-pro",
    "provider-1/FLUX.1-schnell",
    "provider-1/FLUX.1.1-pro",
    "provider-2/gpt-image-1",
    "provider-2/FLUX.1-schnell-v2",
    "provider-2/FLUX.1-schnell",
    "provider-2/FLUX.1-dev",
    "provider-2/FLUX.1.1-pro",
    "provider-2/FLUX.1-kontext-pro",
    "provider-2/FLUX.1-kontext-max",
    "provider-2/dall-e-3",
    "provider-2/ideogram-v3",
    "provider-3/flux-kontext-pro",
    "provider-3/ideogram-v3",
    "provider-3/FLUX.1-dev",
    "provider-3/FLUX.1.1-pro-ultra",
    "provider-3/FLUX.1.1-pro-ultra-raw",
    "provider-3/FLUX.1-schnell",
    "provider-3/dall-e-3",
    "provider-3/shuttle-3.1-aesthetic",
    "provider-3/shuttle-3-diffusion",
    "provider-3/shuttle-jaguar",
    "provider-4/imagen-3",
    "provider-4/imagen-4",
    "provider-5/dall-e-3",
    "provider-5/gpt-image-1",
    "provider-6/sana-1.5",
    "provider-6/sana-1.5-flash",
})


def get_data_path() -> Path:
    """Return the directory holding the local database and media files."""
    env = os.environ.get("AICHAT_DATA_PATH")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "aichat-engine"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "aichat-engine"
    else:  # Linux
        return Path.home() / ".local" / "share" / "aichat-engine"


def get_db_path() -> Path:
    env = os.environ.get("AICHAT_DB_PATH")
    if env:
        return Path(env)
    return get_data_path() / "chat.db"


def get_media_path() -> Path:
    env = os.environ.get("AICHAT_MEDIA_PATH")
    if env:
        return Path(env)
    return get_data_path() / "media"


def get_media_url() -> str:
    """Public base URL under which uploaded media is served."""
    return os.environ.get("AICHAT_MEDIA_URL", get_media_path().as_uri()).rstrip("/")


def get_store_backend() -> str:
    """Durable store backend name: "sqlite" (default) or "rest"."""
    return os.environ.get("AICHAT_STORE", "sqlite").lower()


def get_rest_url() -> str:
    return os.environ.get("AICHAT_REST_URL", "").rstrip("/")


def get_rest_key() -> str:
    return os.environ.get("AICHAT_REST_KEY", "")


def get_api_base() -> str:
    return os.environ.get("AICHAT_API_BASE", DEFAULT_API_BASE).rstrip("/")


def get_api_key() -> str:
    return os.environ.get("AICHAT_API_KEY", "")


def get_knowledge_url() -> str:
    return os.environ.get("AICHAT_KNOWLEDGE_URL", "")


def get_chat_model() -> str:
    return os.environ.get("AICHAT_CHAT_MODEL", DEFAULT_CHAT_MODEL)


def get_image_model() -> str:
    return os.environ.get("AICHAT_IMAGE_MODEL", DEFAULT_IMAGE_MODEL)


def get_video_model() -> str:
    return os.environ.get("AICHAT_VIDEO_MODEL", DEFAULT_VIDEO_MODEL)


def get_timeout() -> float:
    try:
        return float(os.environ.get("AICHAT_TIMEOUT", "120"))
    except ValueError:
        return 120.0


def get_identity() -> Identity:
    """Signed-in identity from AICHAT_USER_ID; anonymous when unset."""
    user_id = os.environ.get("AICHAT_USER_ID", "").strip()
    if user_id:
        return Identity.user(user_id)
    return Identity.anonymous()
