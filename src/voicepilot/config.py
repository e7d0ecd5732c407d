"""
Runtime configuration for VoicePilot.

Values are read from the process environment (and a local ``.env`` file when
present). Model limits and audio geometry are fixed constants, not settings.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


# ============================================================================
# Fixed Constants
# ============================================================================

SAMPLE_RATE: int = 16_000
CHUNK_SECONDS: int = 30
N_SAMPLES: int = SAMPLE_RATE * CHUNK_SECONDS
N_FFT: int = 400
HOP_LENGTH: int = 160
N_MEL: int = 80
N_FRAMES: int = N_SAMPLES // HOP_LENGTH  # 3000

MAX_TOKENS: int = 1024
MAX_NUM_IMAGES: int = 1
SPEECH_BATCH_SIZE: int = 7
VISION_PROMPT_SUFFIX: str = " in 20 words"
DEFAULT_WEATHER_CITY: str = "London"

SYSTEM_INSTRUCTION: str = (
    "You are a helpful assistant. You can open camera, gallery, get weather, "
    "tell time, or make calls when requested."
)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AssistantConfig:
    """Everything the assistant needs to build its engines."""
    whisper_model: str = "openai/whisper-tiny.en"
    vocab_path: str = "filters_vocab_en.bin"
    multilingual: bool = False
    lora_adapter: Optional[str] = None
    device: str = "cpu"

    gemini_api_key: Optional[str] = None
    function_model: str = "gemini-2.0-flash"
    vision_model: str = "gemini-2.0-flash"
    temperature: float = 1.0
    top_k: int = 40
    top_p: float = 0.9

    openweather_api_key: Optional[str] = None
    openweather_url: str = "https://api.openweathermap.org/data/2.5/weather"
    request_timeout: int = 10

    recordings_dir: str = "recordings"
    speech_batch_size: int = SPEECH_BATCH_SIZE
    extra: dict = field(default_factory=dict)


def load_config(env_file: Optional[str] = None) -> AssistantConfig:
    """Build an AssistantConfig from environment variables."""
    load_dotenv(env_file)

    return AssistantConfig(
        whisper_model=os.getenv("VOICEPILOT_WHISPER_MODEL", AssistantConfig.whisper_model),
        vocab_path=os.getenv("VOICEPILOT_VOCAB_PATH", AssistantConfig.vocab_path),
        multilingual=_env_flag("VOICEPILOT_MULTILINGUAL"),
        lora_adapter=os.getenv("VOICEPILOT_LORA_ADAPTER") or None,
        device=os.getenv("VOICEPILOT_DEVICE", AssistantConfig.device),
        gemini_api_key=os.getenv("GEMINI_API_KEY"),
        function_model=os.getenv("VOICEPILOT_FUNCTION_MODEL", AssistantConfig.function_model),
        vision_model=os.getenv("VOICEPILOT_VISION_MODEL", AssistantConfig.vision_model),
        openweather_api_key=os.getenv("OPENWEATHER_API_KEY"),
        recordings_dir=os.getenv("VOICEPILOT_RECORDINGS_DIR", AssistantConfig.recordings_dir),
    )
