"""
Application configuration
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Parley Voice Gateway"
    APP_VERSION: str = "0.1.0"
    # Debug switches the log renderer to the console format
    DEBUG: bool = False
    ENVIRONMENT: str = "production"
    CORS_ORIGINS: List[str] = ["*"]

    # Voice logging verbosity: MINIMAL, STANDARD, VERBOSE, DEBUG
    VOICE_LOG_LEVEL: str = "STANDARD"

    # OpenAI (chat generation + embeddings)
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_TEMPERATURE: float = 1.0
    OPENAI_TIMEOUT_SEC: int = 30
    EMBEDDING_MODEL: str = "text-embedding-3-small"

    # Persona and behavioral rails
    PERSONA_NAME: str = "Taylor Rivera"
    PERSONA_ROLE: str = "a panelist persona"
    PERSONA_TRAITS: List[str] = [
        "critical thinker",
        "detail-oriented investigator",
        "rights-driven advocate",
        "ethically uncompromising",
        "skeptical of hype",
        "patient educator",
        "community-minded collaborator",
    ]
    PERSONA_TONE: str = (
        "calm, precise, rights-focused. Challenge hype, explain trade-offs, "
        "prefer concrete examples, avoid sensationalism."
    )

    # Sentence segmentation
    SENTENCE_GAP_MS: int = 380

    # Session memory
    SESSION_MEMORY_CAPACITY: int = 6
    SESSION_MEMORY_MAX_CHARS: int = 1200

    # Retrieval
    KNOWLEDGE_DIR: Optional[str] = "knowledge"
    KNOWLEDGE_CHUNK_CHARS: int = 1200
    RETRIEVAL_TOP_K: int = 6
    CTX_PREVIEW_CHARS: int = 240

    # Speech-to-text (batch)
    STT_HTTP_URL: str = "http://127.0.0.1:9000/transcribe"
    STT_TIMEOUT_SEC: float = 30.0
    FFMPEG_BIN: str = "ffmpeg"
    TRANSCODE_TIMEOUT_SEC: float = 20.0

    # Speech-to-text (realtime)
    STT_REALTIME_URL: str = "wss://api.openai.com/v1/realtime?intent=transcription"
    STT_REALTIME_MODEL: str = "gpt-4o-mini-transcribe"
    STT_MIN_COMMIT_MS: int = 200
    STT_BACKEND_MIN_COMMIT_MS: int = 100
    STT_PARTIAL_COMMIT_MS: int = 600
    STT_ACK_TIMEOUT_SEC: float = 5.0

    # Voice activity detection
    VAD_SILENCE_MS: int = 1600
    VAD_BASE_THRESHOLD: float = 0.012
    VAD_HYSTERESIS_MULT: float = 3.2
    VAD_GRACE_MS: int = 300
    VAD_PREROLL_MS: int = 400
    VAD_FRAME_MS: int = 20

    # Text-to-speech
    TTS_PROVIDER: str = "piper"  # piper | fishspeech
    TTS_DEFAULT_VOICE: str = "en_US-ryan-high"
    TTS_TIMEOUT_SEC: float = 20.0
    TTS_LEVEL_WINDOW_MS: int = 40
    PIPER_BIN: str = "piper"
    PIPER_VOICES_DIR: str = "voices"
    PIPER_LENGTH_SCALE: float = 1.08
    PIPER_NOISE_SCALE: float = 0.33
    PIPER_NOISE_W_SCALE: float = 0.70
    PIPER_SENTENCE_SILENCE: float = 0.18
    FISHSPEECH_URL: str = "http://127.0.0.1:8080"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
