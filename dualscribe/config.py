"""Configuration for dualscribe components.

Every component receives its settings object explicitly at construction.
Values can be overridden from ``DUALSCRIBE_*`` environment variables, e.g.
``DUALSCRIBE_TRANSCRIPT__SIMILARITY_THRESHOLD=0.7``.
"""
from typing import Optional

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from dualscribe.messages import StreamId

SAMPLE_RATE = 16000
SAMPLE_WIDTH = 2
CHANNELS = 1


class CaptureSettings(BaseModel):
    # Frames per device callback: 100ms @ 16kHz
    frames_per_buffer: int = Field(1600, gt=0)
    # Frames held between the audio thread and the event loop before the
    # oldest is dropped
    max_queue_depth: int = Field(50, gt=0)
    mic_device_index: Optional[int] = None
    system_device_index: Optional[int] = None


class RecognizerSettings(BaseModel):
    url: str = 'wss://localhost:8443/v1/recognize'
    api_key: SecretStr = SecretStr('')
    language: str = 'en-US'
    interim_results: bool = True
    open_timeout: float = Field(10.0, gt=0)
    close_timeout: float = Field(5.0, gt=0)
    max_pending_frames: int = Field(100, gt=0)
    max_reconnect_attempts: int = Field(3, ge=0)
    reconnect_backoff: float = Field(0.5, ge=0)
    reconnect_backoff_max: float = Field(8.0, ge=0)


class TranscriptSettings(BaseModel):
    max_buffer_size: int = Field(1000, gt=0)
    enable_speaker_tagging: bool = True
    filter_duplicates: bool = True
    # Drop non-preferred stream finals while the preferred stream is talking
    suppress_non_preferred: bool = True
    preferred_stream: Optional[StreamId] = StreamId.SYSTEM
    duplicate_time_window: float = Field(3000, ge=0)
    similarity_threshold: float = Field(0.8, ge=0, le=1)
    substring_bonus: float = Field(0.3, ge=0, le=1)
    comparison_window: int = Field(10, gt=0)
    recent_update_count: int = Field(10, gt=0)
    subtitle_default_duration: float = Field(3000, gt=0)
    auto_save: bool = True
    auto_save_interval: float = Field(30.0, gt=0)
    save_directory: str = './transcripts'


class OrchestratorSettings(BaseModel):
    stop_grace_period: float = Field(1.0, ge=0)
    max_stream_restarts: int = Field(1, ge=0)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix='DUALSCRIBE_',
                                      env_nested_delimiter='__')

    capture: CaptureSettings = CaptureSettings()
    recognizer: RecognizerSettings = RecognizerSettings()
    transcript: TranscriptSettings = TranscriptSettings()
    orchestrator: OrchestratorSettings = OrchestratorSettings()
