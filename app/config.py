from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOVESTORY_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "lovestory-video-service"
    host: str = "0.0.0.0"
    port: int = 8100

    # Orchestration
    worker_pool_width: int = 5
    job_retention_seconds: int = 3600
    gc_interval_seconds: float = 60.0
    http_timeout: float = 180.0
    fetch_timeout: float = 60.0
    scene_timeout: float | None = None
    retry_ceiling: int = 2
    retry_base_delay: float = 1.0
    default_provider: str = "veo"
    temp_dir: str | None = None

    # Stable Diffusion WebUI
    diffusion_url: str = ""
    diffusion_concurrency: int = 2

    # RunPod / ComfyUI
    runpod_url: str = ""
    runpod_api_key: str = ""
    runpod_workflow_path: str = ""
    runpod_poll_interval: float = 3.0
    runpod_max_polls: int = 1000

    # Veo
    veo_api_key: str = ""
    veo_model: str = "veo-3.1-generate-preview"
    veo_base_url: str = "https://generativelanguage.googleapis.com"
    veo_poll_interval: float = 10.0
    veo_max_polls: int = 60
    veo_aspect_ratio: str = "16:9"
    veo_resolution: str = "720p"

    # Gemini image generation
    imagen_api_key: str = ""
    imagen_model: str = "gemini-2.5-flash-image"
    imagen_base_url: str = "https://generativelanguage.googleapis.com"
    imagen_concurrency: int = 2

    # Narration and music
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    music_style: str = "romantic_piano"
    auto_music_enabled: bool = True
    music_min_seconds: float = 15
    music_seconds_per_scene: float = 8

    # Object storage configuration
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_bucket: str = "lovestory-videos"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str | None = None
    storage_folder_prefix: str = "lovestory"

    ffmpeg_binary: str = "ffmpeg"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
