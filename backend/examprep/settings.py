from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# OpenRouter hosts both the vision model and the generation model
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Exam Prep Pipeline", validation_alias="OPENROUTER_TITLE")
	vision_model: str = Field(default="qwen/qwen-2.5-vl-7b-instruct", validation_alias="VISION_MODEL")
	generation_model: str = Field(default="google/gemini-2.0-flash-001", validation_alias="GENERATION_MODEL")

	# Web search (Perplexity chat-completions API)
	perplexity_api_key: str | None = Field(default=None, validation_alias="PERPLEXITY_API_KEY")
	perplexity_base_url: str = Field(default="https://api.perplexity.ai/chat/completions", validation_alias="PERPLEXITY_BASE_URL")
	search_model: str = Field(default="sonar", validation_alias="SEARCH_MODEL")

	# Per-stage request timeouts
	vision_timeout_seconds: float = Field(default=90.0, validation_alias="VISION_TIMEOUT_SECONDS")
	search_timeout_seconds: float = Field(default=45.0, validation_alias="SEARCH_TIMEOUT_SECONDS")
	generation_timeout_seconds: float = Field(default=120.0, validation_alias="GENERATION_TIMEOUT_SECONDS")

	# Uploads larger than this are rejected before any provider call
	max_image_bytes: int = Field(default=10 * 1024 * 1024, validation_alias="MAX_IMAGE_BYTES")

	# Per-unit generation retry
	unit_max_attempts: int = Field(default=3, validation_alias="UNIT_MAX_ATTEMPTS")
	unit_backoff_seconds: float = Field(default=1.0, validation_alias="UNIT_BACKOFF_SECONDS")

	# Search context is split into segments of this size before fusion
	fusion_chunk_chars: int = Field(default=12000, validation_alias="FUSION_CHUNK_CHARS")

	# Stream the final report from the generation model (falls back to local rendering)
	stream_report: bool = Field(default=True, validation_alias="STREAM_REPORT")

	# Checkpoint persistence
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")
	checkpoint_retention_days: int = Field(default=7, validation_alias="CHECKPOINT_RETENTION_DAYS")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
