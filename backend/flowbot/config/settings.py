# /flowbot/config/settings.py

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App Behavior
    environment: str = Field(default="production", env="ENVIRONMENT")
    api_version: str = "v1"
    workers: int = 4
    log_level: str = "INFO"
    default_flow_id: Optional[str] = None
    flows_dir: Optional[str] = None

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"
    whatsapp_template_language: str = "es"

    # HubSpot CRM
    hubspot_access_token: Optional[str] = None
    hubspot_api_url: str = "https://api.hubapi.com"

    # Meta Conversions API
    meta_pixel_id: Optional[str] = None
    meta_access_token: Optional[str] = None

    # AI APIs
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Redis (thread snapshots)
    redis_url: str = "redis://localhost:6379"
    thread_ttl_seconds: int = 7 * 24 * 3600

    # MongoDB (database nodes)
    mongo_uri: Optional[str] = None

    # Engine
    max_chain_steps: int = 100
    thread_inactivity_hours: int = 24
    cleanup_interval_minutes: int = 30
    webhook_default_timeout_ms: int = 10000
    webhook_retry_min_wait: float = 0.5
    webhook_retry_max_wait: float = 5.0

    # ---------------- Validators ---------------- #

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("max_chain_steps")
    @classmethod
    def chain_limit_must_be_positive(cls, v):
        if v < 1:
            raise ValueError("MAX_CHAIN_STEPS must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
