from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    clients_config_path: str = "config/clients.yaml"
    log_level: str = "INFO"

    openai_api_key: str | None = None
    vision_model: str = "gpt-4o-mini"

    kommo_domain: str = "kommo.com"
    meta_graph_version: str = "v18.0"

    http_timeout_seconds: float = 15.0

    crm_retry_attempts: int = 3
    crm_retry_delay_seconds: float = 1.0
    vision_retry_attempts: int = 3
    vision_retry_delay_seconds: float = 2.0
    backend_retry_attempts: int = 3
    backend_retry_delay_seconds: float = 1.0
    attribution_retry_attempts: int = 3
    attribution_retry_delay_seconds: float = 1.0

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
