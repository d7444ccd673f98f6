from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Balncd Assistant API"
    gemini_api_key: str = ""
    # completion model; must support generateContent with function calling
    gemini_model: str = "gemini-2.5-pro"  # override via GEMINI_MODEL in .env if needed
    # embedding model; must support embedContent
    gemini_embedding_model: str = "gemini-embedding-001"
    gemini_timeout_seconds: int = 25
    database_url: str = ""
    # Comma-separated origins for CORS. Use "*" only for local/demo environments.
    cors_allow_origins: str = "*"
    jwt_secret_key: str
    jwt_algorithm: str
    log_level: str = "INFO"

    # Semantic memory retrieval
    memory_similarity_threshold: float = 0.7
    memory_top_k: int = 3
    memory_history_slice: int = 4
    chat_history_limit: int = 6

    # When false, a missing filing status defaults to Single and is disclosed.
    require_filing_status: bool = False

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
