from typing import List, Union, Any, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True)

    # App Settings
    PROJECT_NAME: str = "Stageflow API"
    PROJECT_DESCRIPTION: str = "API for building and running multi-stage LLM workflows"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # CORS Settings
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Database Settings
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "stageflow"
    POSTGRES_PORT: str = "5432"
    DATABASE_URI: Optional[str] = Field(default=None, validate_default=True)
    SQL_ECHO: bool = False

    @field_validator("DATABASE_URI", mode="before")
    def assemble_db_connection(cls, v: Optional[str], values: Any) -> str:
        if isinstance(v, str) and v:
            return v

        return (
            f"postgresql+asyncpg://{values.data['POSTGRES_USER']}:{values.data['POSTGRES_PASSWORD']}"
            f"@{values.data['POSTGRES_SERVER']}:{values.data['POSTGRES_PORT']}/{values.data['POSTGRES_DB']}"
        )

    # Auth0 Settings
    AUTH0_DOMAIN: str
    AUTH0_AUDIENCE: Union[str, List[str]]
    AUTH0_ALGORITHMS: List[str] = ["RS256"]
    AUTH0_ISSUER: Optional[str] = Field(default=None, validate_default=True)

    @field_validator("AUTH0_ISSUER", mode="before")
    def assemble_auth0_issuer(cls, v: Optional[str], values: Any) -> str:
        if v is not None:
            return v
        return f"https://{values.data['AUTH0_DOMAIN']}/"

    # Model invocation
    OPENAI_BASE_URL: Optional[str] = None
    OPENAI_API_KEY: Optional[str] = None
    DEFAULT_MODEL_ID: str = "gpt-4o-mini"
    MODEL_TIMEOUT_SECONDS: float = 60.0


# Create settings instance
settings = Settings()
