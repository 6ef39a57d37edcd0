"""Service settings, read from the environment or a local .env file.

One module-level ``settings`` instance is shared by every component.
"""

from pathlib import Path

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Default list of CORS allowed origins
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "https://localhost:3000",
    "https://localhost:8000",
    "http://0.0.0.0:8000",
]

# Fixed fallback order tried after the preferred model
DEFAULT_FALLBACK_MODELS = [
    "google/gemini-2.5-pro",
    "google/gemini-2.5-flash",
    "google/gemini-2.0-flash-001",
]


def _split_csv(v: str | list[str] | None, default: list[str]) -> list[str]:
    if isinstance(v, str) and v:
        return [item.strip() for item in v.split(",") if item.strip()]
    elif isinstance(v, list):
        return v
    return list(default)


class Settings(BaseSettings):
    """Upstream, credential pool, extraction, workflow and HTTP settings.

    Attributes:
        llm_base_url: Base URL of the OpenAI-compatible upstream service.
        llm_api_key: Optional credential used to seed an empty credential pool.
        model_id: Preferred model identifier, always tried first.
        fallback_models: Ordered list of models tried after the preferred one.
        temperature: Sampling temperature sent with every request.
        top_k: Top-k sampling parameter (sent as an extra body field).
        top_p: Nucleus sampling parameter.
        max_output_tokens: Upper bound on generated tokens per request.
        max_credentials: Maximum number of credentials held by the pool.
        credential_min_length: Minimum accepted length of a credential key.
        credential_max_errors: Consecutive errors before a credential cools down.
        credential_cooldown_seconds: Length of a cooldown period.
        rotation_max_rounds: How many times each credential may be tried per user action.
        rotation_backoff_multiplier: Multiplier for the wait between rotation attempts.
        rotation_backoff_max: Maximum wait between rotation attempts, in seconds.
        section_label: Label naming the reviewable sub-sections of the document.
        section_min_length: Minimum length of a detailed section body.
        section_detail_window: Characters inspected after a bare section label.
        section_min_end_distance: Minimum distance between a section start and its end marker.
        include_solution_4_5: Default for the optional fourth and fifth solutions.
        include_appendix: Default for the optional appendix stage.
        state_file: JSON file holding the persisted credential list and model choice.
        export_filename_prefix: Prefix of exported DOCX file names.
        max_sessions: Maximum number of sessions kept in memory.
        api_key: Shared secret expected in the X-API-Key header.
        log_level: Level of the docwriter loggers.
        cors_allowed_origins: List of allowed origins for CORS.
        LLM_CONNECT_TIMEOUT: LLM client connect timeout in seconds.
        LLM_READ_TIMEOUT: LLM client read timeout in seconds.
    """

    llm_base_url: str = Field(default="https://openrouter.ai/api/v1")
    llm_api_key: str | None = Field(default=None)
    model_id: str = Field(default="google/gemini-2.5-pro")
    fallback_models: list[str] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_MODELS))

    temperature: float = Field(default=0.7)
    top_k: int = Field(default=64)
    top_p: float = Field(default=0.95)
    max_output_tokens: int = Field(default=65536)

    max_credentials: int = Field(default=10)
    credential_min_length: int = Field(default=10)
    credential_max_errors: int = Field(default=3)
    credential_cooldown_seconds: float = Field(default=60.0)

    rotation_max_rounds: int = Field(default=1)
    rotation_backoff_multiplier: float = Field(default=0.5)
    rotation_backoff_max: float = Field(default=4.0)

    section_label: str = Field(default="SOLUTION")
    section_min_length: int = Field(default=300)
    section_detail_window: int = Field(default=4000)
    section_min_end_distance: int = Field(default=80)

    include_solution_4_5: bool = Field(default=False)
    include_appendix: bool = Field(default=True)

    state_file: Path = Field(default=Path(".docwriter_state.json"))
    export_filename_prefix: str = Field(default="Report_")
    max_sessions: int = Field(default=20)

    api_key: str | None = Field(default=None)
    log_level: str = Field(default="DEBUG")

    cors_allowed_origins: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CORS_ORIGINS),
    )

    LLM_CONNECT_TIMEOUT: float = Field(default=10.0, description="LLM client connect timeout in seconds.")
    LLM_READ_TIMEOUT: float = Field(default=300.0, description="LLM client read timeout in seconds.")

    model_config = {
        "env_file": ".env",
        "protected_namespaces": ("settings_",),
        "env_prefix": "",  # No prefix for environment variables
        "extra": "ignore",  # Ignore extra fields
    }

    @field_validator("cors_allowed_origins", mode="before")  # type: ignore
    @classmethod
    def assemble_cors_origins(cls, v: str | list[str] | None) -> list[str]:
        """Assembles the list of CORS allowed origins.

        If 'v' is a string, it splits it by commas. If 'v' is already a list,
        it's used directly. Otherwise, returns the default list of origins.
        """
        return _split_csv(v, DEFAULT_CORS_ORIGINS)

    @field_validator("fallback_models", mode="before")  # type: ignore
    @classmethod
    def assemble_fallback_models(cls, v: str | list[str] | None) -> list[str]:
        """Accepts a comma-separated string or a list; falls back to the built-in order."""
        return _split_csv(v, DEFAULT_FALLBACK_MODELS)


settings = Settings()
