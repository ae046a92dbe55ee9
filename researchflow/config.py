from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter (classification, planning, synthesis)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "anthropic/claude-sonnet-4.5"
    openrouter_model: str = ""
    planner_model: str = ""  # optional override for plan generation only

    # Perplexity (sub-question answers)
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"
    perplexity_model: str = "sonar"
    perplexity_pro_model: str = "sonar-pro"
    perplexity_timeout_s: float = 60.0

    # Research pipeline
    research_max_rounds: int = 2  # 1 = initial round only, 2 = with gap filling
    research_max_batches: int = 5
    research_max_total_cost: float = 0.5  # USD per session
    research_parallel_searches: int = 3
    research_timeout_ms: int = 120000
    use_llm_classification: bool = False
    synthesis_max_tokens: int = 4000

    # Retry policy
    retry_max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    retry_jitter_factor: float = 0.2

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def llm_configured(self) -> bool:
        return bool(self.openrouter_api_key.strip())

    @property
    def search_configured(self) -> bool:
        return bool(self.perplexity_api_key.strip())


settings = Settings()
