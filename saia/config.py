"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class SaiaSettings(BaseSettings):
    # Shared HMAC secret. Evolution is only approved when this is set explicitly.
    secret: str = ""
    anthropic_api_key: str = ""
    default_model: str = "claude-sonnet-4-20250514"
    log_level: str = "INFO"

    # Persistence
    knowledge_dir: Path = Path("knowledge")
    logs_dir: Path = Path("logs")
    workspace_dir: Path = Path(".")

    # Request pipeline
    latency_slo_ms: float = 2000.0
    backend_timeout_s: float = 30.0
    default_router: str = "success_rate"
    base_cell_id: str = "cell-base"

    # Bandit router
    rl_epsilon0: float = 0.15
    rl_min_epsilon: float = 0.08
    rl_epsilon_decay: float = 0.0
    rl_warmup_steps: int = 0
    rl_alpha: float = 0.2
    rl_decay: float = 0.02
    rl_drift_window: int = 30
    rl_drift_drop: float = 0.08
    rl_spike_epsilon: float = 0.30
    rl_spike_decay: float = 0.01
    rl_spike_steps: int = 20
    tag_guard_threshold: float = 0.6

    # Domain synthesis / merging
    auto_synthesize: bool = True
    synthesize_cooldown_s: float = 15.0
    merge_min_name_sim: float = 0.88
    merge_min_tag_jaccard: float = 0.5
    merge_min_obs: int = 5

    # Tool governance
    tools_allow: str = ""  # comma-separated tool ids; empty = all registered tools
    tools_allow_network: bool = False

    # External safety model (optional)
    policy_llm_endpoint: str = ""
    policy_llm_api_key: str = ""
    policy_llm_model: str = ""
    policy_llm_timeout_s: float = 1.2
    policy_llm_max_retries: int = 2

    # Evolution
    evolution_min_cycles: int = 3
    evolution_interval_s: float = 300.0

    model_config = {"env_prefix": "SAIA_"}

    @property
    def allowed_tools(self) -> list[str]:
        return [t.strip() for t in self.tools_allow.split(",") if t.strip()]


settings = SaiaSettings()
