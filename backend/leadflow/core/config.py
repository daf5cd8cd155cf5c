"""
Configuration Management
Loads settings from YAML files and environment variables
"""
import yaml
import os
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings

from leadflow.domain.models.queue_message import RetryPolicy


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Redis/Queue
    redis_url: str = "redis://localhost:6379"
    intake_topic: str = "leads.intake"
    sync_topic: str = "leads.crm_sync"
    intake_group: str = "intake-processors"
    sync_group: str = "crm-sync-processors"

    # Worker loop
    poll_interval: float = 1.0      # Seconds to sleep when the topic is empty
    sweep_interval: float = 30.0    # Seconds between pending-entry sweeps

    # Backends: "redis" | "memory", "supabase" | "memory", "hubspot" | "memory"
    queue_backend: str = "redis"
    storage_backend: str = "supabase"
    crm_provider: str = "hubspot"

    # Persistence / CRM
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    hubspot_access_token: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


class ConfigManager:
    """Manages loading and merging configuration from multiple sources"""

    DEFAULT_RETRY_POLICY = {"max_retries": 5, "claim_timeout_ms": 60_000}

    def __init__(self, env: Optional[str] = None, config_dir: Optional[Path] = None):
        self.env = env or os.getenv("ENVIRONMENT", "development")
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration files in order of precedence"""
        # Load default config if exists
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            self._config = self._load_yaml(default_path)

        # Load environment-specific config
        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self._deep_merge(self._config, env_config)

        # Substitute environment variables
        self._substitute_env_vars(self._config)

    def _load_yaml(self, path: Path) -> Dict:
        """Load YAML file"""
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _substitute_env_vars(self, config: Dict) -> None:
        """Replace ${VAR_NAME} with environment variable values"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._substitute_env_vars(value)
            elif isinstance(value, str) and value.startswith("${") and value.endswith("}"):
                env_var = value[2:-1]
                config[key] = os.getenv(env_var, value)

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: config.get("crm.followup_sla_hours") -> 24
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def retry_policy(self, topic: str, group: str) -> RetryPolicy:
        """
        Get the retry policy for a topic + consumer group.

        Per-group overrides live under queue.retry_policies.<topic>.<group>
        and are merged over queue.defaults. Topic names contain dots, so the
        lookup walks the mapping directly instead of using get().
        """
        merged = dict(self.DEFAULT_RETRY_POLICY)
        merged.update(self.get("queue.defaults", {}) or {})

        policies = self.get("queue.retry_policies", {}) or {}
        override = (policies.get(topic) or {}).get(group) or {}
        merged.update(override)

        return RetryPolicy(
            max_retries=int(merged["max_retries"]),
            claim_timeout_ms=int(merged["claim_timeout_ms"])
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
