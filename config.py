"""
Configuration Management for Market Analyst.

WHAT THIS FILE DOES:
-------------------
Loads and validates configuration from YAML files with sensible defaults.
Provides a clean interface for accessing tool provider launch commands,
the language model used by the planner/analyzer/synthesizer, orchestrator
time bounds, session storage and logging.

CONFIG FILE LOCATION:
--------------------
Default: ~/.analyst/config.yaml

CONFIG FORMAT:
-------------
```yaml
providers:
  crypto:
    command: "node"
    args: ["dist/mcp/crypto-server.js"]
  news:
    command: "node"
    args: ["dist/mcp/news-server.js"]
    env:
      NEWS_API_KEY: "..."

llm:
  provider: "ollama"
  model: "llama3.2"
  base_url: "http://localhost:11434"

orchestrator:
  step_timeout: 30

storage:
  sessions_dir: "~/.analyst/sessions"
  retention_days: 30
```
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


KNOWN_LLM_PROVIDERS = ("ollama", "anthropic", "openai")


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class ProviderServerConfig:
    """Launch command for one tool provider subprocess."""
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> dict:
        result = {"command": self.command, "args": list(self.args)}
        if self.env:
            result["env"] = dict(self.env)
        if not self.enabled:
            result["enabled"] = False
        return result


@dataclass
class LLMConfig:
    """Configuration for the model behind planning, analysis and synthesis."""
    provider: str = "ollama"
    model: str = "llama3.2"
    base_url: Optional[str] = "http://localhost:11434"
    api_key_env: Optional[str] = None
    planning_temperature: float = 0.1
    analysis_temperature: float = 0.2
    synthesis_temperature: float = 0.3
    timeout: float = 120.0

    def get_api_key(self) -> Optional[str]:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None

    def to_dict(self) -> dict:
        """Convert to the dictionary shape expected by get_provider()."""
        result = {
            "provider": self.provider,
            "model": self.model,
            "timeout": self.timeout,
        }
        if self.api_key_env:
            result["api_key_env"] = self.api_key_env
        if self.base_url:
            result["base_url"] = self.base_url
        return result


@dataclass
class OrchestratorConfig:
    """Time bounds for provider calls, in seconds."""
    step_timeout: float = 30.0
    connect_timeout: float = 30.0
    health_timeout: float = 10.0
    context_news_limit: int = 10


@dataclass
class StorageConfig:
    """Configuration for session persistence."""
    sessions_dir: str = "~/.analyst/sessions"
    retention_days: int = 30
    max_sessions: int = 100

    @property
    def sessions_path(self) -> Path:
        """Get sessions directory, expanding ~ if present."""
        return Path(self.sessions_dir).expanduser()


@dataclass
class LoggingConfig:
    """Configuration for log output."""
    level: str = "WARNING"
    file: Optional[str] = None


@dataclass
class Config:
    """
    Complete configuration for Market Analyst.

    This is the main configuration object that holds all settings.
    It can be loaded from a YAML file or created with defaults.
    """
    providers: dict[str, ProviderServerConfig] = field(default_factory=dict)
    llm: LLMConfig = field(default_factory=LLMConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_provider(self, name: str) -> Optional[ProviderServerConfig]:
        """Get a tool provider launch configuration by name."""
        return self.providers.get(name)

    def list_providers(self) -> list[str]:
        """List the names of all enabled tool providers."""
        return [name for name, server in self.providers.items() if server.enabled]


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """
    Get the default configuration.

    Providers point at the compiled crypto/news/stock servers next to the
    working directory, and the model defaults to a local Ollama llama3.2.
    """
    return Config(
        providers={
            "crypto": ProviderServerConfig(command="node", args=["dist/mcp/crypto-server.js"]),
            "news": ProviderServerConfig(command="node", args=["dist/mcp/news-server.js"]),
            "stock": ProviderServerConfig(command="node", args=["dist/mcp/stock-server.js"]),
        },
        llm=LLMConfig(),
        orchestrator=OrchestratorConfig(),
        storage=StorageConfig(),
        logging=LoggingConfig(),
    )


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _parse_provider_config(data: dict) -> ProviderServerConfig:
    """Parse a tool provider configuration from dict."""
    return ProviderServerConfig(
        command=data.get("command", "node"),
        args=[str(arg) for arg in data.get("args", [])],
        env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        enabled=data.get("enabled", True),
    )


def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    if "providers" in data:
        config.providers = {}
        for name, provider_data in (data["providers"] or {}).items():
            config.providers[name] = _parse_provider_config(provider_data or {})

    if "llm" in data:
        llm_data = data["llm"] or {}
        defaults = LLMConfig()
        config.llm = LLMConfig(
            provider=llm_data.get("provider", defaults.provider),
            model=llm_data.get("model", defaults.model),
            base_url=llm_data.get("base_url", defaults.base_url),
            api_key_env=llm_data.get("api_key_env"),
            planning_temperature=float(llm_data.get("planning_temperature", defaults.planning_temperature)),
            analysis_temperature=float(llm_data.get("analysis_temperature", defaults.analysis_temperature)),
            synthesis_temperature=float(llm_data.get("synthesis_temperature", defaults.synthesis_temperature)),
            timeout=float(llm_data.get("timeout", defaults.timeout)),
        )

    if "orchestrator" in data:
        orchestrator_data = data["orchestrator"] or {}
        defaults = OrchestratorConfig()
        config.orchestrator = OrchestratorConfig(
            step_timeout=float(orchestrator_data.get("step_timeout", defaults.step_timeout)),
            connect_timeout=float(orchestrator_data.get("connect_timeout", defaults.connect_timeout)),
            health_timeout=float(orchestrator_data.get("health_timeout", defaults.health_timeout)),
            context_news_limit=int(orchestrator_data.get("context_news_limit", defaults.context_news_limit)),
        )

    if "storage" in data:
        storage_data = data["storage"] or {}
        defaults = StorageConfig()
        config.storage = StorageConfig(
            sessions_dir=storage_data.get("sessions_dir", defaults.sessions_dir),
            retention_days=int(storage_data.get("retention_days", defaults.retention_days)),
            max_sessions=int(storage_data.get("max_sessions", defaults.max_sessions)),
        )

    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(
            level=str(logging_data.get("level", "WARNING")).upper(),
            file=logging_data.get("file"),
        )

    return config


def apply_env_overrides(config: Config, environ: Optional[dict] = None) -> Config:
    """
    Apply environment variable overrides on top of a loaded config.

    Recognized variables: OLLAMA_HOST, OLLAMA_MODEL, ANALYST_LOG_LEVEL,
    ANALYST_STEP_TIMEOUT.
    """
    environ = os.environ if environ is None else environ

    if config.llm.provider == "ollama":
        if environ.get("OLLAMA_HOST"):
            config.llm.base_url = environ["OLLAMA_HOST"]
        if environ.get("OLLAMA_MODEL"):
            config.llm.model = environ["OLLAMA_MODEL"]
    if environ.get("ANALYST_LOG_LEVEL"):
        config.logging.level = environ["ANALYST_LOG_LEVEL"].upper()
    if environ.get("ANALYST_STEP_TIMEOUT"):
        config.orchestrator.step_timeout = float(environ["ANALYST_STEP_TIMEOUT"])

    return config


def validate_config(config: Config) -> list[str]:
    """
    Check a configuration for values the engine cannot work with.

    Returns:
        List of human-readable problems (empty if the config is usable)
    """
    errors = []

    if config.orchestrator.step_timeout < 1:
        errors.append("orchestrator.step_timeout must be at least 1 second")
    if config.orchestrator.connect_timeout < 1:
        errors.append("orchestrator.connect_timeout must be at least 1 second")
    if config.storage.retention_days < 1:
        errors.append("storage.retention_days must be at least 1")
    if config.storage.max_sessions < 1:
        errors.append("storage.max_sessions must be at least 1")
    if not config.list_providers():
        errors.append("at least one tool provider must be enabled")
    if config.llm.provider not in KNOWN_LLM_PROVIDERS:
        errors.append(
            f"llm.provider must be one of {', '.join(KNOWN_LLM_PROVIDERS)} "
            f"(got '{config.llm.provider}')"
        )

    return errors


def _default_paths() -> list[Path]:
    return [
        Path.home() / ".analyst" / "config.yaml",
        Path("./analyst.yaml"),
        Path("./analyst.yml"),
    ]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries default locations:
              1. ~/.analyst/config.yaml
              2. ./analyst.yaml
              3. Falls back to defaults

    Returns:
        Loaded configuration (or defaults if file not found)
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    active = get_config_path()
    if active:
        return load_config_from_file(active)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """Save configuration to a YAML file."""
    data = {
        "providers": {
            name: server.to_dict()
            for name, server in config.providers.items()
        },
        "llm": {
            **config.llm.to_dict(),
            "base_url": config.llm.base_url,
            "planning_temperature": config.llm.planning_temperature,
            "analysis_temperature": config.llm.analysis_temperature,
            "synthesis_temperature": config.llm.synthesis_temperature,
        },
        "orchestrator": {
            "step_timeout": config.orchestrator.step_timeout,
            "connect_timeout": config.orchestrator.connect_timeout,
            "health_timeout": config.orchestrator.health_timeout,
            "context_news_limit": config.orchestrator.context_news_limit,
        },
        "storage": {
            "sessions_dir": config.storage.sessions_dir,
            "retention_days": config.storage.retention_days,
            "max_sessions": config.storage.max_sessions,
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    if config.logging.file:
        data["logging"]["file"] = config.logging.file

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def get_config_path() -> Optional[Path]:
    """
    Get the path to the active config file, if any exists.

    Returns:
        Path to config file or None if using defaults
    """
    for path in _default_paths():
        if path.exists():
            return path

    return None
