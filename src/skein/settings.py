"""Configuration loading and validation for Skein projects.

Configuration is loaded from skein.yaml and validated using Pydantic.
Each environment selects its graph store and oracle and tunes the batch,
metrics and feature-read workers.
"""

from __future__ import annotations

from functools import cache
from pathlib import Path

import omegaconf as oc
import pydantic as pdt
import pydantic_settings as pdts

import skein.errors as errors
import skein.oracles as oracles
import skein.store as store


class Settings(pdts.BaseSettings, strict=True, frozen=True, extra="forbid"):
    """Base settings class with strict validation."""

    pass


class BatchSettings(Settings):
    """Forest merge worker pool and per-group retry policy."""

    workers: int | None = None  # None = os.cpu_count()
    max_retries: int = pdt.Field(default=3, ge=0)
    backoff_seconds: float = pdt.Field(default=0.05, ge=0)
    shuffle: bool = True
    seed: int | None = None


class MetricsSettings(Settings):
    workers: int | None = None
    batch_size: int = pdt.Field(default=256, gt=0)
    max_retries: int = pdt.Field(default=3, ge=0)
    backoff_seconds: float = pdt.Field(default=0.05, ge=0)


class FeatureSettings(Settings):
    """Retry policy for per-event training reads."""

    read_retries: int = pdt.Field(default=2, ge=0)
    backoff_seconds: float = pdt.Field(default=0.01, ge=0)


class EnvironmentSettings(Settings):
    """Configuration for a single environment (dev, stg, prd)."""

    store: store.StoreKind
    oracle: oracles.OracleKind = pdt.Field(default_factory=oracles.NetworkxOracle)
    batch: BatchSettings = pdt.Field(default_factory=BatchSettings)
    metrics: MetricsSettings = pdt.Field(default_factory=MetricsSettings)
    features: FeatureSettings = pdt.Field(default_factory=FeatureSettings)


class SkeinSettings(Settings):
    """Root configuration loaded from skein.yaml.

    Example skein.yaml:
        name: fraud-graph
        default_env: dev
        environments:
          dev:
            store:
              kind: sqlite
              path: .skein/graph.db
            oracle:
              kind: networkx
            batch:
              workers: 8
              max_retries: 3
          test:
            store:
              kind: memory
            oracle:
              kind: bruteforce
    """

    name: str
    default_env: str
    environments: dict[str, EnvironmentSettings]

    # Internal: tracks which env is currently active (set via resolve_environment)
    _active_env: str | None = pdt.PrivateAttr(default=None)
    _config_path: Path | None = pdt.PrivateAttr(default=None)

    @pdt.model_validator(mode="after")
    def validate_default_env_exists(self) -> SkeinSettings:
        """Ensure default_env references a defined environment."""
        if self.default_env not in self.environments:
            raise ValueError(
                f"default_env '{self.default_env}' not found in environments: "
                f"{list(self.environments.keys())}"
            )
        return self

    @property
    def active_env(self) -> str:
        """Get the currently active environment name."""
        return self._active_env or self.default_env

    @property
    def active_environment(self) -> EnvironmentSettings:
        """Get the environment config for the currently active environment."""
        return self.environments[self.active_env]

    @property
    def config_path(self) -> Path | None:
        return self._config_path

    def resolve_environment(self, env: str | None = None) -> SkeinSettings:
        """Set the active environment, validating it exists.

        Args:
            env: Environment name to activate. If None, uses default_env.

        Returns:
            Self, for chaining.

        Raises:
            EnvironmentNotFoundError: If env is not defined.
        """
        target = env or self.default_env
        if target not in self.environments:
            raise errors.EnvironmentNotFoundError(
                env=target,
                available=list(self.environments.keys()),
            )
        object.__setattr__(self, "_active_env", target)
        return self


def load_skein_settings(
    path: Path | str = Path("skein.yaml"),
    env: str | None = None,
) -> SkeinSettings:
    """Load and validate Skein configuration from a YAML file.

    Relative SQLite store paths are kept as written; they are resolved
    against the configuration file's directory when the store is opened.

    Args:
        path: Path to skein.yaml file.
        env: Environment to activate. If None, uses default_env from config.

    Returns:
        Validated SkeinSettings instance.

    Raises:
        ConfigNotFoundError: If config file doesn't exist.
        ConfigValidationError: If config fails validation.
        EnvironmentNotFoundError: If env is not defined.
    """
    path = Path(path)

    if not path.exists():
        raise errors.ConfigNotFoundError(str(path))

    try:
        config = oc.OmegaConf.load(path)
        config_dict = oc.OmegaConf.to_container(config, resolve=True)
        settings = SkeinSettings.model_validate(config_dict)
    except pdt.ValidationError as e:
        raise errors.ConfigValidationError(
            path=str(path),
            details=_format_validation_errors(e),
        ) from e
    except oc.errors.OmegaConfBaseException as e:
        raise errors.ConfigValidationError(
            path=str(path),
            details=str(e),
        ) from e

    object.__setattr__(settings, "_config_path", path)
    settings.resolve_environment(env)
    return settings


def _format_validation_errors(error: pdt.ValidationError) -> str:
    """Format Pydantic validation errors into readable messages."""
    messages = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"])
        msg = err["msg"]
        messages.append(f"  - {loc}: {msg}")
    return "\n".join(messages)


@cache
def get_settings() -> SkeinSettings:
    """Get cached settings instance.

    For testing or when you need to load from a specific path,
    use load_skein_settings() directly.
    """
    return load_skein_settings()
