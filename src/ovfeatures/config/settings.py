"""
Configuration management for Overture feature retrieval.

Usage:
    from ovfeatures.config.settings import Config
    config = Config()
    stream = FeatureStream(settings=config)

Environment Variables:
    OVERTURE_S3_BASE_URL: HTTPS base URL of the public Overture bucket
    OVERTURE_STAC_BASE_URL: Base URL of the Overture STAC catalog
    OVERTURE_BUCKET: Bucket name used in registry file paths
    OVERTURE_S3_REGION: AWS region of the bucket
    OVERTURE_HTTP_TIMEOUT: Timeout in seconds for catalog and index requests
    OVFEATURES_BACKEND: auto | duckdb | arrow
    OVFEATURES_CONCURRENCY: Worker threads for range reads
    OVFEATURES_BATCH_SIZE: Rows per record batch
    DUCKDB_MEMORY_LIMIT: Memory limit for DuckDB
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BACKEND_CHOICES = ("auto", "duckdb", "arrow")


@dataclass
class OvertureConfig:
    """Overture Maps data source configuration."""
    s3_base_url: str = "https://overturemaps-us-west-2.s3.us-west-2.amazonaws.com"
    stac_base_url: str = "https://stac.overturemaps.org"
    bucket: str = "overturemaps-us-west-2"
    s3_region: str = "us-west-2"

    def __post_init__(self):
        """Validate Overture Maps configuration."""
        for name in ("s3_base_url", "stac_base_url"):
            value = getattr(self, name)
            if not value.startswith(('http://', 'https://')):
                raise ValueError(f"{name} must include protocol (https://)")
            setattr(self, name, value.rstrip('/'))

        if not self.bucket:
            raise ValueError("Bucket name cannot be empty")

    @property
    def catalog_url(self) -> str:
        return f"{self.stac_base_url}/catalog.json"


@dataclass
class HttpConfig:
    """HTTP client configuration for catalog and index requests."""
    timeout_s: float = 30.0

    def __post_init__(self):
        if self.timeout_s <= 0:
            raise ValueError("HTTP timeout must be positive")


@dataclass
class ProcessingConfig:
    """Backend selection and read tuning."""
    backend: str = "auto"
    memory_limit: str = "2GB"
    concurrency: int = 4
    batch_size: int = 1024

    def __post_init__(self):
        """Validate processing configuration."""
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(f"Backend must be one of: {', '.join(BACKEND_CHOICES)}")

        if self.concurrency < 1:
            raise ValueError("Concurrency must be positive")

        if self.batch_size < 1:
            raise ValueError("Batch size must be positive")

        if not any(self.memory_limit.endswith(unit) for unit in ['MB', 'GB', 'TB']):
            raise ValueError("Memory limit must end with MB, GB, or TB")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


class Config:
    """
    Centralized configuration for feature retrieval.

    Environment variables loaded (in order of preference):
    1. Explicit environment file passed to constructor
    2. .env.{ENVIRONMENT} (where ENVIRONMENT=development|production|staging)
    3. .env file in project root
    4. System environment variables

    Example:
        # Defaults plus whatever the environment provides
        config = Config()

        # Explicit env file
        config = Config(env_file=Path("/etc/ovfeatures.env"))

        # Tests: skip .env discovery entirely
        config = Config(load_env=False)
    """

    def __init__(self,
                 environment: Optional[str] = None,
                 env_file: Optional[Path] = None,
                 load_env: bool = True):
        """
        Initialize configuration.

        Args:
            environment: Target environment (development|staging|production)
            env_file: Explicit path to environment file
            load_env: Whether to read .env files before reading os.environ
        """
        self.environment = environment or os.getenv("ENVIRONMENT", "development")
        self.project_root = self._find_project_root()
        self._loaded_env_files: list[str] = []

        if load_env:
            self._load_environment_variables(env_file)

        self._load_overture_config()
        self._load_http_config()
        self._load_processing_config()

    def _find_project_root(self) -> Path:
        """Find project root directory containing pyproject.toml, .git or .env."""
        current = Path(__file__).resolve()

        for parent in current.parents:
            if any((parent / marker).exists() for marker in ['pyproject.toml', '.git']):
                return parent

        if (Path.cwd() / '.env').exists():
            return Path.cwd()

        return Path.cwd()

    def _load_environment_variables(self, env_file: Path | None) -> None:
        """Load environment variables from appropriate source."""
        loaded_files = []

        if env_file:
            if env_file.exists():
                load_dotenv(env_file)
                loaded_files.append(str(env_file))
                logger.info(f"Loaded configuration from {env_file}")
            else:
                raise ConfigurationError(f"Specified env file not found: {env_file}")

        else:
            env_specific_file = self.project_root / f".env.{self.environment}"
            if env_specific_file.exists():
                load_dotenv(env_specific_file)
                loaded_files.append(str(env_specific_file))
                logger.info(f"Loaded environment-specific config: {env_specific_file}")

            generic_env_file = self.project_root / ".env"
            if generic_env_file.exists():
                load_dotenv(generic_env_file)
                loaded_files.append(str(generic_env_file))
                logger.debug(f"Loaded generic config: {generic_env_file}")

        if not loaded_files:
            logger.debug("No .env files found, using system environment variables only")

        self._loaded_env_files = loaded_files

    def _load_overture_config(self) -> None:
        """Load Overture Maps configuration with public defaults."""
        defaults = OvertureConfig()
        try:
            self.overture = OvertureConfig(
                s3_base_url=os.getenv("OVERTURE_S3_BASE_URL", defaults.s3_base_url),
                stac_base_url=os.getenv("OVERTURE_STAC_BASE_URL", defaults.stac_base_url),
                bucket=os.getenv("OVERTURE_BUCKET", defaults.bucket),
                s3_region=os.getenv("OVERTURE_S3_REGION", defaults.s3_region),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid Overture configuration: {e}")

    def _load_http_config(self) -> None:
        try:
            self.http = HttpConfig(timeout_s=float(os.getenv("OVERTURE_HTTP_TIMEOUT", "30")))
        except ValueError as e:
            raise ConfigurationError(f"Invalid HTTP configuration: {e}")

    def _load_processing_config(self) -> None:
        """Load backend selection and read tuning."""
        try:
            self.processing = ProcessingConfig(
                backend=os.getenv("OVFEATURES_BACKEND", "auto").lower(),
                memory_limit=os.getenv("DUCKDB_MEMORY_LIMIT", "2GB"),
                concurrency=int(os.getenv("OVFEATURES_CONCURRENCY", "4")),
                batch_size=int(os.getenv("OVFEATURES_BATCH_SIZE", "1024")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid processing configuration: {e}")

    def get_duckdb_settings(self) -> dict[str, Any]:
        """
        Get DuckDB configuration settings as dictionary.

        Returns:
            Dictionary of DuckDB SET values ready for connection setup
        """
        return {
            'memory_limit': self.processing.memory_limit,
            'threads': self.processing.concurrency,
            's3_region': self.overture.s3_region,
            'http_timeout': max(1, int(self.http.timeout_s)),
        }

    def __repr__(self) -> str:
        return (
            f"Config(environment={self.environment}, "
            f"backend={self.processing.backend}, "
            f"s3_base_url={self.overture.s3_base_url})"
        )
