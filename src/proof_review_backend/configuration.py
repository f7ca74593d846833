"""
Configuration loading for the proof review backend.

Defaults live in ``config/config.yaml`` next to this module. Values can be
overridden with ``PROOF_REVIEW_*`` environment variables (a ``.env`` file is
honoured) or, in tests, by passing explicit overrides to
``make_runtime_config``.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:3]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; the package data is missing from this install.")

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "PROOF_REVIEW_DB_PATH": "database.path",
    "PROOF_REVIEW_STORE_BACKEND": "storage.backend",
    "PROOF_REVIEW_MEDIA_API_BASE": "storage.media_api.api_base",
    "PROOF_REVIEW_MEDIA_CLOUD_NAME": "storage.media_api.cloud_name",
    "PROOF_REVIEW_MEDIA_UPLOAD_PRESET": "storage.media_api.upload_preset",
    "PROOF_REVIEW_S3_BUCKET": "storage.s3.bucket",
    "PROOF_REVIEW_S3_PREFIX": "storage.s3.prefix",
    "PROOF_REVIEW_MAX_WORKERS": "uploads.max_workers",
    "PROOF_REVIEW_MAX_ATTEMPTS": "uploads.max_attempts",
    "PROOF_REVIEW_SIZE_TOLERANCE": "review.size_tolerance_inches",
    "PROOF_REVIEW_LOG_LEVEL": "logging.level",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _environment_dotlist() -> List[str]:
    return [f"{key}={os.environ[name]}" for name, key in ENV_OVERRIDES.items() if os.environ.get(name)]


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the effective configuration.

    Precedence, lowest first: packaged defaults, environment variables,
    explicit ``overrides``. The base is put in struct mode so that a
    misspelled override key fails loudly instead of being ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    env_config = OmegaConf.from_dotlist(_environment_dotlist())
    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, env_config, cli_config))
    return merged


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return make_runtime_config()


def configure_logging(config: Optional[DictConfig] = None) -> None:
    config = config or get_settings()
    logging.basicConfig(
        level=getattr(logging, str(config.logging.level).upper(), logging.INFO),
        format=config.logging.format,
    )
