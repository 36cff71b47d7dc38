from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import ConfigMetadata, JobType
from .upload_queue import MAX_CONCURRENT_UPLOADS
from .worker_pool import ENGINE_IDLE_TIMEOUT

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "JOB_STORE_URL": "job_store.base_url",
    "JOB_STORE_TOKEN": "job_store.token",
    "S3_BUCKET_NAME": "storage.bucket",
    "OCR_LANGUAGE": "recognition.language",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _environment_overrides() -> DictConfig:
    load_dotenv()
    overrides = OmegaConf.create()
    for name, key in ENV_OVERRIDES.items():
        value = os.environ.get(name)
        if value:
            OmegaConf.update(overrides, key, value)
    return overrides


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def make_runtime_config(overrides: Dict[str, Any] | None = None, use_environment: bool = True) -> DictConfig:
    """
    Merge environment and explicit overrides onto the packaged defaults.

    Precedence is defaults < environment < overrides. The defaults are
    struct-locked, so an override naming an unknown key raises.
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    layers = [base]
    if use_environment:
        layers.append(_environment_overrides())
    if overrides:
        layers.append(OmegaConf.create(overrides))
    return DictConfig(OmegaConf.merge(*layers))


def build_config_metadata() -> ConfigMetadata:
    defaults = get_default_config_container(resolve=True)
    # Never echo credentials back to clients.
    defaults.get("job_store", {}).pop("token", None)
    return ConfigMetadata(
        defaults=defaults,
        max_concurrent_uploads=MAX_CONCURRENT_UPLOADS,
        engine_idle_timeout=ENGINE_IDLE_TIMEOUT,
        supported_job_types=list(JobType),
    )
