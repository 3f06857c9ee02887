from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Load environment variables from .env file
load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

DEFAULTS: Dict[str, Any] = {
    "archive_dir": "data/archive",
    "processing_dir": "data/processing",
    "database_path": "data/dpg_jobs.db",
    "max_workers": 4,
    "archive_file_mode": 0o664,
    "working_file_mode": 0o664,
    "checksum_algorithm": "md5",
    "iiif": {
        "bucket": "",
        "staging_dir": "data/iiif_staging",
        "jp2_rate": 50.0,
    },
}

# environment variable -> dotted config key
ENV_OVERRIDES = {
    "ARCHIVE_DIR": "archive_dir",
    "PROCESSING_DIR": "processing_dir",
    "DB_PATH": "database_path",
    "MAX_WORKERS": "max_workers",
    "IIIF_BUCKET": "iiif.bucket",
    "IIIF_STAGING_DIR": "iiif.staging_dir",
}


def config_path() -> Optional[Path]:
    explicit = os.environ.get("DPG_JOBS_CONFIG")
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Config file named by DPG_JOBS_CONFIG not found: {path}")
        return path
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


@lru_cache(maxsize=1)
def _load_file_config() -> DictConfig:
    path = config_path()
    if path is None:
        return OmegaConf.create({})
    return OmegaConf.load(path)


def _env_config() -> DictConfig:
    env = OmegaConf.create({})
    for var, key in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            OmegaConf.update(env, key, int(value) if key == "max_workers" else value)
    return env


def load_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the service configuration.

    Layers, last wins: built-in defaults, config/config.yaml, environment
    variables, explicit overrides. Unknown keys in any layer are rejected.
    """
    base = OmegaConf.create(DEFAULTS)
    OmegaConf.set_struct(base, True)
    merged = OmegaConf.merge(base, _load_file_config(), _env_config(), OmegaConf.create(overrides or {}))
    return DictConfig(merged)
