# airlite/settings.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

CONFIG_ENV = "AIRLITE_CONFIG"
DEFAULT_CONFIG = Path("airlite.yml")

# env var -> campo
ENV_FIELDS = {
    "AIRLITE_PATCH_ROOT": "patch_root",
    "AIRLITE_ENTRY": "entry",
    "AIRLITE_BUNDLER": "bundler",
    "AIRLITE_BUNDLER_TIMEOUT": "bundler_timeout",
    "AIRLITE_MAX_WORKERS": "max_workers",
    "LOG_LEVEL": "log_level",
    "JWT_SECRET": "jwt_secret",
}


class Settings(BaseModel):
    patch_root: Path = Path("airlite")
    platforms: List[str] = ["android", "ios"]
    entry: str = "index"
    bundler: str = "react-native"
    bundler_timeout: Optional[float] = None
    max_workers: int = Field(default=4, ge=1)
    log_level: str = "INFO"
    jwt_secret: str = "change-me-now"
    jwt_alg: str = "HS256"
    jwt_expire_min: int = 60 * 24 * 7


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    defaults < YAML file < environment < explicit overrides.
    The YAML file is AIRLITE_CONFIG, else ./airlite.yml when present.
    """

    data: Dict[str, Any] = {}

    if config_path is None and os.getenv(CONFIG_ENV):
        config_path = Path(os.environ[CONFIG_ENV])
    if config_path is not None:
        data.update(_load_yaml(config_path))
    elif DEFAULT_CONFIG.is_file():
        data.update(_load_yaml(DEFAULT_CONFIG))

    for env, field in ENV_FIELDS.items():
        value = os.getenv(env)
        if value:
            data[field] = value

    data.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**data)
