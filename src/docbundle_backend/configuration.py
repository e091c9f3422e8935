from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Load environment variables from .env file
load_dotenv()

_HERE = Path(__file__).resolve()
DEFAULT_CONFIG_PATH = _HERE.parent / "config/config.yaml"


def _config_path() -> Path:
    override = os.environ.get("DOCBUNDLE_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_PATH


@dataclass(frozen=True)
class RuntimeSettings:
    """
    Deployment settings read from the environment.

    Attributes:
        workspace_root: Parent directory for per-request temporary workspaces
        upload_root: Directory that local content references are resolved against
        database_path: SQLite file holding submission records
        s3_bucket_name: Default bucket for bare S3 keys (optional)
    """

    workspace_root: Path
    upload_root: Path
    database_path: Path
    s3_bucket_name: str

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            workspace_root=Path(os.environ.get("WORKSPACE_ROOT", "tmp")),
            upload_root=Path(os.environ.get("UPLOAD_DIR", "uploads")),
            database_path=Path(os.environ.get("DATABASE_PATH", "data/submissions.db")),
            s3_bucket_name=os.environ.get("S3_BUCKET_NAME", ""),
        )


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    path = _config_path()
    if not path.exists():
        raise FileNotFoundError(f"Default config not found at {path}")
    return OmegaConf.load(path)


def make_runtime_config(overrides: Dict[str, Any] | None = None) -> DictConfig:
    """
    Merge overrides on top of the packaged defaults.

    The base is put in struct mode, so an override naming a key that does not
    exist in config.yaml raises instead of being silently ignored.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged
