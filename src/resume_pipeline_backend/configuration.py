"""
Runtime configuration loading.

Defaults live in the packaged ``config.yaml``; environment variables reach the
config through ``oc.env`` interpolations, and a ``.env`` file in the working
directory is loaded first so local development needs no exported variables.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_ENV_VAR = "PIPELINE_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not DEFAULT_CONFIG_PATH.exists():  # pragma: no cover - broken install
        raise FileNotFoundError(f"Default config not found at {DEFAULT_CONFIG_PATH}")
    return OmegaConf.load(DEFAULT_CONFIG_PATH)


def load_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build a resolved configuration.

    Merge order: packaged defaults, then the YAML file named by
    ``PIPELINE_CONFIG_PATH`` (if set), then ``overrides``. The base is put in
    struct mode so a misspelled key fails loudly instead of being ignored.

    Args:
        overrides: Nested mapping of values to force, e.g. ``{"jobs": {"max_attempts": 5}}``

    Returns:
        A fully resolved, read-only DictConfig
    """
    load_dotenv()

    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    layers = [base]
    extra_path = os.environ.get(CONFIG_ENV_VAR)
    if extra_path:
        path = Path(extra_path)
        if not path.exists():
            raise FileNotFoundError(f"{CONFIG_ENV_VAR} points at a missing file: {path}")
        layers.append(OmegaConf.load(path))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = OmegaConf.merge(*layers)
    OmegaConf.resolve(merged)
    OmegaConf.set_readonly(merged, True)
    return merged  # type: ignore[return-value]


@lru_cache(maxsize=1)
def get_config() -> DictConfig:
    """Process-wide configuration, resolved once."""
    return load_config()


def split_api_keys(raw: Any) -> List[str]:
    """
    Normalize the provider credential setting into a list of keys.

    Accepts the comma-separated string form used in environment variables as
    well as a YAML list.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = [str(item) for item in raw]
    return [item.strip() for item in items if item and item.strip()]


def configure_logging(config: DictConfig) -> None:
    level_name = str(config.logging.level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    # boto's request logging drowns the worker output at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
