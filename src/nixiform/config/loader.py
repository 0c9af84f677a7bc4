# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/config/loader.py

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import ValidationError

from ..core.errors import WrongUsage
from .models import NixiformConfig

log = logging.getLogger("nixiform")

ENV_PREFIX = "NIXIFORM_"

# environment variable suffix -> config field
ENV_FIELDS = {
    "SOURCE": "source",
    "NIX_FLAGS": "nix_flags",
    "SSH_USER": "ssh_user",
    "SSH_PORT": "ssh_port",
    "SSH_KEY": "ssh_key_path",
    "SSH_OPTS": "ssh_opts",
    "CONNECT_TIMEOUT": "connect_timeout",
    "JOBS": "jobs",
    "DEBUG": "debug",
    "WORK_DIR": "work_dir",
}


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_config_file(environ: Mapping[str, str]) -> Path | None:
    """
    Locate the optional YAML config:

    1. NIXIFORM_CONFIG environment variable (explicit override)
    2. nixiform.yaml in the current directory
    """
    env = environ.get(f"{ENV_PREFIX}CONFIG")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        raise WrongUsage(f"{ENV_PREFIX}CONFIG={env} does not exist")

    p = Path.cwd() / "nixiform.yaml"
    if p.is_file():
        return p
    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    return yaml.safe_load(expanded) or {}


def _from_env(environ: Mapping[str, str]) -> dict:
    data = {}
    for suffix, field in ENV_FIELDS.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None:
            data[field] = value
    return data


def load_config(
    path: str | Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[dict] = None,
) -> NixiformConfig:
    """
    Build the immutable run configuration.

    Precedence, lowest first: YAML file, ``NIXIFORM_*`` environment
    variables, explicit *overrides* (CLI flags).
    """
    environ = os.environ if environ is None else environ

    config_path = Path(path) if path else _find_config_file(environ)
    data: dict = {}
    if config_path:
        log.debug("Loading config from %s", config_path)
        data = _load_yaml(config_path)

    _deep_merge(data, _from_env(environ))
    _deep_merge(data, overrides or {})

    try:
        return NixiformConfig.model_validate(data)
    except ValidationError as exc:
        raise WrongUsage(f"invalid configuration: {exc}") from exc
