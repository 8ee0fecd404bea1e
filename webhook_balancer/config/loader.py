"""YAML configuration loader with environment overlay."""

import os
from pathlib import Path
from typing import Mapping, Optional, Union

import yaml

from webhook_balancer.config.schema import Config, EndpointConfig

DEVELOPER_PREFIX = "DEVELOPER_"


def parse_developer_env(environ: Mapping[str, str]) -> list[EndpointConfig]:
    """Parse ``DEVELOPER_<NAME>_<SERVICE>=<url>`` variables into endpoint records.

    The first segment after the prefix is the backend name, the rest
    (underscores included) is the service. Both are lower-cased. Keys with
    fewer than two segments are ignored.
    """
    records = []
    for key, value in environ.items():
        if not key.startswith(DEVELOPER_PREFIX):
            continue
        parts = key[len(DEVELOPER_PREFIX):].split("_")
        if len(parts) < 2 or not parts[0]:
            continue
        records.append(EndpointConfig(
            backend=parts[0].lower(),
            service="_".join(parts[1:]).lower(),
            url=value,
        ))
    return records


def apply_env_overrides(config: Config, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Return a copy of ``config`` with environment settings layered on top.

    Raises:
        pydantic.ValidationError: If an overridden value is invalid
    """
    if environ is None:
        environ = os.environ

    data = config.model_dump()
    env_records = parse_developer_env(environ)
    if env_records:
        data["backends"].extend(r.model_dump() for r in env_records)
    if environ.get("LOAD_BALANCER_STRATEGY"):
        data["balancer"]["strategy"] = environ["LOAD_BALANCER_STRATEGY"]
    if environ.get("PORT"):
        data["balancer"]["port"] = environ["PORT"]

    return Config.model_validate(data)


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Load configuration from YAML file.

    Args:
        path: Path to config file. If None, checks WEBHOOK_BALANCER_CONFIG env var,
              then falls back to ./config.yaml
        environ: Environment used for the overlay (defaults to os.environ)

    Returns:
        Parsed Config object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is invalid YAML
        pydantic.ValidationError: If config doesn't match schema
    """
    if environ is None:
        environ = os.environ

    if path is None:
        path = environ.get("WEBHOOK_BALANCER_CONFIG", "config.yaml")

    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}

    return apply_env_overrides(Config.model_validate(data), environ)


def load_config_or_default(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Config:
    """Load configuration, returning defaults if file doesn't exist.

    The environment overlay still applies to the defaults, so a deployment
    configured purely through ``DEVELOPER_*`` variables works without a file.
    """
    try:
        return load_config(path, environ)
    except FileNotFoundError:
        return apply_env_overrides(Config(), environ)
