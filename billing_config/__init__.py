"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  No other component reads the YAML file or the environment.

Architecture position:
    Configuration -- sits above ``billing_kernel`` and below
    ``billing_services``.  The kernel MUST NEVER import from
    ``billing_config``; ``bridges.build_billing_policy`` translates the
    configuration into kernel inputs.

Environment overrides:
    BILLING_CONFIG_PATH   -- YAML file to load instead of defaults.yaml
    BILLING_DATABASE_URL  -- replaces ``database.url``

Audit relevance:
    Every successful load emits a ``billing_config_loaded`` log entry with
    the config id, version and checksum.
"""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path

from billing_config.bridges import build_billing_policy
from billing_config.loader import load_config_file
from billing_config.schema import BillingConfig
from billing_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"
DATABASE_URL_ENV = "BILLING_DATABASE_URL"


def get_active_config(path: Path | str | None = None) -> BillingConfig:
    """The ONLY public configuration entrypoint.

    Resolution order for the file: explicit ``path``, then
    ``$BILLING_CONFIG_PATH``, then the packaged ``defaults.yaml``.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = load_config_file(resolved)

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        config = dataclasses.replace(
            config, database=dataclasses.replace(config.database, url=database_url),
        )

    _logger.info(
        "billing_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "config_path": str(resolved),
        },
    )
    return config


__all__ = ["BillingConfig", "build_billing_policy", "get_active_config"]
