"""
reimbursement_config -- single public entrypoint for runtime settings.

Callers obtain settings through ``load_settings()``; no other component reads
configuration files or ``REIMBURSEMENT_*`` environment variables directly.
The kernel never imports this package; the boundary layer passes the
relevant values into kernel services.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from reimbursement_config.loader import load_settings as _load_settings
from reimbursement_config.schema import Settings

_logger = logging.getLogger("reimbursement_kernel.config")

__all__ = ["Settings", "load_settings"]


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load settings from packaged defaults, an optional YAML file and the
    environment.

    Raises:
        FileNotFoundError: override file missing.
        ValueError: invalid configuration.
    """
    settings = _load_settings(path, environ)
    _logger.info(
        "REIMBURSEMENT_CONFIG_TRACE",
        extra={
            "database_url": settings.safe_database_url,
            "required_approver_count": settings.required_approver_count,
            "amount_decimal_places": settings.amount_decimal_places,
            "default_currency": settings.default_currency,
        },
    )
    return settings
