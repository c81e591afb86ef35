"""
borrowing_config -- single public entrypoint for borrowing policy.

Responsibility:
    Provides the ONLY way to obtain the borrowing policy at runtime through
    ``get_active_config()``: who may perform which workflow action, the
    business time zone used for overdue dates, and the batch reference
    format.  Returns a frozen ``BorrowingPolicyConfig``.

Architecture position:
    Configuration -- sits above ``borrowing_kernel``.  The kernel MUST NEVER
    import from ``borrowing_config``; ``bridges`` translates the config
    into kernel objects.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- unknown roles, actions, statuses or time zones,
      or other invalid settings.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``BORROWING_CONFIG_TRACE`` log entry with the config id, version and
    checksum, tying each workflow decision to the policy that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from borrowing_config.loader import load_yaml_file, parse_policy_config
from borrowing_config.schema import BorrowingPolicyConfig

_logger = logging.getLogger("borrowing_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(config_path: Path | None = None) -> BorrowingPolicyConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Override path to a policy YAML file.  Defaults to
            borrowing_config/sets/default.yaml.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If configuration validation fails.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG_PATH
    if not path.is_file():
        raise FileNotFoundError(f"Borrowing configuration not found: {path}")

    config = parse_policy_config(load_yaml_file(path))

    _logger.info(
        "BORROWING_CONFIG_TRACE",
        extra={
            "trace_type": "BORROWING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "business_timezone": config.business_timezone,
            "permission_count": len(config.permissions),
            "override_count": len(config.state_overrides),
        },
    )
    return config


__all__ = [
    "BorrowingPolicyConfig",
    "get_active_config",
]
