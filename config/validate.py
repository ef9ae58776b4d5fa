"""
Configuration schema validation for the trade monitor.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_networks_config(config: dict[str, Any]) -> list[str]:
    """Validate networks.json: at least one network, each with endpoints and addresses."""
    errors = _check_keys(config, ["networks"], "networks.json")
    if errors:
        return errors
    networks = config.get("networks", {})
    if not isinstance(networks, dict) or len(networks) == 0:
        return ["networks: must be a non-empty object"]
    for key, entry in networks.items():
        missing = _check_keys(
            entry,
            ["ws_url", "factory", "base_asset", "explorer_tx_url"],
            "networks.json",
        )
        errors.extend(f"networks.{key}.{m}" for m in missing)
        template = entry.get("explorer_tx_url", "")
        if template and "{tx_hash}" not in template:
            errors.append(f"networks.{key}.explorer_tx_url: must contain {{tx_hash}}")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    return _check_keys(
        config,
        [
            "connection.keepalive_interval_seconds",
            "connection.reconnect_delay_seconds",
            "connection.request_timeout_seconds",
        ],
        "timing.json",
    )


def validate_app_config(config: dict[str, Any]) -> list[str]:
    """Validate app.json has required fields."""
    return _check_keys(
        config,
        [
            "logging.log_dir",
            "trade_filter.min_base_amount",
        ],
        "app.json",
    )


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "networks.json": (loader.get_networks_config, validate_networks_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "app.json": (loader.get_app_config, validate_app_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - missing: {error}")
        raise ConfigValidationError("\n".join(lines))
