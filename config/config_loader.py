"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this: pattern tables, keyword
lists, thresholds and batch limits are never hardcoded.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_classification_config() -> Dict[str, Any]:
    """Returns the classification block (thresholds, home currency, limits)."""
    return load_config()["classification"]


def get_pattern_tables() -> Dict[str, Any]:
    """
    Returns the raw pattern-store tables: subscription and issuer signatures
    plus the generic fallback rules.
    """
    config = load_config()
    return {
        "subscription_patterns": config["subscription_patterns"],
        "issuer_patterns": config["issuer_patterns"],
        "generic_amount_rules": config["generic_amount_rules"],
        "generic_merchant_rules": config["generic_merchant_rules"],
        "generic_merchant_min_length": config["generic_merchant_min_length"],
    }


def get_normalization_config() -> Dict[str, Any]:
    """Returns the normalization block (currency markers, boilerplate, corrections)."""
    return load_config()["normalization"]


def get_category_keywords() -> Dict[str, list[str]]:
    """Returns the transport / food / subscription keyword lists."""
    return load_config()["categories"]


def get_refinement_config() -> Dict[str, Any]:
    """Returns the subscription refinement thresholds."""
    return load_config()["refinement"]


def get_batch_processing_config() -> Dict[str, Any]:
    """Returns batch size, soft deadline and job defaults."""
    return load_config()["batch_processing"]


def get_error_handling_config() -> Dict[str, Any]:
    """Returns retry schedule and error statistics settings."""
    return load_config()["error_handling"]


def get_harness_config() -> Dict[str, Any]:
    """Returns parse-accuracy harness settings."""
    return load_config()["harness"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
