"""
Marketplace configuration parameters.

Defines economic parameters, chain identity and operational limits.
Values can be overridden from a dotenv file and from ``TIMEMARKET_*``
environment variables.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values

ENV_PREFIX = "TIMEMARKET_"


@dataclass
class MarketConfig:
    """Marketplace-wide configuration parameters"""

    # Chain identity
    chain_id: int = 11155111  # Sepolia
    block_time: int = 12  # Seconds per block
    deploy_block: int = 0  # First block the indexer scans

    # Economics
    platform_fee_bps: int = 250  # 2.5% default fee
    max_fee_bps: int = 1000  # Fee can never exceed 10%
    seconds_per_day: int = 86400

    # Decryption oracle
    kms_threshold: int = 1  # Signatures required on a decryption proof

    # Indexer
    fetch_timeout: float = 10.0  # Seconds per individual read
    match_on_purchase_id: bool = False

    # Logging
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    def __post_init__(self):
        if self.max_fee_bps > 10_000:
            raise ValueError(f"max_fee_bps must be <= 10000, got {self.max_fee_bps}")
        if not 0 <= self.platform_fee_bps <= self.max_fee_bps:
            raise ValueError(
                f"platform_fee_bps must be in [0, {self.max_fee_bps}], got {self.platform_fee_bps}"
            )
        if self.kms_threshold < 1:
            raise ValueError("kms_threshold must be at least 1")


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path) or default is None:
        return Path(raw) if raw else None
    return raw


def load_config(config_path: Optional[str] = None) -> MarketConfig:
    """
    Load configuration from a dotenv file and the environment.

    Process environment wins over the file, which wins over defaults.

    Args:
        config_path: Optional path to a dotenv file

    Returns:
        MarketConfig instance
    """
    values: Dict[str, Optional[str]] = {}
    if config_path:
        values.update(dotenv_values(config_path))
    values.update(os.environ)

    defaults = MarketConfig()
    overrides = {}
    for f in fields(MarketConfig):
        raw = values.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        overrides[f.name] = _coerce(raw, getattr(defaults, f.name))

    return MarketConfig(**overrides)
