"""
Harvest Fleet Configuration Package

Example:
    from RecordHarvest.Fleet.config import load_config

    config = load_config(
        path="harvest.yaml",
        cli_overrides={"fleet": {"worker_count": 3, "max_id": 500}},
    )
    print(config.config_hash()[:8])
"""

from .loader import (
    export_config_schema,
    load_config,
    validate_config_file,
)
from .models import (
    CooldownPolicy,
    FleetPolicy,
    HarvestConfig,
    HttpClientConfig,
    LoggingConfig,
    OutputConfig,
    StoreConfig,
    WorkerPolicy,
)

__all__ = [
    # Models
    "HarvestConfig",
    "FleetPolicy",
    "WorkerPolicy",
    "CooldownPolicy",
    "StoreConfig",
    "OutputConfig",
    "HttpClientConfig",
    "LoggingConfig",
    # Loading/validation
    "load_config",
    "validate_config_file",
    "export_config_schema",
]
