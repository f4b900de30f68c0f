#!/usr/bin/env python3
"""
Configuration Manager for the contract graph pipeline.

Manages fetch defaults, explorer selection and API credentials.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict, fields

from rich.console import Console

from core.batch_fetcher import FetchOptions
from core.explorer_client import DEFAULT_USER_AGENT


@dataclass
class GraphConfig:
    """Main configuration for the contract graph pipeline."""

    # Output
    output_dir: str = "./contract_data"

    # Fetch pacing
    batch_size: int = 10
    delay_between_requests: float = 0.2   # seconds
    delay_between_batches: float = 2.0    # seconds
    max_retries: int = 3
    save_progress: bool = True

    # Explorer settings
    explorer: str = "blockscan"  # blockscan, etherscan
    request_timeout: float = 15.0
    user_agent: str = DEFAULT_USER_AGENT

    # Etherscan API settings
    etherscan_api_key: str = ""
    etherscan_base_url: str = "https://api.etherscan.io/v2/api"

    # Graph settings
    top_hubs: int = 10

    def to_fetch_options(self, **overrides) -> FetchOptions:
        options = FetchOptions(
            batch_size=self.batch_size,
            delay_between_requests=self.delay_between_requests,
            delay_between_batches=self.delay_between_batches,
            max_retries=self.max_retries,
            output_dir=self.output_dir,
            save_progress=self.save_progress,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(options, key, value)
        return options


class ConfigManager:
    """Manages pipeline configuration stored as YAML."""

    def __init__(self, config_file: str = "~/.contract_graph/config.yaml"):
        self.config_file = Path(config_file).expanduser()
        self.console = Console()
        self.config = GraphConfig()
        # File value of the API key while ETHERSCAN_API_KEY overrides it
        self._stored_api_key: Optional[str] = None

        self.load_config()
        self._apply_environment()

    def load_config(self) -> None:
        """Load configuration from file."""
        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    data = yaml.safe_load(f)

                if data:
                    for key, value in data.items():
                        if hasattr(self.config, key):
                            setattr(self.config, key, value)

            except (OSError, yaml.YAMLError) as e:
                self.console.print(f"[yellow]Warning: Could not load config file: {e}[/yellow]")

    def _apply_environment(self) -> None:
        api_key = os.getenv('ETHERSCAN_API_KEY')
        if api_key:
            self._stored_api_key = self.config.etherscan_api_key
            self.config.etherscan_api_key = api_key

    def save_config(self) -> None:
        """Save configuration to file. A key taken from the environment is not written."""
        data = asdict(self.config)
        if self._stored_api_key is not None:
            data['etherscan_api_key'] = self._stored_api_key

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w') as f:
            yaml.dump(data, f, default_flow_style=False)

    def set_value(self, key: str, raw_value: str) -> Any:
        """Set one field from a string, converting it to the field's type."""
        field_types = {f.name: f.type for f in fields(GraphConfig)}
        if key not in field_types:
            raise KeyError(f"Unknown configuration key: {key}")

        current = getattr(self.config, key)
        if isinstance(current, bool):
            value = raw_value.strip().lower() in ('1', 'true', 'yes', 'on')
        elif isinstance(current, int):
            value = int(raw_value)
        elif isinstance(current, float):
            value = float(raw_value)
        else:
            value = raw_value
        setattr(self.config, key, value)
        if key == 'etherscan_api_key':
            self._stored_api_key = None
        return value

    def get_display_config(self) -> Dict[str, Any]:
        """Configuration as a dict with the API key masked."""
        data = asdict(self.config)
        if data.get('etherscan_api_key'):
            key = data['etherscan_api_key']
            data['etherscan_api_key'] = key[:4] + '...' if len(key) > 4 else '***'
        return data

    def get_config(self) -> GraphConfig:
        return self.config
