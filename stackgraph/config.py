"""
Settings loaded from an optional 'stackgraph.yaml' in the working directory.
"""
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml
from rich.console import Console

console = Console(stderr=True)

CONFIG_FILE = "stackgraph.yaml"


@dataclass
class Settings:
    max_workers: int = 4
    state_file: str = ".stackgraph/state.json"
    region: str = "us-east-1"
    account: str = "000000000000"
    # seconds `apply --wait` keeps running health checks
    wait_timeout: float = 600


def load_settings(path: Optional[str] = None) -> Settings:
    """Read settings, falling back to defaults when the file is absent or unreadable."""
    config_path = path or CONFIG_FILE
    settings = Settings()
    if not os.path.exists(config_path):
        return settings

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        console.print(f"[yellow]Warning:[/yellow] ignoring {config_path}: {exc}")
        return settings
    if not isinstance(data, dict):
        console.print(f"[yellow]Warning:[/yellow] ignoring {config_path}: expected a mapping")
        return settings

    known = {f.name for f in fields(Settings)}
    for key, value in data.items():
        if key not in known:
            console.print(f"[yellow]Warning:[/yellow] unknown setting '{key}' in {config_path}")
            continue
        setattr(settings, key, value)
    settings.max_workers = max(1, int(settings.max_workers))
    settings.wait_timeout = float(settings.wait_timeout)
    return settings
