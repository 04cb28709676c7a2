"""
Configuration commands
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console

from ...core.config_manager import ENV_OVERRIDES, ConfigurationManager
from ...core.exceptions import ConfigurationError
from ..ui.display import create_config_table, create_error_display


@click.group()
def config() -> None:
    """
    Configuration management commands.

    Settings come from a YAML file (--config or DOCPIPE_CONFIG_PATH),
    DOCPIPE_* environment variables, and built-in defaults.
    """
    pass


@config.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (YAML)",
)
@click.pass_context
def show(ctx: click.Context, config_path: Optional[Path]) -> None:
    """
    Display the effective configuration with sources.

    Sensitive values (API keys, tokens) are masked.
    """
    console: Console = ctx.obj["console"]
    config_manager = ConfigurationManager()

    try:
        config = config_manager.load_config(config_path)
    except ConfigurationError as e:
        console.print(create_error_display(e, "Configuration Error"))
        ctx.exit(1)

    file_data = _load_file_data(config_manager)
    env_keys = {(section, key): env_name for env_name, (section, key, _) in ENV_OVERRIDES.items()}

    config_data: Dict[str, Dict[str, Any]] = {}
    for section, values in config.model_dump().items():
        for key, value in values.items():
            env_name = env_keys.get((section, key))
            if env_name and os.getenv(env_name) is not None:
                source = f"env ({env_name})"
            elif key in file_data.get(section, {}):
                source = "config file"
            else:
                source = "default"
            config_data[f"{section}.{key}"] = {"value": value, "source": source}

    console.print(create_config_table(config_data, "docpipe Configuration"))

    if config_manager.config_path is not None:
        console.print(f"\n[dim]Configuration file: {config_manager.config_path}[/dim]")
        if not config_manager.config_path.exists():
            console.print("[yellow]Configuration file does not exist; defaults are in effect.[/yellow]")


def _load_file_data(config_manager: ConfigurationManager) -> Dict[str, Any]:
    path = config_manager.config_path
    if path is None or not path.exists():
        return {}
    data = config_manager.yaml_parser.load_yaml_config(path)
    return {section: values for section, values in data.items() if isinstance(values, dict)}
