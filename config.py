"""
GUI Agent - Configuration Module

Centralized configuration management with support for:
- Environment variables via .env file
- Command-line arguments via click
- Default values and validation
"""

import os
from dataclasses import dataclass
from typing import Optional
from pathlib import Path

from dotenv import load_dotenv
import click

from agent_types import MAX_IMAGE_LENGTH, MAX_LOOP_COUNT, RetryConfig, RetryPolicy, UITarsModelVersion
from vlm_model import ModelConfig


# Default configuration values
DEFAULTS = {
    'model': 'ui-tars-1.5-7b',
    'base_url': 'http://localhost:8000/v1',
    'ui_tars_version': UITarsModelVersion.V1_5.value,
    'max_loop_count': MAX_LOOP_COUNT,
    'loop_interval_ms': 0,
    'max_tokens': 0,            # 0 = per-version default
    'temperature': 0.0,
    'top_p': 0.7,
    'timeout': 30.0,
    'screenshot_retries': 1,
    'model_retries': 2,
    'execute_retries': 1,
    'max_image_length': MAX_IMAGE_LENGTH,
    'language': 'English',
}


@dataclass
class Config:
    """Configuration container for GUI Agent."""

    # VLM endpoint
    api_key: str = ""
    base_url: str = DEFAULTS['base_url']
    model: str = DEFAULTS['model']
    ui_tars_version: str = DEFAULTS['ui_tars_version']

    # Sampling
    max_tokens: int = DEFAULTS['max_tokens']
    temperature: float = DEFAULTS['temperature']
    top_p: float = DEFAULTS['top_p']
    timeout: float = DEFAULTS['timeout']

    # Loop
    max_loop_count: int = DEFAULTS['max_loop_count']
    loop_interval_ms: int = DEFAULTS['loop_interval_ms']
    max_image_length: int = DEFAULTS['max_image_length']
    language: str = DEFAULTS['language']

    # Retries per stage
    screenshot_retries: int = DEFAULTS['screenshot_retries']
    model_retries: int = DEFAULTS['model_retries']
    execute_retries: int = DEFAULTS['execute_retries']

    debug: bool = False
    env_file: str = ".env"

    def __post_init__(self):
        self._validate()

    def _validate(self):
        if self.max_loop_count < 1 or self.max_loop_count > 200:
            raise ValueError("max_loop_count must be between 1 and 200")

        if self.loop_interval_ms < 0:
            raise ValueError("loop_interval_ms must be >= 0")

        if self.temperature < 0 or self.temperature > 2:
            raise ValueError("temperature must be between 0 and 2")

        if self.top_p <= 0 or self.top_p > 1:
            raise ValueError("top_p must be in (0, 1]")

        if self.max_tokens != 0 and (self.max_tokens < 100 or self.max_tokens > 65535):
            raise ValueError("max_tokens must be 0 (auto) or between 100 and 65535")

        if self.max_image_length < 1 or self.max_image_length > 20:
            raise ValueError("max_image_length must be between 1 and 20")

        for name in ('screenshot_retries', 'model_retries', 'execute_retries'):
            if getattr(self, name) < 0 or getattr(self, name) > 10:
                raise ValueError(f"{name} must be between 0 and 10")

        versions = [v.value for v in UITarsModelVersion]
        if self.ui_tars_version not in versions:
            raise ValueError(f"ui_tars_version must be one of {', '.join(versions)}")

    @property
    def version(self) -> UITarsModelVersion:
        return UITarsModelVersion(self.ui_tars_version)

    def to_model_config(self) -> ModelConfig:
        return ModelConfig(
            model=self.model,
            api_key=self.api_key,
            base_url=self.base_url or None,
            max_tokens=self.max_tokens or None,
            temperature=self.temperature,
            top_p=self.top_p,
            timeout=self.timeout,
        )

    def to_retry_config(self, on_retry=None) -> RetryConfig:
        return RetryConfig(
            screenshot=RetryPolicy(max_retries=self.screenshot_retries, on_retry=on_retry),
            model=RetryPolicy(max_retries=self.model_retries, on_retry=on_retry, wait_seconds=1.0),
            execute=RetryPolicy(max_retries=self.execute_retries, on_retry=on_retry),
        )

    def to_dict(self) -> dict:
        return {
            'api_key': self.api_key,
            'base_url': self.base_url,
            'model': self.model,
            'ui_tars_version': self.ui_tars_version,
            'max_tokens': self.max_tokens,
            'temperature': self.temperature,
            'top_p': self.top_p,
            'timeout': self.timeout,
            'max_loop_count': self.max_loop_count,
            'loop_interval_ms': self.loop_interval_ms,
            'max_image_length': self.max_image_length,
            'language': self.language,
            'screenshot_retries': self.screenshot_retries,
            'model_retries': self.model_retries,
            'execute_retries': self.execute_retries,
            'debug': self.debug,
        }

    def __getitem__(self, key: str):
        return self.to_dict().get(key)

    def get(self, key: str, default=None):
        return self.to_dict().get(key, default)


class ConfigLoader:
    """Load configuration from the environment (and a .env file)."""

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file
        self._load_env()

    def _load_env(self):
        if self.env_file:
            env_path = Path(self.env_file)
            if env_path.exists():
                load_dotenv(env_path)
        else:
            # Search for .env in current directory and parent directories
            load_dotenv()

    def load(self) -> Config:
        return Config(
            api_key=os.getenv('VLM_API_KEY', ''),
            base_url=os.getenv('VLM_BASE_URL', DEFAULTS['base_url']),
            model=os.getenv('VLM_MODEL_NAME', DEFAULTS['model']),
            ui_tars_version=os.getenv('UI_TARS_VERSION', DEFAULTS['ui_tars_version']),
            max_tokens=int(os.getenv('MAX_TOKENS', DEFAULTS['max_tokens'])),
            temperature=float(os.getenv('TEMPERATURE', DEFAULTS['temperature'])),
            top_p=float(os.getenv('TOP_P', DEFAULTS['top_p'])),
            timeout=float(os.getenv('MODEL_TIMEOUT', DEFAULTS['timeout'])),
            max_loop_count=int(os.getenv('MAX_LOOP_COUNT', DEFAULTS['max_loop_count'])),
            loop_interval_ms=int(os.getenv('LOOP_INTERVAL_MS', DEFAULTS['loop_interval_ms'])),
            max_image_length=int(os.getenv('MAX_IMAGE_LENGTH', DEFAULTS['max_image_length'])),
            language=os.getenv('LANGUAGE', DEFAULTS['language']),
            screenshot_retries=int(os.getenv('SCREENSHOT_RETRIES', DEFAULTS['screenshot_retries'])),
            model_retries=int(os.getenv('MODEL_RETRIES', DEFAULTS['model_retries'])),
            execute_retries=int(os.getenv('EXECUTE_RETRIES', DEFAULTS['execute_retries'])),
            debug=os.getenv('DEBUG', 'false').lower() == 'true',
            env_file=self.env_file or ".env",
        )


def create_click_options():
    """Create click decorator for CLI options.

    Returns:
        Decorator function for click options.
    """
    def decorator(f):
        options = [
            click.option(
                '--api-key', '-k',
                envvar='VLM_API_KEY',
                help='VLM API key (env: VLM_API_KEY)',
            ),
            click.option(
                '--base-url', '-u',
                envvar='VLM_BASE_URL',
                help=f'OpenAI-compatible base URL (env: VLM_BASE_URL, default: {DEFAULTS["base_url"]})',
            ),
            click.option(
                '--model', '-m',
                envvar='VLM_MODEL_NAME',
                help=f'Model name (env: VLM_MODEL_NAME, default: {DEFAULTS["model"]})',
            ),
            click.option(
                '--ui-tars-version', '-v',
                type=click.Choice([v.value for v in UITarsModelVersion]),
                envvar='UI_TARS_VERSION',
                help=f'UI-TARS model version (env: UI_TARS_VERSION, default: {DEFAULTS["ui_tars_version"]})',
            ),
            click.option(
                '--max-loop-count', '-n',
                type=int,
                help=f'Maximum loop iterations per task (default: {DEFAULTS["max_loop_count"]})',
            ),
            click.option(
                '--loop-interval-ms',
                type=int,
                help='Pause between iterations in milliseconds (default: 0)',
            ),
            click.option(
                '--temperature',
                type=float,
                help=f'Model temperature (default: {DEFAULTS["temperature"]})',
            ),
            click.option(
                '--language', '-l',
                help=f'Language of the Thought part (default: {DEFAULTS["language"]})',
            ),
            click.option(
                '--env-file', '-e',
                default=None,
                help='Path to .env file',
            ),
            click.option(
                '--debug', '-d',
                is_flag=True,
                default=False,
                help='Enable debug mode',
            ),
        ]
        for option in reversed(options):
            f = option(f)
        return f
    return decorator


def load_config(
    env_file: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    model: Optional[str] = None,
    ui_tars_version: Optional[str] = None,
    max_loop_count: Optional[int] = None,
    loop_interval_ms: Optional[int] = None,
    temperature: Optional[float] = None,
    language: Optional[str] = None,
    debug: bool = False,
) -> Config:
    """Load configuration with optional overrides.

    Args:
        env_file: Path to .env file.
        api_key: Override API key.
        base_url: Override base URL.
        model: Override model name.
        ui_tars_version: Override model version.
        max_loop_count: Override loop cap.
        loop_interval_ms: Override inter-loop sleep.
        temperature: Override temperature.
        language: Override Thought language.
        debug: Enable debug mode.

    Returns:
        Config object with loaded values.
    """
    loader = ConfigLoader(env_file)
    config = loader.load()

    # Apply command-line overrides
    if api_key:
        config.api_key = api_key
    if base_url:
        config.base_url = base_url
    if model:
        config.model = model
    if ui_tars_version:
        config.ui_tars_version = ui_tars_version
    if max_loop_count is not None:
        config.max_loop_count = max_loop_count
    if loop_interval_ms is not None:
        config.loop_interval_ms = loop_interval_ms
    if temperature is not None:
        config.temperature = temperature
    if language:
        config.language = language
    if debug:
        config.debug = debug

    config._validate()
    return config


def validate_api_key(config: Config) -> bool:
    """Local vLLM servers accept any key; hosted endpoints need a real one."""
    if _is_local(config.base_url):
        return True
    if not config.api_key or config.api_key.startswith('sk-your-'):
        return False
    return True


def get_api_key_status(config: Config) -> str:
    if not config.api_key:
        if _is_local(config.base_url):
            return "API key not set (local endpoint, not required)"
        return "API key not set"
    elif config.api_key.startswith('sk-your-'):
        return "API key not configured (using placeholder)"
    elif len(config.api_key) < 20:
        return "API key appears invalid (too short)"
    else:
        return f"API key configured ({config.api_key[:10]}...)"


def _is_local(base_url: str) -> bool:
    return any(host in (base_url or "") for host in ("localhost", "127.0.0.1", "0.0.0.0"))


# ============================================================================
# Click CLI Commands
# ============================================================================

@click.group()
def cli():
    """GUI Agent Configuration CLI."""
    pass


@cli.command()
@click.option('--env-file', '-e', default='.env', help='Path to .env file')
def show(env_file: str):
    """Show current configuration."""
    from rich.console import Console
    from rich.table import Table

    console = Console()
    config = load_config(env_file=env_file)

    table = Table(title="GUI Agent Configuration", border_style="blue")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    for key, value in config.to_dict().items():
        if key == 'api_key' and value:
            value = f"{value[:10]}..." if len(value) > 10 else value
        table.add_row(key, str(value))

    console.print(table)

    api_status = get_api_key_status(config)
    if validate_api_key(config):
        console.print(f"\n[green]✓[/green] {api_status}")
    else:
        console.print(f"\n[yellow]![/yellow] {api_status}")
        console.print("\n[dim]Set VLM_API_KEY in your .env file or use --api-key flag[/dim]")


@cli.command()
def defaults():
    """Show default configuration values."""
    from rich.console import Console
    from rich.table import Table

    console = Console()

    table = Table(title="Default Configuration Values", border_style="blue")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Default Value", style="green")
    table.add_column("Range", style="dim")

    ranges = {
        'max_loop_count': '1-200',
        'temperature': '0-2',
        'top_p': '(0, 1]',
        'max_tokens': '0 or 100-65535',
        'max_image_length': '1-20',
        'screenshot_retries': '0-10',
        'model_retries': '0-10',
        'execute_retries': '0-10',
    }
    for name, value in DEFAULTS.items():
        table.add_row(name, str(value), ranges.get(name, ''))

    console.print(table)


@cli.command()
@click.option('--env-file', '-e', default='.env', help='Path to .env file')
def check(env_file: str):
    """Check configuration and environment."""
    from rich.console import Console
    from rich.panel import Panel

    console = Console()
    config = load_config(env_file=env_file)

    issues = []

    if not validate_api_key(config):
        issues.append("[red]✗[/red] API key not configured")
    else:
        issues.append("[green]✓[/green] API key configured")

    if config.base_url:
        issues.append("[green]✓[/green] Base URL configured")
    else:
        issues.append("[yellow]![/yellow] Base URL not configured")

    if config.model:
        issues.append(f"[green]✓[/green] Model configured ({config.model}, v{config.ui_tars_version})")
    else:
        issues.append("[yellow]![/yellow] Model not configured")

    status_text = "\n".join(issues)

    if not any("✗" in issue for issue in issues):
        panel = Panel(
            f"[green]Configuration looks good![/green]\n\n{status_text}",
            title="Configuration Check",
            border_style="green",
        )
    else:
        panel = Panel(
            f"[yellow]Configuration issues found:[/yellow]\n\n{status_text}",
            title="Configuration Check",
            border_style="yellow",
        )

    console.print(panel)


if __name__ == "__main__":
    cli()
