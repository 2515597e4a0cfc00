"""
GUI Agent - Command Line Interface Module

Provides a colorful terminal interface with:
- Colored output for different log levels
- A live rendering of run snapshots (screenshots, thoughts, actions)
- Tables for the turn history
- Rich user input experience
"""

from datetime import datetime
from typing import Optional, List, Dict, Any, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TaskID
from rich.table import Table
from rich.prompt import Prompt, Confirm

from agent_types import Conversation, RunSnapshot, StatusEnum


console = Console()


# ============================================================================
# Logging Functions
# ============================================================================

def log_info(message: str, title: str = "INFO") -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    console.print(f"[dim]{timestamp}[/dim] [bold blue][{title}][/bold blue] {message}")


def log_success(message: str, title: str = "SUCCESS") -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    console.print(f"[dim]{timestamp}[/dim] [bold green][{title}][/bold green] {message}")


def log_warning(message: str, title: str = "WARNING") -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    console.print(f"[dim]{timestamp}[/dim] [bold yellow][{title}][/bold yellow] {message}")


def log_error(message: str, title: str = "ERROR") -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    console.print(f"[dim]{timestamp}[/dim] [bold red][{title}][/bold red] {message}")


# ============================================================================
# Panel Displays
# ============================================================================

def show_welcome_panel() -> None:
    """Display the welcome panel with project information."""
    welcome_text = """[bold blue]GUI Agent[/bold blue] - Desktop Automation powered by UI-TARS

[dim]Turn natural language instructions into mouse and keyboard actions[/dim]

[bold]Quick Commands:[/bold]
  [green]help[/green]     - Show this help message
  [green]history[/green] - View the turns of the last run
  [green]quit/exit[/green] - Exit the application

[bold]Example Instructions:[/bold]
  - "Open Calculator"
  - "Search for Python tutorials on Google"
  - "Type 'Hello World' in the active window"
  - "Scroll down the page"
"""
    console.print(Panel(
        welcome_text,
        title="[bold blue]Welcome to GUI Agent[/bold blue]",
        border_style="blue",
        padding=(1, 2),
    ))
    console.print()


def show_safety_warning() -> None:
    """Display important safety warnings."""
    warning_text = """[yellow]SAFETY REMINDER:[/yellow]

[bold]Always monitor the agent's actions![/bold]

- The agent can control your mouse and keyboard
- Press Ctrl+C to stop the running task
- Don't run on sensitive data or critical systems
- Test in a safe environment first

[dim]PyAutoGUI failsafe: Move mouse to screen corner to stop[/dim]
"""
    console.print(Panel(
        warning_text,
        title="[bold yellow]Safety Notice[/bold yellow]",
        border_style="yellow",
        padding=(1, 2),
    ))
    console.print()


def show_config_panel(config: Dict[str, Any]) -> None:
    """Display current configuration."""
    config_text = f"""[bold]Model:[/bold] {config.get('model', 'N/A')} (v{config.get('ui_tars_version', '?')})
[bold]Base URL:[/bold] {config.get('base_url', 'N/A')}
[bold]Max Loop Count:[/bold] {config.get('max_loop_count', 25)}
[bold]Image Window:[/bold] last {config.get('max_image_length', 5)} screenshots
"""
    console.print(Panel(
        config_text,
        title="[bold]Current Configuration[/bold]",
        border_style="green",
        padding=(0, 1),
    ))


# ============================================================================
# Progress Indicator
# ============================================================================

class TaskProgress:
    """Context manager for displaying a spinner while a task runs."""

    def __init__(self, description: str = "Processing"):
        self.description = description
        self.progress: Optional[Progress] = None
        self.task_id: Optional[TaskID] = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(spinner_name="dots"),
            TextColumn("[bold blue]{task.description}"),
            console=console,
            transient=True,
        )
        self.task_id = self.progress.add_task(self.description, total=None)
        self.progress.start()
        return self

    def update(self, description: str) -> None:
        if self.progress and self.task_id is not None:
            self.progress.update(self.task_id, description=description)

    def __exit__(self, *args):
        if self.progress:
            self.progress.stop()


# ============================================================================
# Run snapshot rendering
# ============================================================================

_STATUS_STYLE = {
    StatusEnum.RUNNING:      "blue",
    StatusEnum.PAUSED:       "yellow",
    StatusEnum.END:          "green",
    StatusEnum.CALL_USER:    "magenta",
    StatusEnum.USER_STOPPED: "yellow",
    StatusEnum.MAX_LOOP:     "red",
    StatusEnum.ERROR:        "red",
}


def _describe_actions(turn: Conversation) -> str:
    parts = []
    for p in turn.prediction_parsed:
        inputs = ", ".join(f"{k}={v}" for k, v in p.action_inputs.items()
                           if k not in ("start_coords", "end_coords"))
        parts.append(f"{p.action_type or '?'}({inputs})")
    return "; ".join(parts)


def render_snapshot(snapshot: RunSnapshot) -> None:
    """Print the turns a snapshot carries; an empty snapshot is a status change."""
    if not snapshot.conversations:
        style = _STATUS_STYLE.get(snapshot.status, "dim")
        console.print(f"[dim]{datetime.now().strftime('%H:%M:%S')}[/dim] "
                      f"[bold {style}]● {snapshot.status.value}[/bold {style}] "
                      f"[dim]loop {snapshot.loop_count}[/dim]")
        return

    for turn in snapshot.conversations:
        if turn.is_image:
            ctx = turn.screenshot_context
            size = f"{ctx.width}x{ctx.height} @{ctx.scale_factor:g}x" if ctx else "?"
            cost = f" in {turn.timing.cost}ms" if turn.timing else ""
            log_info(f"screenshot {size}{cost}", title=f"LOOP {snapshot.loop_count}")
        elif turn.origin == "gpt":
            console.print(Panel(
                f"{turn.value}\n\n[cyan]{_describe_actions(turn)}[/cyan]",
                title=f"[bold]{snapshot.model_name}[/bold]",
                border_style="cyan",
                padding=(0, 1),
            ))
        else:
            log_info(turn.value, title="TASK")


def show_turn_history(conversations: Sequence[Conversation]) -> None:
    """Display the turns of a run in a table."""
    if not conversations:
        console.print("[dim]No turns recorded yet.[/dim]")
        return

    table = Table(
        title="Run History",
        border_style="blue",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("#", style="dim", width=4)
    table.add_column("From", style="cyan", width=6)
    table.add_column("Content", style="green", max_width=60)
    table.add_column("Actions", max_width=40)
    table.add_column("Cost", style="dim", width=8)

    for idx, turn in enumerate(conversations, 1):
        content = "[screenshot]" if turn.is_image else turn.value
        table.add_row(
            str(idx),
            turn.origin,
            content[:60] + "..." if len(content) > 60 else content,
            _describe_actions(turn),
            f"{turn.timing.cost}ms" if turn.timing else "",
        )

    console.print()
    console.print(table)
    console.print()


def show_run_summary(status: StatusEnum, loop_count: int, error: Optional[Any] = None) -> None:
    style = _STATUS_STYLE.get(status, "dim")
    summary_text = f"""[bold]Status:[/bold] [{style}]{status.value}[/{style}]
[bold]Loops:[/bold] {loop_count}"""
    if error is not None:
        summary_text += f"\n[red]{error.code.value}:[/red] {error.message}"

    console.print(Panel(
        summary_text,
        title="[bold]Run Summary[/bold]",
        border_style=style,
    ))


def show_session_summary(runs: List[StatusEnum]) -> None:
    total = len(runs)
    finished = sum(1 for s in runs if s == StatusEnum.END)
    summary_text = f"""[bold]Total Tasks:[/bold] {total}
[green]Finished:[/green] {finished}
[red]Not finished:[/red] {total - finished}
[dim]Success Rate: {finished/total*100:.1f}%[/dim]""" if total > 0 else "[dim]No tasks run[/dim]"

    console.print(Panel(
        summary_text,
        title="[bold]Session Summary[/bold]",
        border_style="green",
    ))


# ============================================================================
# User Input Functions
# ============================================================================

class Command:
    """Built-in commands for the CLI."""
    HELP = ['help', 'h', '?']
    QUIT = ['quit', 'exit', 'q']
    HISTORY = ['history', 'hist', 'hst']
    CLEAR = ['clear', 'cls']
    CONFIG = ['config', 'cfg']

    @classmethod
    def is_command(cls, text: str) -> bool:
        return cls.get_command_type(text) is not None

    @classmethod
    def get_command_type(cls, text: str) -> Optional[str]:
        text_lower = text.strip().lower()
        if text_lower in cls.HELP:
            return 'help'
        elif text_lower in cls.QUIT:
            return 'quit'
        elif text_lower in cls.HISTORY:
            return 'history'
        elif text_lower in cls.CLEAR:
            return 'clear'
        elif text_lower in cls.CONFIG:
            return 'config'
        return None


def get_user_instruction(prompt_text: str = "Enter your instruction") -> Optional[str]:
    try:
        instruction = Prompt.ask(
            f"\n[bold green]{prompt_text}[/bold green]",
            default="",
        )
        return instruction.strip() if instruction else None
    except (KeyboardInterrupt, EOFError):
        return None


def confirm_action(message: str, default: bool = False) -> bool:
    return Confirm.ask(f"[yellow]{message}[/yellow]", default=default)


def show_help() -> None:
    """Display help information."""
    help_text = """[bold]Available Commands:[/bold]

[green]help, h, ?[/green]       - Show this help message
[green]quit, exit, q[/green]    - Exit the application
[green]history, hist[/green]    - View the turns of the last run
[green]clear, cls[/green]       - Clear screen
[green]config, cfg[/green]      - Show current configuration

[bold]While a task runs:[/bold]

[green]Ctrl+C[/green]           - Stop the task (the agent releases held buttons)

[bold]Example Instructions:[/bold]

[green]"Open Calculator"[/green]
[green]"Search for Python tutorials on Google"[/green]
[green]"Type 'Hello World' and press enter"[/green]

[dim]Tip: Be specific and descriptive in your instructions.[/dim]
"""
    console.print(Panel(
        help_text,
        title="[bold blue]Help[/bold blue]",
        border_style="blue",
        padding=(1, 2),
    ))
