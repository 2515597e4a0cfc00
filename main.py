"""
Main entry point: interactive loop that hands each instruction to a GUIAgent.

    gui-agent                       # settings from .env
    gui-agent -v 1.0 -n 15 -d       # override version, loop cap, debug logs
"""

import asyncio
import logging
import signal
from typing import Optional

import click

from agent_types import GUIAgentError, RunSnapshot, StatusEnum
from cli import (
    Command, TaskProgress, confirm_action, console, get_user_instruction,
    log_error, log_info, log_success, log_warning, render_snapshot,
    show_config_panel, show_help, show_run_summary, show_safety_warning,
    show_session_summary, show_turn_history, show_welcome_panel,
)
from config import Config, create_click_options, get_api_key_status, load_config, validate_api_key
from desktop_operator import DesktopOperator
from gui_agent import GUIAgent

logger = logging.getLogger(__name__)


def _on_retry(error: BaseException, attempt: int) -> None:
    log_warning(f"attempt {attempt} failed: {error}", title="RETRY")


def _on_error(snapshot: RunSnapshot, error: GUIAgentError) -> None:
    log_error(f"{error.code.value}: {error.message}")


async def run_task(instruction: str, config: Config, operator: DesktopOperator) -> GUIAgent:
    """Run one instruction to a terminal status. Ctrl+C stops the agent cleanly.

    The agent (and its HTTP client) is built inside the event loop it runs on.
    """
    agent = GUIAgent(
        operator=operator,
        model=config.to_model_config(),
        max_loop_count=config.max_loop_count,
        loop_interval_ms=config.loop_interval_ms,
        retry=config.to_retry_config(on_retry=_on_retry),
        on_data=render_snapshot,
        on_error=_on_error,
        ui_tars_version=config.version,
        max_image_length=config.max_image_length,
        language=config.language,
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, agent.stop)
        handler_installed = True
    except NotImplementedError:
        # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
        handler_installed = False

    try:
        with TaskProgress("Agent running..."):
            await agent.run(instruction)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    return agent


@click.command()
@create_click_options()
def main(api_key: Optional[str], base_url: Optional[str], model: Optional[str],
         ui_tars_version: Optional[str], max_loop_count: Optional[int],
         loop_interval_ms: Optional[int], temperature: Optional[float],
         language: Optional[str], env_file: Optional[str], debug: bool):
    """Desktop GUI agent driven by a UI-TARS vision-language model."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s"
    )

    show_welcome_panel()
    show_safety_warning()

    try:
        config = load_config(
            env_file=env_file, api_key=api_key, base_url=base_url, model=model,
            ui_tars_version=ui_tars_version, max_loop_count=max_loop_count,
            loop_interval_ms=loop_interval_ms, temperature=temperature,
            language=language, debug=debug,
        )
    except ValueError as e:
        log_error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    show_config_panel(config.to_dict())

    if not validate_api_key(config):
        log_warning(f"API Key not configured: {get_api_key_status(config)}")
        log_info("Set VLM_API_KEY in .env or use --api-key flag")
        if not confirm_action("Continue anyway?"):
            return

    operator = DesktopOperator()

    statuses = []
    last_agent: Optional[GUIAgent] = None
    running = True

    while running:
        instruction = get_user_instruction("Enter your instruction")
        if instruction is None:
            running = False
            continue

        if Command.is_command(instruction):
            cmd = Command.get_command_type(instruction)
            if cmd == "quit":
                running = False
                console.print("[bold blue]Goodbye![/bold blue]")
            elif cmd == "help":
                show_help()
            elif cmd == "history":
                show_turn_history(last_agent.conversations if last_agent else [])
            elif cmd == "clear":
                console.clear()
            elif cmd == "config":
                show_config_panel(config.to_dict())
            continue

        console.print()
        log_info(f"Task: {instruction}")

        try:
            last_agent = asyncio.run(run_task(instruction, config, operator))
        except KeyboardInterrupt:
            log_warning("Task interrupted by user")
            statuses.append(StatusEnum.USER_STOPPED)
            continue
        except GUIAgentError as e:
            log_error(f"Task failed: {e.code.value}: {e.message}")
            statuses.append(StatusEnum.ERROR)
            continue
        except Exception as e:
            logger.exception("Execution error")
            log_error(f"Execution error: {e}")
            statuses.append(StatusEnum.ERROR)
            continue

        statuses.append(last_agent.status)
        show_run_summary(last_agent.status, last_agent.loop_count, last_agent.error)
        if last_agent.status == StatusEnum.END:
            log_success("Task completed!")
        elif last_agent.status == StatusEnum.CALL_USER:
            log_warning("The agent needs your help to continue")

    console.print()
    show_session_summary(statuses)
    console.print("[bold blue]Thank you for using GUI Agent![/bold blue]")


if __name__ == "__main__":
    main()
