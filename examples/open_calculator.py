"""
GUI Agent Example - Open Calculator

Drives the desktop with a UI-TARS model and consumes run snapshots from an
asyncio.Queue instead of a callback.

Usage:
    python examples/open_calculator.py
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path to import the agent modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import load_config
from desktop_operator import DesktopOperator
from gui_agent import GUIAgent
from agent_types import StatusEnum


async def main():
    """Open the system calculator and print every snapshot."""

    config = load_config()
    events: asyncio.Queue = asyncio.Queue()

    agent = GUIAgent(
        operator=DesktopOperator(),
        model=config.to_model_config(),
        ui_tars_version=config.version,
        retry=config.to_retry_config(),
        event_queue=events,
    )

    instruction = "Open the Calculator application"
    print(f"Task: {instruction}")
    print("-" * 40)

    run = asyncio.create_task(agent.run(instruction))
    while not (run.done() and events.empty()):
        try:
            snapshot = await asyncio.wait_for(events.get(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        for turn in snapshot.conversations:
            if not turn.is_image:
                print(f"[{snapshot.loop_count}] {turn.origin}: {turn.value}")
        if not snapshot.conversations:
            print(f"status -> {snapshot.status.value}")
    await run

    print("-" * 40)
    print(f"Result: {agent.status.value}")
    return agent.status == StatusEnum.END


if __name__ == "__main__":
    asyncio.run(main())
