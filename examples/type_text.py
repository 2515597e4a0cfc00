"""
GUI Agent Example - Type Text

Types into the active editor while showing pause()/resume(): the agent is
paused for three seconds after its first action and then carries on.

Usage:
    python examples/type_text.py

Note:
    Make sure to have a text input window active (like Notepad) before running.
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path to import the agent modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import load_config
from desktop_operator import DesktopOperator
from gui_agent import GUIAgent


async def main():
    """Type 'Hello, World!' in the active window."""

    config = load_config()
    paused_once = False
    agent = None

    def on_data(snapshot):
        nonlocal paused_once
        for turn in snapshot.conversations:
            if turn.origin == "gpt":
                print(f"[{snapshot.loop_count}] {turn.value}")
                if not paused_once:
                    paused_once = True
                    agent.pause()
                    asyncio.get_running_loop().call_later(3, agent.resume)
        if not snapshot.conversations:
            print(f"status -> {snapshot.status.value}")

    agent = GUIAgent(
        operator=DesktopOperator(),
        model=config.to_model_config(),
        ui_tars_version=config.version,
        on_data=on_data,
        on_error=lambda snapshot, error: print(f"error: {error.code.value} {error.message}"),
    )

    instruction = "Type 'Hello, World!' in the open text editor"

    print(f"Task: {instruction}")
    print("-" * 40)
    print("Note: Please make sure Notepad or a text editor is open and active!")
    print("-" * 40)

    await agent.run(instruction)

    print("-" * 40)
    print(f"Result: {agent.status.value}")
    return agent.status


if __name__ == "__main__":
    asyncio.run(main())
