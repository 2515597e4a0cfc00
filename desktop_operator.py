"""
GUI Agent - Operators (screenshot + action execution)

Key design decisions:
- pyautogui for mouse/keyboard, imported when the operator is built (it
  connects to the display server on import) and before the run starts
- clipboard paste via pyperclip for typing, so CJK and all Unicode work
- Pillow ImageGrab for capture, downscaled to logical pixels
- DPI awareness declared BEFORE any Win32 display call
"""

import platform

# ============================================================================
# DPI Awareness: must run before any pyautogui or PIL display call
# ============================================================================
if platform.system() == "Windows":
    import ctypes
    try:
        ctypes.windll.shcore.SetProcessDpiAwareness(2)   # Per-Monitor DPI (Win 8.1+)
    except Exception:
        try:
            ctypes.windll.user32.SetProcessDPIAware()    # System DPI (Vista+)
        except Exception:
            pass

import asyncio
import base64
import io
import logging
import re
import time
from typing import Callable, Optional

from PIL import Image, ImageGrab

from agent_types import (
    ExecuteOutput,
    ExecuteParams,
    InternalActionType,
    ScreenshotResult,
    StatusEnum,
)
from vlm_utils import parse_box_to_screen_coords

logger = logging.getLogger(__name__)


# ============================================================================
# Operator contract
# ============================================================================

class Operator:
    """Environment boundary: captures the screen and performs one action.

    Subclasses declare the action vocabulary the model is prompted with in
    ACTION_SPACES and map action types to handlers in ``handlers()``.
    """

    ACTION_SPACES: list[str] = []

    async def screenshot(self) -> ScreenshotResult:
        raise NotImplementedError

    async def execute(self, params: ExecuteParams) -> Optional[ExecuteOutput]:
        raise NotImplementedError

    def handlers(self) -> dict[str, Callable[[ExecuteParams], Optional[ExecuteOutput]]]:
        return {}

    def dispatch(self, params: ExecuteParams) -> ExecuteOutput:
        """Run the handler for ``params``' action type; unknown types are reported, not ignored."""
        action_type = params.parsed_prediction.action_type
        handler = self.handlers().get(action_type)
        if handler is None:
            logger.warning(f"[{type(self).__name__}] Unsupported action: {action_type!r}")
            return ExecuteOutput(unsupported=True)
        return handler(params) or ExecuteOutput()


# ============================================================================
# Desktop operator (pyautogui backend)
# ============================================================================

_KEY_ALIASES = {
    "return":     "enter",
    "arrowup":    "up",
    "arrowdown":  "down",
    "arrowleft":  "left",
    "arrowright": "right",
    "comma":      ",",
    "page down":  "pagedown",
    "page up":    "pageup",
    "esc":        "escape",
}

SCROLL_CLICKS = 5


class DesktopOperator(Operator):

    ACTION_SPACES = [
        "click(start_box='[x1, y1, x2, y2]')",
        "left_double(start_box='[x1, y1, x2, y2]')",
        "right_single(start_box='[x1, y1, x2, y2]')",
        "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
        "hotkey(key='')",
        "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
        "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
        "wait() #Sleep for 5s and take a screenshot to check for any changes.",
        "finished()",
        "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
    ]

    def __init__(self, backend=None, clipboard=None, system: Optional[str] = None,
                 move_duration: float = 0.2, wait_seconds: float = 5.0):
        if backend is None:
            import pyautogui
            pyautogui.FAILSAFE = True       # Move mouse to corner to abort
            pyautogui.PAUSE = 0.05
            backend = pyautogui
        if clipboard is None:
            import pyperclip
            clipboard = pyperclip
        self.gui           = backend
        self.clipboard     = clipboard
        self.system        = system or platform.system()
        self.move_duration = move_duration
        self.wait_seconds  = wait_seconds
        logger.info(
            f"DesktopOperator ready ({self.system}). "
            f"Move mouse to corner to abort."
        )

    # ------------------------------------------------------------------ #
    #  Screenshot                                                          #
    # ------------------------------------------------------------------ #

    async def screenshot(self) -> ScreenshotResult:
        return await asyncio.to_thread(self._capture)

    def _grab(self) -> Image.Image:
        # Primary monitor only: pyautogui.size() and its (0, 0) origin describe
        # that screen, not the virtual desktop spanning every monitor.
        return ImageGrab.grab(all_screens=False)

    def _capture(self) -> ScreenshotResult:
        physical = self._grab().convert("RGB")
        logical_w, logical_h = self.gui.size()
        scale_factor = physical.width / logical_w if logical_w else 1.0
        if logical_h and abs(physical.height / logical_h - scale_factor) > 0.01:
            raise RuntimeError(
                f"capture {physical.width}x{physical.height} does not match "
                f"screen {logical_w}x{logical_h}"
            )

        image = physical
        if (logical_w, logical_h) != physical.size and logical_w and logical_h:
            image = physical.resize((logical_w, logical_h), Image.Resampling.LANCZOS)

        buf = io.BytesIO()
        image.save(buf, format="PNG")   # png: no lossy artefacts for the VLM
        logger.info(f"[DesktopOperator] screenshot: {image.width}x{image.height}, scaleFactor: {scale_factor}")
        return ScreenshotResult(
            base64=base64.b64encode(buf.getvalue()).decode("utf-8"),
            width=image.width,
            height=image.height,
            scale_factor=scale_factor,
        )

    # ------------------------------------------------------------------ #
    #  Public dispatch                                                     #
    # ------------------------------------------------------------------ #

    async def execute(self, params: ExecuteParams) -> ExecuteOutput:
        p = params.parsed_prediction
        logger.info(f"[DesktopOperator] execute {p.action_type} {p.action_inputs} scaleFactor={params.scale_factor}")
        return await asyncio.to_thread(self.dispatch, params)

    def handlers(self) -> dict:
        return {
            "click":           self._click,
            "left_click":      self._click,
            "left_single":     self._click,
            "left_double":     self._double_click,
            "double_click":    self._double_click,
            "right_click":     self._right_click,
            "right_single":    self._right_click,
            "middle_click":    self._middle_click,
            "hover":           self._hover,
            "mouse_move":      self._hover,
            "drag":            self._drag,
            "left_click_drag": self._drag,
            "select":          self._drag,
            "type":            self._type,
            "hotkey":          self._hotkey,
            "press":           self._press,
            "release":         self._release,
            "scroll":          self._scroll,
            "wait":            self._wait,
            "screenshot":      self._noop,
            InternalActionType.FINISHED.value:  self._end,
            InternalActionType.CALL_USER.value: self._end,
            InternalActionType.ERROR_ENV.value: self._end,
            InternalActionType.USER_STOP.value: self._user_stop,
        }

    # ------------------------------------------------------------------ #
    #  Coordinates                                                         #
    # ------------------------------------------------------------------ #

    def _to_screen(self, box_str: str, params: ExecuteParams) -> tuple[Optional[float], Optional[float]]:
        """Normalized box -> pyautogui coordinates.

        macOS pyautogui works in points (logical pixels); Windows and X11 work
        in physical pixels, so the device scale factor is applied there.
        """
        x, y = parse_box_to_screen_coords(
            box_str, params.screen_width, params.screen_height, params.factors,
        )
        if x is None or y is None:
            return None, None
        if self.system != "Darwin":
            x, y = x * params.scale_factor, y * params.scale_factor
        return x, y

    def _start(self, params: ExecuteParams) -> tuple[Optional[float], Optional[float]]:
        return self._to_screen(params.parsed_prediction.action_inputs.get("start_box", ""), params)

    def _move_to(self, x: Optional[float], y: Optional[float]) -> None:
        if x is None or y is None:
            return
        self.gui.moveTo(x, y, duration=self.move_duration)

    def _point(self, params: ExecuteParams, label: str) -> bool:
        """Move to the start box. False (and no pointer movement) when it has no usable point."""
        x, y = self._start(params)
        if x is None or y is None:
            logger.warning(f"{label} without a usable start_box: {params.parsed_prediction.action_inputs}")
            return False
        logger.info(f"{label} ({x}, {y})")
        self._move_to(x, y)
        return True

    # ------------------------------------------------------------------ #
    #  Individual action handlers                                          #
    # ------------------------------------------------------------------ #

    def _click(self, params: ExecuteParams) -> None:
        if self._point(params, "CLICK "):
            time.sleep(0.1)
            self.gui.click()

    def _double_click(self, params: ExecuteParams) -> None:
        if self._point(params, "DCLICK"):
            time.sleep(0.1)
            self.gui.doubleClick()

    def _right_click(self, params: ExecuteParams) -> None:
        if self._point(params, "RCLICK"):
            time.sleep(0.1)
            self.gui.rightClick()

    def _middle_click(self, params: ExecuteParams) -> None:
        if self._point(params, "MCLICK"):
            self.gui.middleClick()

    def _hover(self, params: ExecuteParams) -> None:
        self._point(params, "HOVER ")

    def _drag(self, params: ExecuteParams) -> None:
        inputs = params.parsed_prediction.action_inputs
        sx, sy = self._start(params)
        ex, ey = self._to_screen(inputs.get("end_box", ""), params)
        if None in (sx, sy, ex, ey):
            logger.warning(f"DRAG   missing start/end box: {inputs}")
            return
        logger.info(f"DRAG   ({sx},{sy}) → ({ex},{ey})")
        self.gui.moveTo(sx, sy, duration=self.move_duration)
        self.gui.dragTo(ex, ey, duration=0.7, button="left")

    def _type(self, params: ExecuteParams) -> None:
        """Input text via clipboard paste, then Enter if the text ends in a newline."""
        content = params.parsed_prediction.action_inputs.get("content") or ""
        submit = content.endswith("\n") or content.endswith("\\n")
        text = re.sub(r"(\\n|\n)$", "", content)
        logger.info(f"TYPE   {text[:60]!r} submit={submit}")
        if text:
            self._paste(text)
        if submit:
            self.gui.press("enter")

    def _paste(self, text: str) -> None:
        # pyautogui.typewrite cannot type non-ASCII text
        old_clip = ""
        try:
            old_clip = self.clipboard.paste()
        except Exception as e:
            logger.debug(f"Clipboard read failed: {e}")
        try:
            self.clipboard.copy(text)
            time.sleep(0.15)
            paste_key = "command" if self.system == "Darwin" else "ctrl"
            self.gui.hotkey(paste_key, "v")
            time.sleep(0.15)
        except Exception as e:
            logger.error(f"Clipboard paste failed: {e}")
            # ASCII fallback
            self.gui.typewrite(text, interval=0.04)
        finally:
            try:
                self.clipboard.copy(old_clip)
            except Exception as e:
                logger.debug(f"Clipboard restore failed: {e}")

    def _keys(self, params: ExecuteParams) -> list[str]:
        inputs = params.parsed_prediction.action_inputs
        key_str = (inputs.get("key") or inputs.get("hotkey") or "").lower().strip()
        if not key_str:
            logger.error(f"[DesktopOperator] hotkey error: {key_str!r} is not a valid key")
            return []
        for alias in ("page down", "page up"):
            key_str = key_str.replace(alias, _KEY_ALIASES[alias])

        command = "command" if self.system == "Darwin" else "win"
        ctrl = "command" if self.system == "Darwin" else "ctrl"
        keys = []
        for k in re.split(r"[\s+]+", key_str):
            if not k:
                continue
            if k in ("meta", "win", "command", "cmd"):
                keys.append(command)
            elif k == "ctrl":
                keys.append(ctrl)
            else:
                keys.append(_KEY_ALIASES.get(k, k))
        return keys

    def _hotkey(self, params: ExecuteParams) -> None:
        keys = self._keys(params)
        logger.info(f"HOTKEY {keys}")
        if keys:
            self.gui.hotkey(*keys)

    def _press(self, params: ExecuteParams) -> None:
        for key in self._keys(params):
            self.gui.keyDown(key)

    def _release(self, params: ExecuteParams) -> None:
        for key in reversed(self._keys(params)):
            self.gui.keyUp(key)

    def _scroll(self, params: ExecuteParams) -> None:
        x, y = self._start(params)
        direction = (params.parsed_prediction.action_inputs.get("direction") or "").lower()
        self._move_to(x, y)
        logger.info(f"SCROLL {direction} at ({x}, {y})")
        if direction == "up":
            self.gui.scroll(SCROLL_CLICKS)
        elif direction == "down":
            self.gui.scroll(-SCROLL_CLICKS)
        elif direction == "left":
            self.gui.hscroll(-SCROLL_CLICKS)
        elif direction == "right":
            self.gui.hscroll(SCROLL_CLICKS)
        else:
            logger.warning(f"[DesktopOperator] Unsupported scroll direction: {direction!r}")

    def _wait(self, params: ExecuteParams) -> None:
        logger.info(f"WAIT   {self.wait_seconds:.1f}s")
        time.sleep(self.wait_seconds)

    def _noop(self, params: ExecuteParams) -> None:
        return None

    def _end(self, params: ExecuteParams) -> ExecuteOutput:
        return ExecuteOutput(status=StatusEnum.END)

    def _user_stop(self, params: ExecuteParams) -> ExecuteOutput:
        # a stop can land between mouseDown and mouseUp of a drag
        try:
            self.gui.mouseUp()
        except Exception as e:
            logger.warning(f"[DesktopOperator] mouseUp on stop failed: {e}")
        return ExecuteOutput(status=StatusEnum.END)
