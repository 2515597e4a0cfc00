"""
GUI Agent - Prediction parser

Turns raw VLM text such as

    Thought: Click the search bar
    Action: click(start_box='(72,646)')

into PredictionParsed entries with boxes normalized to 0.0-1.0.
"""

import json
import logging
import math
import re
from typing import Optional, Sequence

from agent_types import (
    DEFAULT_FACTORS,
    IMAGE_FACTOR,
    MAX_PIXELS_V1_5,
    MAX_RATIO,
    MIN_PIXELS,
    PredictionParsed,
    ScreenContext,
    UITarsModelVersion,
)

logger = logging.getLogger(__name__)

_FUNCTION_CALL = re.compile(r"^(\w+)\((.*)\)$", re.DOTALL)
_ARG_PAIR      = re.compile(r"(?:[^,']|'[^']*')+")
_BOX_TOKENS    = re.compile(r"<\|box_start\|>|<\|box_end\|>")


# ============================================================================
# Smart resize (UI-TARS 1.5 predicts in resized-image pixel space)
# ============================================================================

def _round_by_factor(num: float, factor: int) -> int:
    return math.floor(num / factor + 0.5) * factor


def _floor_by_factor(num: float, factor: int) -> int:
    return math.floor(num / factor) * factor


def _ceil_by_factor(num: float, factor: int) -> int:
    return math.ceil(num / factor) * factor


def smart_resize(
    height: int,
    width: int,
    max_ratio: int = MAX_RATIO,
    factor: int = IMAGE_FACTOR,
    min_pixels: int = MIN_PIXELS,
    max_pixels: int = MAX_PIXELS_V1_5,
) -> Optional[tuple[int, int]]:
    """Return (width, height) the model actually saw, or None for extreme aspect ratios."""
    if max(height, width) / min(height, width) > max_ratio:
        logger.error(
            f"absolute aspect ratio must be smaller than {max_ratio}, "
            f"got {max(height, width) / min(height, width)}"
        )
        return None

    w_bar = max(factor, _round_by_factor(width, factor))
    h_bar = max(factor, _round_by_factor(height, factor))

    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = _floor_by_factor(height / beta, factor)
        w_bar = _floor_by_factor(width / beta, factor)
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = _ceil_by_factor(height * beta, factor)
        w_bar = _ceil_by_factor(width * beta, factor)

    return w_bar, h_bar


# ============================================================================
# Parsing
# ============================================================================

def parse_action(action_str: str) -> Optional[tuple[str, dict]]:
    """'click(start_box='(279,81)')' -> ('click', {'start_box': '(279,81)'})"""
    action_str = _BOX_TOKENS.sub("", action_str)
    action_str = action_str.replace("point=", "start_box=")

    match = _FUNCTION_CALL.match(action_str.strip())
    if not match:
        logger.warning(f"Failed to parse action {action_str!r}: not a function call")
        return None

    function_name, args_str = match.groups()
    kwargs = {}
    if args_str.strip():
        for pair in _ARG_PAIR.findall(args_str):
            key, _, value = pair.partition("=")
            if not key.strip():
                continue
            value = re.sub(r"^['\"]|['\"]$", "", value.strip())

            # <bbox>637 964 637 964</bbox> / <point>510 150</point>
            for tag in ("bbox", "point"):
                if f"<{tag}>" in value:
                    inner = value.replace(f"<{tag}>", "").replace(f"</{tag}>", "").strip()
                    value = "(" + re.sub(r"\s+", ",", inner) + ")"
            kwargs[key.strip()] = value

    return function_name, kwargs


def _split_thought(text: str) -> tuple[Optional[str], Optional[str]]:
    thought, reflection = None, None
    if "Thought:" in text:
        m = re.search(r"Thought: ([\s\S]+?)(?=\s*Action:|$)", text)
        if m:
            thought = m.group(1).strip()
    elif text.startswith("Reflection:"):
        m = re.search(r"Reflection: ([\s\S]+?)Action_Summary: ([\s\S]+?)(?=\s*Action:|$)", text)
        if m:
            reflection = m.group(1).strip()
            thought = m.group(2).strip()
    elif text.startswith("Action_Summary:"):
        m = re.search(r"Action_Summary: (.+?)(?=\s*Action:|$)", text)
        if m:
            thought = m.group(1).strip()
    return thought, reflection


def _pixel_point(box: list[float], screen_context: ScreenContext,
                 factors: Sequence[int], scale_factor: float) -> list[float]:
    x1, y1, x2, y2 = box
    wf, hf = factors
    return [
        math.floor(((x1 + x2) / 2) * screen_context.width * wf + 0.5) / wf * scale_factor,
        math.floor(((y1 + y2) / 2) * screen_context.height * hf + 0.5) / hf * scale_factor,
    ]


def parse_action_vlm(
    text: str,
    factors: Sequence[int] = DEFAULT_FACTORS,
    screen_context: Optional[ScreenContext] = None,
    scale_factor: Optional[float] = None,
    model_ver: Optional[UITarsModelVersion] = UITarsModelVersion.V1_0,
) -> list[PredictionParsed]:
    """Parse every action in a prediction.

    Box parameters become a normalized "[x1,y1,x2,y2]" JSON string. With a
    screen context, start_coords / end_coords hold the pixel point already
    multiplied by ``scale_factor``.
    """
    smart_factors = None
    if model_ver == UITarsModelVersion.V1_5 and screen_context and screen_context.width and screen_context.height:
        smart_factors = smart_resize(screen_context.height, screen_context.width)

    text = text.strip()
    thought, reflection = _split_thought(text)
    action_str = text.split("Action:")[-1] if "Action:" in text else text

    actions = []
    for raw in action_str.split("\n\n"):
        parsed = parse_action(raw.replace("\n", "\\n").lstrip())
        action_type = ""
        action_inputs: dict = {}

        if parsed:
            action_type, params = parsed
            for name, param in params.items():
                if not param:
                    continue
                value = param.strip()
                if "start_box" in name or "end_box" in name:
                    numbers = [n for n in re.sub(r"[()\[\]]", "", value).split(",") if n.strip()]
                    divisors = smart_factors or factors
                    box = [float(n) / divisors[i % 2] for i, n in enumerate(numbers)]
                    if len(box) == 2:
                        box += box
                    action_inputs[name.strip()] = json.dumps(box, separators=(",", ":"))

                    if screen_context and screen_context.width and screen_context.height and len(box) == 4:
                        key = "start_coords" if "start_box" in name else "end_coords"
                        action_inputs[key] = _pixel_point(
                            box, screen_context, factors,
                            scale_factor if scale_factor is not None else 1,
                        )
                else:
                    action_inputs[name.strip()] = value

        actions.append(PredictionParsed(
            action_type=action_type,
            action_inputs=action_inputs,
            thought=thought or "",
            reflection=reflection,
        ))
    return actions
