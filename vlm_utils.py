"""
GUI Agent - Coordinate mapping, image preprocessing and history window

Pure helpers used between the loop controller and the VLM:
- parse_box_to_screen_coords: normalized box string -> pixel point
- preprocess_resize_image:    keep screenshots under a pixel budget
- process_vlm_params:         sliding window over screenshot turns
"""

import base64
import io
import logging
import math
import re
from typing import Optional, Sequence

from PIL import Image

from agent_types import (
    DEFAULT_FACTORS,
    IMAGE_PLACEHOLDER,
    MAX_IMAGE_LENGTH,
    Conversation,
    Message,
)

logger = logging.getLogger(__name__)

_BASE64_PREFIX = re.compile(r"^data:image/\w+;base64,")


# ============================================================================
# Coordinate Mapper
# ============================================================================

def parse_box_to_screen_coords(
    box_str: str,
    screen_width: float,
    screen_height: float,
    factors: Sequence[int] = DEFAULT_FACTORS,
) -> tuple[Optional[float], Optional[float]]:
    """Map a normalized box to the screen, quantized to the model's grid.

        '[0.131,0.25,0.131,0.25]' on 2560x1440 -> (335.36, 360.0)

    A single point '[x,y]' is treated as a degenerate box. Empty or malformed
    input gives (None, None): the caller must not move the pointer.
    """
    if not box_str:
        return None, None
    try:
        coords = [float(n) for n in box_str.strip().strip("[]()").split(",") if n.strip()][:4]
    except ValueError:
        logger.warning(f"Malformed box string: {box_str!r}")
        return None, None
    if len(coords) < 2:
        return None, None

    x1, y1 = coords[0], coords[1]
    x2 = coords[2] if len(coords) > 2 else x1
    y2 = coords[3] if len(coords) > 3 else y1
    width_factor, height_factor = factors

    return (
        _round_half_up(((x1 + x2) / 2) * screen_width * width_factor) / width_factor,
        _round_half_up(((y1 + y2) / 2) * screen_height * height_factor) / height_factor,
    )


def _round_half_up(value: float) -> int:
    # builtin round() is banker's rounding; the model grid expects .5 -> up
    return math.floor(value + 0.5)


# ============================================================================
# Image Preprocessor
# ============================================================================

def replace_base64_prefix(b64: str) -> str:
    return _BASE64_PREFIX.sub("", b64)


def inspect_image(b64: str) -> tuple[Optional[int], Optional[int], str]:
    """Decode just enough of a screenshot to learn (width, height, mime).

    Returns (None, None, "") for anything that is not a readable image.
    """
    if not b64:
        return None, None, ""
    try:
        raw = base64.b64decode(replace_base64_prefix(b64))
        with Image.open(io.BytesIO(raw)) as img:
            width, height = img.size
            mime = Image.MIME.get(img.format or "", "")
    except Exception as e:
        logger.error(f"[inspect_image] unreadable screenshot: {e}")
        return None, None, ""
    return width, height, mime


def preprocess_resize_image(image_b64: str, max_pixels: int) -> str:
    """Downscale a base64 screenshot so width*height <= max_pixels.

    Images already within budget come back byte-identical; larger ones are
    resized by sqrt(max_pixels / pixels) and re-encoded as PNG.
    """
    raw = base64.b64decode(replace_base64_prefix(image_b64))
    with Image.open(io.BytesIO(raw)) as img:
        width, height = img.size
        current_pixels = width * height
        if current_pixels <= max_pixels:
            return replace_base64_prefix(image_b64)

        resize_factor = math.sqrt(max_pixels / current_pixels)
        new_w = max(1, math.floor(width * resize_factor))
        new_h = max(1, math.floor(height * resize_factor))
        resized = img.convert("RGB").resize((new_w, new_h), Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    resized.save(buf, format="PNG", optimize=True)
    logger.debug(f"[preprocess] {width}x{height} -> {new_w}x{new_h}")
    return base64.b64encode(buf.getvalue()).decode("utf-8")


# ============================================================================
# History Window Manager
# ============================================================================

def to_vlm_model_format(
    conversations: Sequence[Conversation],
    system_prompt: str,
) -> tuple[list[Message], list[str]]:
    """Split turns into (messages, images); the first human turn gets the system prompt."""
    messages = []
    for idx, conv in enumerate(conversations):
        value = conv.value
        if idx == 0 and conv.origin == "human":
            value = f"{system_prompt}{conv.value}"
        messages.append(Message(origin=conv.origin, value=value))

    images = [
        conv.screenshot_base64 for conv in conversations
        if conv.is_image and conv.screenshot_base64
    ]
    return messages, images


def process_vlm_params(
    conversations: Sequence[Message],
    images: Sequence[str],
    max_image_length: int = MAX_IMAGE_LENGTH,
) -> tuple[list[Message], list[str]]:
    """Keep at most ``max_image_length`` screenshots.

    The oldest images are dropped together with the same number of the
    earliest image placeholder turns. Text and model turns always stay.
    """
    conversations = list(conversations)
    images = list(images)
    if len(images) <= max_image_length:
        return conversations, images

    excess = len(images) - max_image_length
    images = images[excess:]

    kept = []
    to_remove = excess
    for conv in conversations:
        if to_remove > 0 and conv.value == IMAGE_PLACEHOLDER:
            to_remove -= 1
            continue
        kept.append(conv)
    return kept, images


def convert_to_openai_messages(
    conversations: Sequence[Message],
    images: Sequence[str],
) -> list[dict]:
    """Turn the windowed history into chat-completions messages."""
    messages = []
    image_index = 0
    for conv in conversations:
        if conv.value == IMAGE_PLACEHOLDER:
            if image_index < len(images):
                messages.append({"role": "user", "content": [
                    {"type": "image_url",
                     "image_url": {"url": f"data:image/png;base64,{images[image_index]}"}},
                ]})
                image_index += 1
        else:
            messages.append({
                "role":    "user" if conv.origin == "human" else "assistant",
                "content": conv.value,
            })
    return messages


_REFLECTION = re.compile(r"Reflection:[\s\S]*?(?=Action_Summary:|Action:|$)")


def get_summary(prediction: str) -> str:
    """Drop the Reflection block; what remains is shown to the user."""
    return _REFLECTION.sub("", prediction).strip()
