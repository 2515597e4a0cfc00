"""
GUI Agent - Model invocation adapter

Wraps an OpenAI-compatible chat-completions endpoint (UI-TARS, Doubao,
vLLM, DashScope ...) behind a single ``invoke`` call that returns the raw
prediction plus the parsed actions.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from openai import AsyncOpenAI

from action_parser import parse_action_vlm
from agent_types import (
    DEFAULT_FACTORS,
    MAX_PIXELS_DOUBAO,
    MAX_PIXELS_V1_0,
    MAX_PIXELS_V1_5,
    AbortError,
    InvokeOutput,
    InvokeParams,
    UITarsModelVersion,
)
from vlm_utils import convert_to_openai_messages, preprocess_resize_image

logger = logging.getLogger(__name__)


def max_pixels_for(version: Optional[UITarsModelVersion]) -> int:
    if version == UITarsModelVersion.V1_5:
        return MAX_PIXELS_V1_5
    if version in (UITarsModelVersion.DOUBAO_1_5_15B, UITarsModelVersion.DOUBAO_1_5_20B):
        return MAX_PIXELS_DOUBAO
    return MAX_PIXELS_V1_0


class Model:
    """Contract the loop controller talks to."""

    @property
    def factors(self) -> tuple[int, int]:
        return DEFAULT_FACTORS

    @property
    def model_name(self) -> str:
        return "unknown"

    def reset(self) -> None:
        pass

    async def invoke(self, params: InvokeParams,
                     signal: Optional[asyncio.Event] = None) -> InvokeOutput:
        raise NotImplementedError


@dataclass
class ModelConfig:
    model:       str
    api_key:     str             = ""
    base_url:    Optional[str]   = None
    max_tokens:  Optional[int]   = None
    temperature: float           = 0.0
    top_p:       float           = 0.7
    timeout:     float           = 30.0
    extra_body:  dict            = field(default_factory=dict)


class UITarsModel(Model):

    def __init__(self, model_config: ModelConfig):
        self.model_config = model_config
        # retries belong to the controller's RetryPolicy, not the SDK
        self._client = AsyncOpenAI(
            api_key=model_config.api_key or "EMPTY",
            base_url=model_config.base_url,
            max_retries=0,
        )
        logger.info(f"[UITarsModel] initialized, model: {model_config.model}, base_url: {model_config.base_url}")

    @property
    def model_name(self) -> str:
        return self.model_config.model or "unknown"

    async def _invoke_model_provider(
        self,
        messages: list[dict],
        ui_tars_version: Optional[UITarsModelVersion],
    ) -> tuple[str, int, int]:
        """Call the real VLM. Returns (prediction, cost_time_ms, cost_tokens)."""
        cfg = self.model_config
        max_tokens = cfg.max_tokens
        if max_tokens is None:
            max_tokens = 65535 if ui_tars_version == UITarsModelVersion.V1_5 else 1000

        kwargs = {
            "model":       cfg.model,
            "messages":    messages,
            "max_tokens":  max_tokens,
            "temperature": cfg.temperature,
            "top_p":       cfg.top_p,
            "stream":      False,
            "timeout":     cfg.timeout,
        }
        if cfg.extra_body:
            kwargs["extra_body"] = cfg.extra_body

        start = time.time()
        resp = await self._client.chat.completions.create(**kwargs)
        cost_time = int((time.time() - start) * 1000)

        content = resp.choices[0].message.content if resp.choices else ""
        usage = getattr(resp, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        return content or "", cost_time, tokens

    async def invoke(self, params: InvokeParams,
                     signal: Optional[asyncio.Event] = None) -> InvokeOutput:
        if signal is not None and signal.is_set():
            raise AbortError("request was aborted")
        ctx = params.screen_context
        logger.info(
            f"[UITarsModel] invoke: screen={ctx.width}x{ctx.height}, "
            f"scaleFactor={params.scale_factor}, version={params.ui_tars_version}"
        )

        max_pixels = max_pixels_for(params.ui_tars_version)
        compressed = await asyncio.to_thread(
            lambda: [preprocess_resize_image(img, max_pixels) for img in params.images]
        )
        messages = convert_to_openai_messages(params.conversations, compressed)

        start = time.time()
        try:
            prediction, cost_time, cost_tokens = await self._invoke_model_provider(
                messages, params.ui_tars_version,
            )
        except Exception as e:
            logger.error(f"[UITarsModel] error: {e}")
            raise
        finally:
            logger.info(f"[UITarsModel cost]: {int((time.time() - start) * 1000)}ms")

        if not prediction:
            logger.warning("[UITarsModel] empty prediction")
            return InvokeOutput(prediction="", cost_time=cost_time, cost_tokens=cost_tokens)

        try:
            parsed = parse_action_vlm(
                prediction,
                factors=self.factors,
                screen_context=ctx,
                scale_factor=params.scale_factor,
                model_ver=params.ui_tars_version,
            )
        except Exception as e:
            logger.error(f"[UITarsModel] parse error: {e}")
            parsed = []

        return InvokeOutput(
            prediction=prediction,
            parsed_predictions=parsed,
            cost_time=cost_time,
            cost_tokens=cost_tokens,
        )
