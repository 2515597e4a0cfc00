import asyncio
import base64
import io
import unittest
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from PIL import Image

from agent_types import (
    IMAGE_PLACEHOLDER,
    MAX_PIXELS_DOUBAO,
    MAX_PIXELS_V1_0,
    MAX_PIXELS_V1_5,
    AbortError,
    InvokeParams,
    Message,
    ScreenContext,
    UITarsModelVersion,
)
from vlm_model import ModelConfig, UITarsModel, max_pixels_for


def _png_b64(width: int = 64, height: int = 36) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (0, 0, 0)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("utf-8")


def _response(content: str, tokens: int = 42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=tokens),
    )


def _params(version=None) -> InvokeParams:
    return InvokeParams(
        conversations=[Message("human", "open calculator"), Message("human", IMAGE_PLACEHOLDER)],
        images=[_png_b64()],
        screen_context=ScreenContext(width=1920, height=1080),
        scale_factor=1.0,
        ui_tars_version=version,
    )


class UITarsModelTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.model = UITarsModel(ModelConfig(model="ui-tars-test", api_key="sk-test", base_url="http://localhost:8000/v1"))
        self.create = AsyncMock(return_value=_response(
            "Thought: click the button\nAction: click(start_box='(500,500)')"
        ))
        self.model._client = MagicMock()
        self.model._client.chat.completions.create = self.create

    async def test_invoke_parses_prediction(self) -> None:
        output = await self.model.invoke(_params())

        self.assertEqual(output.prediction, "Thought: click the button\nAction: click(start_box='(500,500)')")
        self.assertEqual(len(output.parsed_predictions), 1)
        parsed = output.parsed_predictions[0]
        self.assertEqual(parsed.action_type, "click")
        self.assertEqual(parsed.action_inputs["start_box"], "[0.5,0.5,0.5,0.5]")
        self.assertEqual(parsed.action_inputs["start_coords"], [960.0, 540.0])
        self.assertEqual(output.cost_tokens, 42)
        self.assertIsNotNone(output.cost_time)

    async def test_request_shape(self) -> None:
        await self.model.invoke(_params())

        kwargs = self.create.await_args.kwargs
        self.assertEqual(kwargs["model"], "ui-tars-test")
        self.assertEqual(kwargs["max_tokens"], 1000)
        self.assertEqual(kwargs["messages"][0], {"role": "user", "content": "open calculator"})
        url = kwargs["messages"][1]["content"][0]["image_url"]["url"]
        self.assertTrue(url.startswith("data:image/png;base64,"))

    async def test_image_preprocessing_runs_off_the_event_loop(self) -> None:
        with patch("vlm_model.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            await self.model.invoke(_params())
        to_thread.assert_awaited_once()

    async def test_large_screenshot_is_downscaled_before_sending(self) -> None:
        params = replace(_params(), images=[_png_b64(2000, 2000)])
        await self.model.invoke(params)

        url = self.create.await_args.kwargs["messages"][1]["content"][0]["image_url"]["url"]
        raw = base64.b64decode(url.split(",", 1)[1])
        with Image.open(io.BytesIO(raw)) as img:
            self.assertLessEqual(img.width * img.height, MAX_PIXELS_V1_0)

    async def test_v1_5_uses_large_token_budget(self) -> None:
        await self.model.invoke(_params(UITarsModelVersion.V1_5))
        self.assertEqual(self.create.await_args.kwargs["max_tokens"], 65535)

    async def test_explicit_max_tokens_wins(self) -> None:
        self.model.model_config.max_tokens = 512
        await self.model.invoke(_params(UITarsModelVersion.V1_5))
        self.assertEqual(self.create.await_args.kwargs["max_tokens"], 512)

    async def test_empty_prediction(self) -> None:
        self.create.return_value = _response("", tokens=3)
        output = await self.model.invoke(_params())
        self.assertEqual(output.prediction, "")
        self.assertEqual(output.parsed_predictions, [])
        self.assertEqual(output.cost_tokens, 3)

    async def test_aborted_signal_skips_request(self) -> None:
        signal = asyncio.Event()
        signal.set()
        with self.assertRaises(AbortError):
            await self.model.invoke(_params(), signal=signal)
        self.create.assert_not_awaited()

    async def test_provider_errors_propagate(self) -> None:
        self.create.side_effect = RuntimeError("connection reset")
        with self.assertRaises(RuntimeError):
            await self.model.invoke(_params())

    def test_model_name_and_factors(self) -> None:
        self.assertEqual(self.model.model_name, "ui-tars-test")
        self.assertEqual(self.model.factors, (1000, 1000))


class MaxPixelsTests(unittest.TestCase):
    def test_per_version_budget(self) -> None:
        self.assertEqual(max_pixels_for(None), MAX_PIXELS_V1_0)
        self.assertEqual(max_pixels_for(UITarsModelVersion.V1_0), MAX_PIXELS_V1_0)
        self.assertEqual(max_pixels_for(UITarsModelVersion.V1_5), MAX_PIXELS_V1_5)
        self.assertEqual(max_pixels_for(UITarsModelVersion.DOUBAO_1_5_20B), MAX_PIXELS_DOUBAO)


if __name__ == "__main__":
    unittest.main()
