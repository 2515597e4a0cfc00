import base64
import io
import math
import unittest

from PIL import Image

import vlm_utils
from agent_types import IMAGE_PLACEHOLDER, Conversation, Message


def _png_b64(width: int, height: int, color=(200, 30, 30)) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("utf-8")


def _size(b64: str) -> tuple[int, int]:
    with Image.open(io.BytesIO(base64.b64decode(b64))) as img:
        return img.size


class CoordinateMapperTests(unittest.TestCase):
    def test_four_value_box_maps_to_midpoint(self) -> None:
        x, y = vlm_utils.parse_box_to_screen_coords("[0.131,0.25,0.131,0.25]", 2560, 1440)
        self.assertAlmostEqual(x, 335.36)
        self.assertAlmostEqual(y, 360.0)

    def test_single_point_is_degenerate_box(self) -> None:
        self.assertEqual(vlm_utils.parse_box_to_screen_coords("[0.5,0.5]", 1920, 1080), (960.0, 540.0))

    def test_quantized_to_factor_grid(self) -> None:
        x, _ = vlm_utils.parse_box_to_screen_coords("[0.1234567,0.1]", 1000, 1000)
        self.assertAlmostEqual(x, 123.457)

    def test_matches_round_half_up_formula(self) -> None:
        boxes = [
            ([0.1, 0.2, 0.3, 0.4], (1920, 1080), (1000, 1000)),
            ([0.0, 0.0, 1.0, 1.0], (1366, 768), (1000, 1000)),
            ([0.333, 0.777], (2560, 1600), (1366, 768)),
            ([0.05, 0.95, 0.15, 0.85], (800, 600), (100, 100)),
        ]
        for box, (w, h), (wf, hf) in boxes:
            full = box if len(box) == 4 else box + box
            box_str = "[" + ",".join(str(v) for v in box) + "]"
            x, y = vlm_utils.parse_box_to_screen_coords(box_str, w, h, (wf, hf))
            self.assertAlmostEqual(x, math.floor((full[0] + full[2]) / 2 * w * wf + 0.5) / wf)
            self.assertAlmostEqual(y, math.floor((full[1] + full[3]) / 2 * h * hf + 0.5) / hf)

    def test_empty_or_malformed_gives_none(self) -> None:
        for box_str in ("", "[]", "[0.5]", "abc", "[0.1,x]"):
            self.assertEqual(vlm_utils.parse_box_to_screen_coords(box_str, 1920, 1080), (None, None))


class ImagePreprocessorTests(unittest.TestCase):
    def test_large_image_is_downscaled_under_budget(self) -> None:
        original = _png_b64(200, 100)
        resized = vlm_utils.preprocess_resize_image(original, 5000)
        self.assertEqual(_size(resized), (100, 50))

    def test_never_increases_pixels(self) -> None:
        for w, h, budget in ((640, 480, 100000), (333, 777, 12345), (50, 50, 10**6)):
            out = vlm_utils.preprocess_resize_image(_png_b64(w, h), budget)
            ow, oh = _size(out)
            self.assertLessEqual(ow * oh, w * h)
            if w * h > budget:
                self.assertLessEqual(ow * oh, budget)

    def test_within_budget_is_byte_identical(self) -> None:
        original = _png_b64(64, 48)
        self.assertEqual(vlm_utils.preprocess_resize_image(original, 64 * 48), original)

    def test_data_url_prefix_is_stripped(self) -> None:
        original = _png_b64(10, 10)
        out = vlm_utils.preprocess_resize_image("data:image/png;base64," + original, 1000)
        self.assertEqual(out, original)

    def test_inspect_image(self) -> None:
        self.assertEqual(vlm_utils.inspect_image(_png_b64(30, 20)), (30, 20, "image/png"))
        self.assertEqual(vlm_utils.inspect_image(""), (None, None, ""))
        self.assertEqual(vlm_utils.inspect_image("bm90IGFuIGltYWdl"), (None, None, ""))


class HistoryWindowTests(unittest.TestCase):
    def _history(self, n_images: int) -> tuple[list[Message], list[str]]:
        messages = [Message("human", "do the thing")]
        images = []
        for i in range(n_images):
            messages.append(Message("human", IMAGE_PLACEHOLDER))
            messages.append(Message("gpt", f"step {i}"))
            images.append(f"img{i}")
        return messages, images

    def test_drops_earliest_image_turns(self) -> None:
        messages, images = self._history(7)
        kept, kept_images = vlm_utils.process_vlm_params(messages, images, max_image_length=5)

        self.assertEqual(kept_images, ["img2", "img3", "img4", "img5", "img6"])
        self.assertEqual(sum(1 for m in kept if m.value == IMAGE_PLACEHOLDER), 5)
        self.assertEqual(
            [m for m in kept if m.value != IMAGE_PLACEHOLDER],
            [m for m in messages if m.value != IMAGE_PLACEHOLDER],
        )
        # first two image turns gone: history opens with instruction, step 0, step 1
        self.assertEqual([m.value for m in kept[:4]], ["do the thing", "step 0", "step 1", IMAGE_PLACEHOLDER])

    def test_under_limit_is_untouched(self) -> None:
        messages, images = self._history(3)
        kept, kept_images = vlm_utils.process_vlm_params(messages, images, max_image_length=5)
        self.assertEqual(kept, messages)
        self.assertEqual(kept_images, images)

    def test_system_prompt_prefixes_first_human_turn(self) -> None:
        conversations = [
            Conversation("human", "open calculator"),
            Conversation("human", IMAGE_PLACEHOLDER, screenshot_base64="abc"),
            Conversation("gpt", "Thought: click it"),
        ]
        messages, images = vlm_utils.to_vlm_model_format(conversations, "SYSTEM\n")
        self.assertEqual(messages[0].value, "SYSTEM\nopen calculator")
        self.assertEqual(messages[1].value, IMAGE_PLACEHOLDER)
        self.assertEqual(images, ["abc"])

    def test_convert_to_openai_messages(self) -> None:
        messages = [
            Message("human", "task"),
            Message("human", IMAGE_PLACEHOLDER),
            Message("gpt", "Action: finished()"),
        ]
        out = vlm_utils.convert_to_openai_messages(messages, ["QUJD"])
        self.assertEqual(out[0], {"role": "user", "content": "task"})
        self.assertEqual(out[1]["role"], "user")
        self.assertEqual(out[1]["content"][0]["image_url"]["url"], "data:image/png;base64,QUJD")
        self.assertEqual(out[2], {"role": "assistant", "content": "Action: finished()"})


class SummaryTests(unittest.TestCase):
    def test_reflection_is_removed(self) -> None:
        prediction = "Reflection: that failed\nAction_Summary: try again\nAction: click(start_box='(1,2)')"
        self.assertEqual(
            vlm_utils.get_summary(prediction),
            "Action_Summary: try again\nAction: click(start_box='(1,2)')",
        )

    def test_plain_prediction_is_kept(self) -> None:
        prediction = "Thought: done\nAction: finished()"
        self.assertEqual(vlm_utils.get_summary(prediction), prediction)


if __name__ == "__main__":
    unittest.main()
