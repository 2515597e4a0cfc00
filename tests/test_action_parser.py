import unittest

from action_parser import parse_action, parse_action_vlm, smart_resize
from agent_types import ScreenContext, UITarsModelVersion


class ParseActionTests(unittest.TestCase):
    def test_function_call(self) -> None:
        self.assertEqual(
            parse_action("click(start_box='(279,81)')"),
            ("click", {"start_box": "(279,81)"}),
        )

    def test_no_arguments(self) -> None:
        self.assertEqual(parse_action("finished()"), ("finished", {}))

    def test_box_tokens_and_point_alias(self) -> None:
        self.assertEqual(
            parse_action("click(point='<|box_start|>(10,20)<|box_end|>')"),
            ("click", {"start_box": "(10,20)"}),
        )

    def test_not_a_function_call(self) -> None:
        self.assertIsNone(parse_action("just some words"))


class ParseActionVlmTests(unittest.TestCase):
    def test_thought_and_click(self) -> None:
        result = parse_action_vlm("Thought: I need to click this button\nAction: click(start_box='(100,200)')")
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].thought, "I need to click this button")
        self.assertIsNone(result[0].reflection)
        self.assertEqual(result[0].action_type, "click")
        self.assertEqual(result[0].action_inputs, {"start_box": "[0.1,0.2,0.1,0.2]"})

    def test_custom_factors(self) -> None:
        result = parse_action_vlm(
            "Thought: I need to click this button\nAction: click(start_box='(100,200)')",
            factors=(1366, 768),
        )
        self.assertEqual(
            result[0].action_inputs["start_box"],
            "[0.07320644216691069,0.2604166666666667,0.07320644216691069,0.2604166666666667]",
        )

    def test_reflection_and_action_summary(self) -> None:
        result = parse_action_vlm(
            "Reflection: This is a reflection\n"
            "Action_Summary: This is a summary\n"
            "Action: type(text='Hello', start_box='(300,400)')"
        )
        self.assertEqual(result[0].reflection, "This is a reflection")
        self.assertEqual(result[0].thought, "This is a summary")
        self.assertEqual(result[0].action_inputs, {"text": "Hello", "start_box": "[0.3,0.4,0.3,0.4]"})

    def test_multiple_actions(self) -> None:
        result = parse_action_vlm(
            "Thought: Perform multiple actions\n"
            "Action: click(start_box='(100,200)')\n\n"
            "type(text='Hello', start_box='(300,400)')"
        )
        self.assertEqual([p.action_type for p in result], ["click", "type"])
        self.assertTrue(all(p.thought == "Perform multiple actions" for p in result))

    def test_bbox_with_screen_context(self) -> None:
        result = parse_action_vlm(
            "Thought: open the browser\nAction: click(start_box='<bbox>637 964 637 964</bbox>')",
            screen_context=ScreenContext(width=2560, height=1440),
        )
        inputs = result[0].action_inputs
        self.assertEqual(inputs["start_box"], "[0.637,0.964,0.637,0.964]")
        self.assertAlmostEqual(inputs["start_coords"][0], 1630.72)
        self.assertAlmostEqual(inputs["start_coords"][1], 1388.16)

    def test_point_tag_and_scale_factor(self) -> None:
        result = parse_action_vlm(
            "Thought: clear the search bar\nAction: click(point='<point>510 150</point>')",
            screen_context=ScreenContext(width=2560, height=1440),
            scale_factor=2,
        )
        inputs = result[0].action_inputs
        self.assertEqual(inputs["start_box"], "[0.51,0.15,0.51,0.15]")
        self.assertAlmostEqual(inputs["start_coords"][0], 2611.2)
        self.assertAlmostEqual(inputs["start_coords"][1], 432.0)

    def test_small_box_example(self) -> None:
        result = parse_action_vlm(
            "Thought: Click the search bar\nAction: click(start_box='(72,646)')",
            screen_context=ScreenContext(width=1920, height=1080),
        )
        inputs = result[0].action_inputs
        self.assertEqual(inputs["start_box"], "[0.072,0.646,0.072,0.646]")
        self.assertAlmostEqual(inputs["start_coords"][0], 138.24)
        self.assertAlmostEqual(inputs["start_coords"][1], 697.68)

    def test_drag_has_both_boxes(self) -> None:
        result = parse_action_vlm(
            "Thought: move it\nAction: drag(start_box='(100,100)', end_box='(500,500)')"
        )
        self.assertEqual(result[0].action_inputs["start_box"], "[0.1,0.1,0.1,0.1]")
        self.assertEqual(result[0].action_inputs["end_box"], "[0.5,0.5,0.5,0.5]")

    def test_type_keeps_escaped_newline(self) -> None:
        result = parse_action_vlm("Thought: search\nAction: type(content='weather\\n')")
        self.assertEqual(result[0].action_type, "type")
        self.assertEqual(result[0].action_inputs["content"], "weather\\n")

    def test_finished(self) -> None:
        result = parse_action_vlm("Thought: all done\nAction: finished()")
        self.assertEqual(result[0].action_type, "finished")
        self.assertEqual(result[0].action_inputs, {})

    def test_unparseable_action_yields_empty_type(self) -> None:
        result = parse_action_vlm("Thought: hmm\nAction: no idea what to do")
        self.assertEqual(result[0].action_type, "")
        self.assertEqual(result[0].thought, "hmm")

    def test_v1_5_divides_by_smart_resize_dimensions(self) -> None:
        self.assertEqual(smart_resize(1080, 1920), (1932, 1092))
        result = parse_action_vlm(
            "Thought: center\nAction: click(start_box='(966,546)')",
            screen_context=ScreenContext(width=1920, height=1080),
            model_ver=UITarsModelVersion.V1_5,
        )
        self.assertEqual(result[0].action_inputs["start_box"], "[0.5,0.5,0.5,0.5]")
        self.assertAlmostEqual(result[0].action_inputs["start_coords"][0], 960.0)


class SmartResizeTests(unittest.TestCase):
    def test_extreme_aspect_ratio(self) -> None:
        self.assertIsNone(smart_resize(10, 5000))

    def test_multiples_of_factor(self) -> None:
        w, h = smart_resize(1440, 2560)
        self.assertEqual(w % 28, 0)
        self.assertEqual(h % 28, 0)


if __name__ == "__main__":
    unittest.main()
