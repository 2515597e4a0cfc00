import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

import config as config_module
from agent_types import UITarsModelVersion
from config import Config, get_api_key_status, load_config, validate_api_key

MISSING_ENV = str(Path(tempfile.gettempdir()) / "gui-agent-tests-no-such.env")


class ConfigValidationTests(unittest.TestCase):
    def test_defaults_are_valid(self) -> None:
        cfg = Config()
        self.assertEqual(cfg.max_loop_count, 25)
        self.assertEqual(cfg.max_image_length, 5)
        self.assertEqual(cfg.version, UITarsModelVersion.V1_5)

    def test_out_of_range_values(self) -> None:
        for kwargs in (
            {"max_loop_count": 0},
            {"temperature": 3.0},
            {"top_p": 0},
            {"max_tokens": 50},
            {"max_image_length": 0},
            {"model_retries": -1},
            {"loop_interval_ms": -5},
            {"ui_tars_version": "2.0"},
        ):
            with self.subTest(**kwargs), self.assertRaises(ValueError):
                Config(**kwargs)

    def test_to_model_config(self) -> None:
        cfg = Config(api_key="sk-abc", model="ui-tars-72b", max_tokens=0, temperature=0.1)
        mc = cfg.to_model_config()
        self.assertEqual(mc.model, "ui-tars-72b")
        self.assertEqual(mc.api_key, "sk-abc")
        self.assertIsNone(mc.max_tokens)
        self.assertEqual(mc.temperature, 0.1)

    def test_to_retry_config(self) -> None:
        cfg = Config(screenshot_retries=2, model_retries=3, execute_retries=0)
        retry = cfg.to_retry_config()
        self.assertEqual(retry.screenshot.max_retries, 2)
        self.assertEqual(retry.model.max_retries, 3)
        self.assertEqual(retry.execute.max_retries, 0)

    def test_dictionary_access(self) -> None:
        cfg = Config(model="m")
        self.assertEqual(cfg["model"], "m")
        self.assertEqual(cfg.get("missing", "fallback"), "fallback")


class LoadConfigTests(unittest.TestCase):
    def test_environment_variables(self) -> None:
        env = {
            "VLM_API_KEY": "sk-from-env-0123456789",
            "VLM_BASE_URL": "https://example.com/v1",
            "VLM_MODEL_NAME": "doubao-ui-tars",
            "UI_TARS_VERSION": "doubao-1.5-15B",
            "MAX_LOOP_COUNT": "40",
            "MODEL_RETRIES": "4",
            "DEBUG": "true",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config(env_file=MISSING_ENV)

        self.assertEqual(cfg.api_key, "sk-from-env-0123456789")
        self.assertEqual(cfg.base_url, "https://example.com/v1")
        self.assertEqual(cfg.model, "doubao-ui-tars")
        self.assertEqual(cfg.version, UITarsModelVersion.DOUBAO_1_5_15B)
        self.assertEqual(cfg.max_loop_count, 40)
        self.assertEqual(cfg.model_retries, 4)
        self.assertTrue(cfg.debug)

    def test_cli_overrides_environment(self) -> None:
        with patch.dict(os.environ, {"VLM_MODEL_NAME": "from-env", "MAX_LOOP_COUNT": "40"}, clear=True):
            cfg = load_config(env_file=MISSING_ENV, model="from-cli", max_loop_count=10, language="Chinese")

        self.assertEqual(cfg.model, "from-cli")
        self.assertEqual(cfg.max_loop_count, 10)
        self.assertEqual(cfg.language, "Chinese")

    def test_invalid_override_is_rejected(self) -> None:
        with patch.dict(os.environ, {}, clear=True), self.assertRaises(ValueError):
            load_config(env_file=MISSING_ENV, max_loop_count=0)


class ApiKeyTests(unittest.TestCase):
    def test_local_endpoint_needs_no_key(self) -> None:
        cfg = Config(base_url="http://localhost:8000/v1")
        self.assertTrue(validate_api_key(cfg))
        self.assertIn("not required", get_api_key_status(cfg))

    def test_hosted_endpoint(self) -> None:
        self.assertFalse(validate_api_key(Config(base_url="https://api.example.com/v1")))
        self.assertFalse(validate_api_key(Config(base_url="https://api.example.com/v1", api_key="sk-your-key")))
        self.assertTrue(validate_api_key(Config(base_url="https://api.example.com/v1", api_key="sk-0123456789abcdefghij")))
        self.assertEqual(
            get_api_key_status(Config(base_url="https://api.example.com/v1", api_key="short")),
            "API key appears invalid (too short)",
        )


class ConfigCliTests(unittest.TestCase):
    def test_commands_run(self) -> None:
        runner = CliRunner()
        with patch.dict(os.environ, {}, clear=True):
            for args in (["show", "-e", MISSING_ENV], ["defaults"], ["check", "-e", MISSING_ENV]):
                result = runner.invoke(config_module.cli, args)
                self.assertEqual(result.exit_code, 0, result.output)

    def test_defaults_lists_settings(self) -> None:
        result = CliRunner().invoke(config_module.cli, ["defaults"])
        self.assertIn("max_loop_count", result.output)


if __name__ == "__main__":
    unittest.main()
