import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from core.env_utils import env_bool, env_float, env_int, first_env, load_env_file


class EnvParsingTests(unittest.TestCase):
    def test_first_non_empty_key_wins(self) -> None:
        with patch.dict(os.environ, {"LOOP_A": "", "LOOP_B": "second"}):
            self.assertEqual(first_env(["LOOP_A", "LOOP_B"]), "second")
            self.assertIsNone(first_env(["LOOP_MISSING"]))

    def test_invalid_or_non_positive_numbers_fall_back(self) -> None:
        with patch.dict(os.environ, {"LOOP_FLOAT": "abc", "LOOP_INT": "-3", "LOOP_ZERO": "0"}):
            self.assertEqual(env_float(["LOOP_FLOAT"], default=1.5), 1.5)
            self.assertEqual(env_int(["LOOP_INT"], default=4), 4)
            self.assertEqual(env_int(["LOOP_ZERO"], default=4), 4)
            self.assertEqual(env_int(["LOOP_ZERO"], default=4, allow_zero=True), 0)
            self.assertEqual(env_float(["LOOP_ZERO"], default=0.1, allow_zero=True), 0.0)

    def test_int_accepts_float_text(self) -> None:
        with patch.dict(os.environ, {"LOOP_INT": "7.0"}):
            self.assertEqual(env_int(["LOOP_INT"], default=1), 7)

    def test_bool_values(self) -> None:
        with patch.dict(os.environ, {"LOOP_ON": "Yes", "LOOP_OFF": "off", "LOOP_ODD": "maybe"}):
            self.assertTrue(env_bool(["LOOP_ON"], default=False))
            self.assertFalse(env_bool(["LOOP_OFF"], default=True))
            self.assertTrue(env_bool(["LOOP_ODD"], default=True))
            self.assertFalse(env_bool(["LOOP_MISSING"], default=False))


class LoadEnvFileTests(unittest.TestCase):
    def test_quotes_export_and_comments(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            env_path = Path(tmp_dir) / ".env"
            env_path.write_text(
                "# judge0 settings\n"
                "\n"
                "export LOOP_JUDGE0_URL='http://localhost:2358'\n"
                'LOOP_MODEL="gpt-4o-mini"\n'
                "not a pair\n",
                encoding="utf-8",
            )
            with patch.dict(os.environ, {}, clear=False):
                os.environ.pop("LOOP_JUDGE0_URL", None)
                os.environ.pop("LOOP_MODEL", None)
                self.assertTrue(load_env_file(str(env_path)))
                self.assertEqual(os.environ["LOOP_JUDGE0_URL"], "http://localhost:2358")
                self.assertEqual(os.environ["LOOP_MODEL"], "gpt-4o-mini")

    def test_existing_values_are_kept_unless_override(self) -> None:
        with TemporaryDirectory() as tmp_dir:
            env_path = Path(tmp_dir) / ".env"
            env_path.write_text("LOOP_KEEP=file\n", encoding="utf-8")
            with patch.dict(os.environ, {"LOOP_KEEP": "shell"}):
                load_env_file(str(env_path))
                self.assertEqual(os.environ["LOOP_KEEP"], "shell")
                load_env_file(str(env_path), override=True)
                self.assertEqual(os.environ["LOOP_KEEP"], "file")

    def test_missing_file_is_not_an_error(self) -> None:
        self.assertFalse(load_env_file("/nonexistent/.env"))
        self.assertFalse(load_env_file(None))


if __name__ == "__main__":
    unittest.main()
