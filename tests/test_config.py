import contextlib
import io
import os
import tempfile
import unittest
from unittest import mock

import cyagen


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name
        patcher = mock.patch.dict(os.environ, {}, clear=False)
        patcher.start()
        self.addCleanup(patcher.stop)
        os.environ.pop("CYAGEN_LSV_MACRO_NAME", None)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write_config(self, text: str) -> str:
        path = os.path.join(self.tmpdir, "cyagen.yaml")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
        return path

    def test_defaults(self) -> None:
        config = cyagen.load_config(None)
        self.assertEqual(config.local_static_var_macro_name, "LOCAL_STATIC_VARIABLE")
        self.assertEqual(config.alternate_suffixes, [".tera", ".j2", ".njk"])
        self.assertEqual(config.alternate_suffix("stub.h.j2"), ".j2")
        self.assertIsNone(config.alternate_suffix("stub.h"))

    def test_yaml_values(self) -> None:
        path = self.write_config(
            "local_static_var_macro_name: KEEP_STATIC\n"
            "alternate_suffixes: [jinja, .tmpl]\n"
        )
        config = cyagen.load_config(path)
        self.assertEqual(config.local_static_var_macro_name, "KEEP_STATIC")
        self.assertEqual(config.alternate_suffixes, [".jinja", ".tmpl"])
        self.assertEqual(config.alternate_suffix("a.c.tmpl"), ".tmpl")
        self.assertIsNone(config.alternate_suffix("a.c.j2"))

    def test_environment_overrides_file(self) -> None:
        path = self.write_config("local_static_var_macro_name: KEEP_STATIC\n")
        os.environ["CYAGEN_LSV_MACRO_NAME"] = "ENV_STATIC"
        self.assertEqual(cyagen.load_config(path).local_static_var_macro_name, "ENV_STATIC")

    def test_empty_file_gives_defaults(self) -> None:
        path = self.write_config("")
        self.assertEqual(cyagen.load_config(path), cyagen.GeneratorConfig())

    def test_unknown_key_is_reported(self) -> None:
        path = self.write_config("some_unknown_option_for_test: 1\n")
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            config = cyagen.load_config(path)
        self.assertEqual(config, cyagen.GeneratorConfig())
        self.assertIn("some_unknown_option_for_test", stderr.getvalue())

    def test_missing_file(self) -> None:
        with self.assertRaises(cyagen.ConfigError):
            cyagen.load_config(os.path.join(self.tmpdir, "absent.yaml"))

    def test_not_a_mapping(self) -> None:
        with self.assertRaises(cyagen.ConfigError):
            cyagen.load_config(self.write_config("- a\n- b\n"))

    def test_invalid_yaml(self) -> None:
        with self.assertRaises(cyagen.ConfigError):
            cyagen.load_config(self.write_config("key: [unclosed\n"))


if __name__ == "__main__":
    unittest.main()
