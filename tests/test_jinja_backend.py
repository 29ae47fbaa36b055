import unittest
import uuid

import cyagen


CODE = """\
#include <stdint.h>
static uint8_t counter = 0U;
static int helper(void)
{
    return 0;
}
int api(int level)
{
    return helper();
}
"""


class GenerateUuidTests(unittest.TestCase):
    def test_uuid_is_name_based_and_stable(self) -> None:
        first = cyagen.generate_uuid("sample.c:includes")
        self.assertEqual(first, cyagen.generate_uuid("sample.c:includes"))
        self.assertEqual(first, str(uuid.uuid5(uuid.NAMESPACE_OID, "sample.c:includes")))
        self.assertNotEqual(first, cyagen.generate_uuid("sample.c:stubs"))
        self.assertEqual(uuid.UUID(first).version, 5)


class JinjaBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.model = cyagen.parse(CODE).with_source("sample", "src")

    def test_context_is_json_view_of_model(self) -> None:
        template = (
            "// {{ source_name }} from {{ source_dir_name }}\n"
            "{% for inc in incs %}{{ inc.captured }}\n{% endfor %}"
            "{% for fn in fncs %}{{ fn.rtype }} {{ fn.name }}({{ fn.args }});\n{% endfor %}"
            "{% for ncl in ncls %}{{ ncl.caller.name }} -> {{ ncl.callee.name }}\n{% endfor %}"
            "{{ static_vars[0].name }}={{ static_vars[0].value }}\n"
        )
        expected = (
            "// sample from src\n"
            "#include <stdint.h>\n"
            "int helper();\n"
            "int api(int level);\n"
            "api -> helper\n"
            "counter=0U\n"
        )
        self.assertEqual(cyagen.generate_using_jinja(self.model, template), expected)

    def test_generate_uuid_filter(self) -> None:
        rendered = cyagen.generate_using_jinja(
            self.model, "// MANUAL SECTION: {{ 'stubs' | generateUUID }}"
        )
        self.assertEqual(rendered, "// MANUAL SECTION: " + cyagen.generate_uuid("stubs"))

    def test_filter_rejects_non_strings(self) -> None:
        with self.assertRaises(cyagen.TemplateRenderError):
            cyagen.generate_using_jinja(self.model, "{{ 42 | generateUUID }}")

    def test_undefined_variable_is_an_error(self) -> None:
        with self.assertRaises(cyagen.TemplateRenderError):
            cyagen.generate_using_jinja(self.model, "{{ no_such_field }}")

    def test_syntax_error_is_an_error(self) -> None:
        with self.assertRaises(cyagen.TemplateRenderError):
            cyagen.generate_using_jinja(self.model, "{% for fn in fncs %}")


if __name__ == "__main__":
    unittest.main()
