import unittest

import cyagen


SECTION_ID = "5bb47141-e026-5086-bd7f-cd52a657b4c6"


def section(body: str, section_id: str = SECTION_ID) -> str:
    return f"// MANUAL SECTION: {section_id}\n{body}// MANUAL SECTION END\n"


class ManualSectionMergeTests(unittest.TestCase):
    def test_old_section_replaces_fresh_one(self) -> None:
        rendered = "head v2\n" + section("default\n") + "tail v2\n"
        old_gen = "head v1\n" + section("hand edit\nmore\n") + "tail v1\n"
        merged = cyagen.merge_with_manual_sections(rendered, old_gen)
        self.assertEqual(merged, "head v2\n" + section("hand edit\nmore\n") + "tail v2\n")

    def test_missing_section_keeps_fresh_text(self) -> None:
        rendered = section("default\n", "aaaa-0001") + section("default two\n", "bbbb-0002")
        old_gen = section("edited two\n", "bbbb-0002")
        merged = cyagen.merge_with_manual_sections(rendered, old_gen)
        self.assertEqual(
            merged,
            section("default\n", "aaaa-0001") + section("edited two\n", "bbbb-0002"),
        )

    def test_no_previous_generation(self) -> None:
        rendered = "x\n" + section("default\n")
        self.assertEqual(cyagen.merge_with_manual_sections(rendered, None), rendered)
        self.assertEqual(cyagen.merge_with_manual_sections(rendered, ""), rendered)

    def test_id_prefix_does_not_match_longer_id(self) -> None:
        rendered = section("default\n", "abc")
        old_gen = section("other\n", "abcdef") + section("mine\n", "abc")
        self.assertEqual(
            cyagen.merge_with_manual_sections(rendered, old_gen),
            section("mine\n", "abc"),
        )

    def test_duplicate_ids_take_first_old_section(self) -> None:
        rendered = section("a\n") + section("b\n")
        old_gen = section("first\n") + section("second\n")
        self.assertEqual(
            cyagen.merge_with_manual_sections(rendered, old_gen),
            section("first\n") + section("first\n"),
        )

    def test_merge_is_idempotent(self) -> None:
        old_gen = "v1\n" + section("hand edit\n")
        rendered = "v2\n" + section("default\n")
        once = cyagen.merge_with_manual_sections(rendered, old_gen)
        self.assertEqual(cyagen.merge_with_manual_sections(once, once), once)


if __name__ == "__main__":
    unittest.main()
