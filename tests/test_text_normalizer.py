from __future__ import annotations

import unittest

from text_normalizer import ends_with_normalized, normalize, overlap_length


class NormalizeTests(unittest.TestCase):
    def test_strips_punctuation_case_and_spacing(self) -> None:
        self.assertEqual(normalize("  Hello,   World! "), "hello world")
        self.assertEqual(normalize("hello world"), normalize("Hello world..."))

    def test_keeps_non_latin_letters_and_digits(self) -> None:
        self.assertEqual(normalize("مرحبا، بالعالم 2024"), "مرحبا بالعالم 2024")
        self.assertEqual(normalize("你好，世界。"), "你好世界")

    def test_drops_arabic_diacritics(self) -> None:
        self.assertEqual(normalize("مَرْحَبًا"), normalize("مرحبا"))

    def test_is_total_for_empty_and_symbols(self) -> None:
        self.assertEqual(normalize(""), "")
        self.assertEqual(normalize("?!... --"), "")


class EndsWithTests(unittest.TestCase):
    def test_suffix_match_ignores_punctuation(self) -> None:
        self.assertTrue(ends_with_normalized("The quick brown fox.", "brown fox"))
        self.assertFalse(ends_with_normalized("the quick brown fox", "quick brown"))


class OverlapLengthTests(unittest.TestCase):
    def test_finds_overlap_between_tail_and_head(self) -> None:
        self.assertEqual(overlap_length("hello world foo".split(), "world foo bar".split(), 10), 2)

    def test_longest_overlap_wins(self) -> None:
        prev = "a b a b".split()
        new = "a b a b c".split()
        self.assertEqual(overlap_length(prev, new, 10), 4)

    def test_respects_window(self) -> None:
        prev = "one two three four five six".split()
        new = "two three four five six seven".split()
        self.assertEqual(overlap_length(prev, new, 10), 5)
        self.assertEqual(overlap_length(prev, new, 3), 0)

    def test_no_overlap_returns_zero(self) -> None:
        self.assertEqual(overlap_length("good morning".split(), "see you later".split(), 10), 0)
        self.assertEqual(overlap_length([], "anything".split(), 10), 0)

    def test_punctuation_only_words_do_not_count(self) -> None:
        self.assertEqual(overlap_length(["hello", "..."], ["...", "world"], 10), 0)

    def test_comparison_is_normalized(self) -> None:
        self.assertEqual(overlap_length("I said Hello, World".split(), "hello world again".split(), 10), 2)


if __name__ == "__main__":
    unittest.main()
