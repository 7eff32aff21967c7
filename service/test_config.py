#!/usr/bin/env python3
"""
Unit tests for babybinds_config — keybind parser, binding store and loading.
Run from the service/ directory: python3 -m unittest test_config
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent))  # service/

import babybinds_config as _cfg

Binding          = _cfg.Binding
BindingStore     = _cfg.BindingStore
ConfigParser     = _cfg.ConfigParser
ParserMode       = _cfg.ParserMode
MalformedConfig  = _cfg.MalformedConfig
ConfigUnreadable = _cfg.ConfigUnreadable


def parse(text, combo_size=5):
    store = BindingStore()
    if isinstance(text, str):
        text = text.encode()
    ConfigParser(store, combo_size).parse(text)
    return list(store)


class TestRecords(unittest.TestCase):

    def test_single_key(self):
        self.assertEqual(parse("30:xterm"), [Binding((30,), (b"xterm",))])

    def test_multi_key_with_quotes_literal(self):
        binds = parse('1;2:notify-send "hi"')
        self.assertEqual(binds, [Binding((1, 2), (b"notify-send", b'"hi"'))])

    def test_keys_sorted_and_unique(self):
        binds = parse("56;29;56;15:cmd")
        self.assertEqual(binds[0].keys, (15, 29, 56))

    def test_one_binding_per_record(self):
        text = (
            "# launcher binds\n"
            "\n"
            "125:rofi -show run\n"
            "   \t\n"
            "  # indented comment\n"
            "29;56;20:xterm -e htop\n"
            "29;56;14:true"
        )
        binds = parse(text)
        self.assertEqual(len(binds), 3)
        self.assertEqual(binds[0].argv, (b"rofi", b"-show", b"run"))
        self.assertEqual(binds[1].keys, (20, 29, 56))
        self.assertEqual(binds[2].argv, (b"true",))

    def test_blanks_ignored_outside_command(self):
        binds = parse(" \t29 ; 5 6 :\tfirefox  ")
        self.assertEqual(binds, [Binding((29, 56), (b"firefox",))])

    def test_whitespace_runs_collapse(self):
        binds = parse("1:a  \t  b\t\tc")
        self.assertEqual(binds[0].argv, (b"a", b"b", b"c"))

    def test_comment_line_discards_keycodes(self):
        self.assertEqual(parse("#1;2:cmd\n3:ok"), [Binding((3,), (b"ok",))])

    def test_hash_inside_command_is_literal(self):
        self.assertEqual(parse("1:echo #not-a-comment")[0].argv,
                         (b"echo", b"#not-a-comment"))

    def test_crlf_not_special(self):
        self.assertEqual(parse("1:cmd\r\n")[0].argv, (b"cmd\r",))

    def test_max_keycode(self):
        self.assertEqual(parse("9999999:cmd")[0].keys, (9999999,))

    def test_leading_zeros(self):
        self.assertEqual(parse("0042:cmd")[0].keys, (42,))

    def test_non_ascii_argument_bytes(self):
        self.assertEqual(parse("1:notify-send größe")[0].argv,
                         (b"notify-send", "größe".encode()))

    def test_empty_file(self):
        self.assertEqual(parse(""), [])

    def test_duplicates_kept_in_order(self):
        binds = parse("1;2:first\n2;1:second")
        self.assertEqual([b.argv for b in binds], [(b"first",), (b"second",)])

    def test_reparse_identical(self):
        text = "1;2:a\\ b\n# c\n3:x y\\n"
        self.assertEqual(parse(text), parse(text))

    def test_parser_returns_count(self):
        store = BindingStore()
        self.assertEqual(ConfigParser(store).parse(b"1:a\n2:b\n"), 2)


class TestEscapes(unittest.TestCase):

    def argv(self, command):
        return parse("1:" + command)[0].argv

    def test_escaped_space(self):
        self.assertEqual(self.argv("a\\ b"), (b"a b",))

    def test_escaped_tab(self):
        self.assertEqual(self.argv("a\\\tb"), (b"a\tb",))

    def test_escaped_newline(self):
        self.assertEqual(self.argv("a\\nb"), (b"a\nb",))

    def test_escaped_backslash(self):
        self.assertEqual(self.argv("a\\\\b"), (b"a\\b",))

    def test_double_escaped_backslash_then_n(self):
        self.assertEqual(self.argv("a\\\\n"), (b"a\\n",))

    def test_invalid_escape_kept(self):
        self.assertEqual(self.argv("\\x\\$HOME"), (b"\\x\\$HOME",))

    def test_mixed_sequence(self):
        self.assertEqual(self.argv("a\\ b\\\\c\\nd e"), (b"a b\\c\nd", b"e"))

    def test_escaped_space_alone_is_an_argument(self):
        self.assertEqual(self.argv("echo \\ "), (b"echo", b" "))

    def test_backslash_at_end_of_line(self):
        binds = parse("1:cmd\\\n2:next")
        self.assertEqual(binds[0].argv, (b"cmd\\",))
        self.assertEqual(binds[1].argv, (b"next",))

    def test_backslash_at_end_of_input(self):
        self.assertEqual(self.argv("cmd \\"), (b"cmd", b"\\"))

    def test_nul_separates(self):
        self.assertEqual(self.argv("a\x00b"), (b"a", b"b"))

    def test_escaped_nul_still_separates(self):
        argv = self.argv("a\\\x00b")
        self.assertEqual(argv, (b"a\\", b"b"))
        self.assertFalse(any(b"\x00" in arg for arg in argv))


class TestMalformed(unittest.TestCase):

    def assertMalformed(self, text, line=None, combo_size=5):
        with self.assertRaises(MalformedConfig) as cm:
            parse(text, combo_size)
        if line is not None:
            self.assertEqual(cm.exception.line, line)
        return cm.exception

    def test_empty_keycode_before_colon(self):
        self.assertMalformed(":cmd", line=1)

    def test_empty_field_between_semicolons(self):
        self.assertMalformed("1;;2:cmd")

    def test_keycode_too_long(self):
        err = self.assertMalformed("12345678:cmd")
        self.assertIn("ridiculously big", str(err))

    def test_non_digit_keycode(self):
        self.assertMalformed("1a:cmd")

    def test_too_many_keycodes(self):
        self.assertMalformed("1;2;3:cmd", combo_size=2)

    def test_combo_size_limit_inclusive(self):
        self.assertEqual(parse("1;2:cmd", combo_size=2)[0].keys, (1, 2))

    def test_missing_command(self):
        self.assertMalformed("# ok\n1;2\n3:cmd", line=2)

    def test_missing_command_at_eof(self):
        self.assertMalformed("1;2")

    def test_empty_command(self):
        self.assertMalformed("1:   ")

    def test_error_clears_store(self):
        store = BindingStore()
        parser = ConfigParser(store)
        with self.assertRaises(MalformedConfig):
            parser.parse(b"1:ok\n2:fine\n:cmd\n")
        self.assertEqual(len(store), 0)
        self.assertEqual(parser.mode, ParserMode.ERROR)

    def test_bad_combo_size(self):
        with self.assertRaises(ValueError):
            ConfigParser(BindingStore(), 0)


class TestBindingStore(unittest.TestCase):

    def setUp(self):
        self.store = BindingStore()
        for keys, cmd in [((5,), b"one"), ((1, 2), b"combo"),
                          ((5,), b"shadowed"), ((1, 2), b"combo2")]:
            self.store.append(Binding(keys, (cmd,)))

    def test_find_single_first_match(self):
        self.assertEqual(self.store.find_single(5).argv, (b"one",))

    def test_find_single_ignores_combos(self):
        self.assertIsNone(self.store.find_single(1))

    def test_find_combo_first_match(self):
        self.assertEqual(self.store.find_combo([1, 2]).argv, (b"combo",))

    def test_find_combo_length_must_match(self):
        self.assertIsNone(self.store.find_combo([1, 2, 3]))
        self.assertIsNone(self.store.find_combo([1]))

    def test_clear(self):
        self.store.clear()
        self.assertEqual(len(self.store), 0)

    def test_binding_rejects_unsorted_keys(self):
        with self.assertRaises(ValueError):
            Binding((2, 1), (b"x",))

    def test_binding_rejects_empty_argv(self):
        with self.assertRaises(ValueError):
            Binding((1,), ())
        with self.assertRaises(ValueError):
            Binding((1,), (b"",))

    def test_format_command(self):
        self.assertEqual(_cfg.format_command((b"notify-send", b"a b")),
                         '"notify-send" "a b"')


class TestLoadBindings(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, text, name=".babybindsrc"):
        p = Path(self.tmp.name) / name
        p.write_bytes(text.encode())
        return p

    def test_explicit_path(self):
        path = self._write("1;2:xterm\n")
        store = _cfg.load_bindings(path)
        self.assertEqual(len(store), 1)

    def test_home_default(self):
        self._write("3:true\n")
        with patch.dict(os.environ, {"HOME": self.tmp.name}):
            store = _cfg.load_bindings()
        self.assertEqual(list(store), [Binding((3,), (b"true",))])

    def test_missing_home(self):
        with patch.dict(os.environ, clear=True):
            with self.assertRaises(ConfigUnreadable):
                _cfg.load_bindings()

    def test_missing_file(self):
        with self.assertRaises(ConfigUnreadable):
            _cfg.load_bindings(Path(self.tmp.name) / "nope")

    def test_malformed_file(self):
        path = self._write("1:ok\n:broken\n")
        with self.assertRaises(MalformedConfig):
            _cfg.load_bindings(path)

    def test_combo_size_passed_through(self):
        path = self._write("1;2;3:cmd\n")
        with self.assertRaises(MalformedConfig):
            _cfg.load_bindings(path, combo_size=2)

    def test_load_logged(self):
        path = self._write("1:a\n2:b\n")
        with self.assertLogs("babybinds", level="INFO") as cm:
            _cfg.load_bindings(path)
        self.assertTrue(any("Loaded 2 keybinds" in m for m in cm.output))


if __name__ == "__main__":
    unittest.main(verbosity=2)
