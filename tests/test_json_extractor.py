"""Tests for tolerant JSON extraction from model text."""

from json_extractor import extract_json


class TestExtractJson:

    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_json_block(self):
        text = 'Here you go:\n```json\n{"a": 1, "b": [2, 3]}\n```\nEnjoy!'
        assert extract_json(text) == {"a": 1, "b": [2, 3]}

    def test_unlabelled_fence(self):
        assert extract_json('```\n{"ok": true}\n```') == {"ok": True}

    def test_prose_wrapped_object(self):
        text = 'Sure! {"state": "calm", "quests": []} Let me know if you need more.'
        assert extract_json(text) == {"state": "calm", "quests": []}

    def test_braces_inside_strings(self):
        text = 'note {"title": "use {curly} braces", "n": 2} end'
        assert extract_json(text) == {"title": "use {curly} braces", "n": 2}

    def test_stray_brace_in_prose_skipped(self):
        text = 'I think {this} is it: {"a": {"b": 1}}'
        assert extract_json(text) == {"a": {"b": 1}}

    def test_escaped_quote_in_string(self):
        text = 'x {"q": "she said \\"hi\\" {"} y'
        assert extract_json(text) == {"q": 'she said "hi" {'}

    def test_raw_array(self):
        assert extract_json("[1, 2, 3]") == [1, 2, 3]

    def test_garbage_returns_none(self):
        assert extract_json("I'm sorry, I can't help with that.") is None

    def test_unbalanced_returns_none(self):
        assert extract_json('{"a": 1') is None

    def test_empty_input(self):
        assert extract_json("") is None
        assert extract_json("   ") is None
        assert extract_json(None) is None

    def test_broken_fence_falls_back_to_brace_scan(self):
        text = '```json\nnot json\n```\nactual: {"a": 2}'
        assert extract_json(text) == {"a": 2}

    def test_unclosed_brace_before_object(self):
        text = 'oops { here is the answer {"a": 1}'
        assert extract_json(text) == {"a": 1}

    def test_object_nested_in_unparseable_block(self):
        text = '{so the plan is {"a": 1} ok}'
        assert extract_json(text) == {"a": 1}

    def test_many_unclosed_braces_scanned_once(self):
        text = "{ " * 20000 + '{"a": 1}'
        assert extract_json(text) == {"a": 1}

    def test_deeply_nested_garbage_returns_none(self):
        text = "{x " * 2000 + "}" * 2000
        assert extract_json(text) is None
