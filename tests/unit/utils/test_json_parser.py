"""Tests for tolerant JSON extraction from judge responses."""

from storypack.utils.json_parser import extract_json_array, extract_json_object, parse_json_safely


class TestParseJsonSafely:
    def test_plain_json(self):
        assert parse_json_safely('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        text = '```json\n[{"index": 0, "contradicts": true}]\n```'
        assert parse_json_safely(text) == [{"index": 0, "contradicts": True}]

    def test_leading_prose_and_trailing_text(self):
        text = 'Here is the result:\n{"coherent": true} Hope this helps.'
        assert parse_json_safely(text) == {"coherent": True}

    def test_trailing_commas_repaired(self):
        text = '```json\n[{"index": 0, "contradicts": true,},\n]\n```'
        assert parse_json_safely(text) == [{"index": 0, "contradicts": True}]

    def test_trailing_comma_inside_prose_wrapped_object(self):
        text = 'Result: {"offTopicStories": [{"index": 1, "reason": "x"},], "coherent": false,} done'
        assert parse_json_safely(text) == {
            "offTopicStories": [{"index": 1, "reason": "x"}],
            "coherent": False,
        }

    def test_empty_and_garbage(self):
        assert parse_json_safely("") is None
        assert parse_json_safely("no json here") is None


class TestExtractors:
    def test_array_unwrapped_from_single_list_object(self):
        assert extract_json_array('{"results": [1, 2]}') == [1, 2]

    def test_array_ambiguous_object_rejected(self):
        assert extract_json_array('{"a": [1], "b": [2]}') is None

    def test_object_rejects_array(self):
        assert extract_json_object("[1, 2]") is None
        assert extract_json_object('{"x": "y"}') == {"x": "y"}
