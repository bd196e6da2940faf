"""Unit tests for JSON extraction from completion text."""
import pytest
from src.utils.json_extractor import extract_json, find_matching_bracket


class TestFindMatchingBracket:
    """Test bracket matching."""

    def test_nested_object(self):
        text = '{"a": {"b": [1, 2]}} trailing'
        assert find_matching_bracket(text, 0) == text.index("} trailing")

    def test_brackets_inside_strings_ignored(self):
        """Test braces in string literals do not count."""
        text = '{"a": "}{]["}'
        assert find_matching_bracket(text, 0) == len(text) - 1

    def test_escaped_quote_in_string(self):
        text = '{"a": "say \\"hi\\" }"}'
        assert find_matching_bracket(text, 0) == len(text) - 1

    def test_unclosed_returns_minus_one(self):
        assert find_matching_bracket('{"a": [1, 2', 0) == -1

    def test_mismatched_closer_returns_minus_one(self):
        assert find_matching_bracket('{"a": 1]', 0) == -1


class TestExtractJson:
    """Test extract_json strategies and failure reasons."""

    def test_direct_object(self):
        result = extract_json('{"id": "fb1", "urgency": "high"}')
        assert result.success
        assert result.data == {"id": "fb1", "urgency": "high"}
        assert result.error is None

    def test_direct_array(self):
        result = extract_json('  [{"id": 1}]  ')
        assert result.success
        assert result.data == [{"id": 1}]

    def test_scalar_is_unexpected_structure(self):
        """Test valid JSON that is not an object or array is rejected."""
        result = extract_json("42")
        assert not result.success
        assert result.error == "parsed JSON but unexpected structure"

    def test_markdown_fence(self):
        text = 'Here you go:\n```json\n{"clusters": []}\n```\nLet me know!'
        result = extract_json(text)
        assert result.success
        assert result.data == {"clusters": []}

    def test_plain_fence(self):
        result = extract_json('```\n[1, 2, 3]\n```')
        assert result.success
        assert result.data == [1, 2, 3]

    def test_object_embedded_in_prose(self):
        """Test the bracket scan finds JSON surrounded by text."""
        result = extract_json('Sure! The analysis is {"title": "Slow dashboards", "tags": ["perf"]} as requested.')
        assert result.success
        assert result.data == {"title": "Slow dashboards", "tags": ["perf"]}

    def test_first_decodable_candidate_wins(self):
        """Test a non-JSON bracket pair is skipped in favour of a later valid one."""
        result = extract_json('Note {not json} then {"ok": true}')
        assert result.success
        assert result.data == {"ok": True}

    def test_empty_response(self):
        for text in ("", "   ", None):
            result = extract_json(text)
            assert not result.success
            assert result.error == "empty response"

    def test_no_boundaries(self):
        result = extract_json("I could not analyze this feedback.")
        assert not result.success
        assert result.error == "no JSON boundaries found"

    def test_truncated_json_has_no_boundaries(self):
        result = extract_json('{"title": "Cut off mid')
        assert not result.success
        assert result.error == "no JSON boundaries found"

    def test_parse_error_reports_position(self):
        result = extract_json("prefix {'single': 'quotes'}")
        assert not result.success
        assert result.error.startswith("parse error at position 8:")

    def test_raw_response_preserved(self):
        text = "no json here"
        assert extract_json(text).raw_response == text

    @pytest.mark.parametrize("text", [
        'Here you go:\n```json\n{"clusters": [{"id": "c1"}]}\n```',
        "I could not analyze this feedback.",
        "prefix {'single': 'quotes'}",
    ])
    def test_repeated_extraction_is_identical(self, text):
        """Test extraction depends only on its input."""
        first = extract_json(text)
        second = extract_json(text)

        assert first == second
        assert (first.success, first.data, first.error) == (second.success, second.data, second.error)
