"""Tests for reply validation."""
from __future__ import annotations

import pytest

from domain.script import Option
from domain.validator import normalize_input, validate_response

OPTIONS = (
    Option("E-commerce", "value-1"),
    Option("SaaS", "value-2"),
    Option("Not sure yet", "value-3"),
)


class TestNormalizeInput:
    """Normalization applied to both sides of a match."""

    def test_trims_and_lowercases(self):
        assert normalize_input("  SaaS  ") == "saas"

    def test_collapses_whitespace(self):
        assert normalize_input("not\t sure \n yet") == "not sure yet"

    def test_drops_punctuation(self):
        assert normalize_input("E-commerce!") == "ecommerce"

    def test_empty(self):
        assert normalize_input(None) == ""
        assert normalize_input("   ") == ""


class TestValidateResponse:
    """Matching replies to options."""

    @pytest.mark.parametrize("reply", ["SaaS", "saas", " SAAS ", "saas!"])
    def test_label_match(self, reply):
        result = validate_response(reply, OPTIONS)
        assert result.is_valid
        assert result.option.text == "SaaS"
        assert result.index == 1

    def test_punctuation_in_label(self):
        result = validate_response("ecommerce", OPTIONS)
        assert result.is_valid
        assert result.option.next_block_id == "value-1"

    @pytest.mark.parametrize("reply,expected", [("1", "E-commerce"), ("3", "Not sure yet"), (" 2. ", "SaaS")])
    def test_ordinal(self, reply, expected):
        result = validate_response(reply, OPTIONS)
        assert result.is_valid
        assert result.option.text == expected

    @pytest.mark.parametrize("reply", ["0", "4", "1.5", "one"])
    def test_unusable_ordinal(self, reply):
        assert not validate_response(reply, OPTIONS).is_valid

    @pytest.mark.parametrize("reply", ["\u0661", "\uff12", "\u0967"])
    def test_non_ascii_digits_are_not_ordinals(self, reply):
        """Arabic-Indic, fullwidth and Devanagari digits are plain text."""
        assert not validate_response(reply, OPTIONS).is_valid

    def test_label_wins_over_ordinal(self):
        """An option literally labelled "2" is matched by label first."""
        options = (Option("First", "a"), Option("2", "b"), Option("Third", "c"))
        result = validate_response("2", options)
        assert result.option.next_block_id == "b"
        assert result.index == 1

    def test_first_duplicate_label_wins(self):
        options = (Option("Done", "a"), Option("done", "b"))
        assert validate_response("DONE", options).option.next_block_id == "a"

    def test_substring_is_not_a_match(self):
        assert not validate_response("I do SaaS", OPTIONS).is_valid

    def test_empty_input_never_matches(self):
        """Even an option that normalizes to nothing."""
        options = (Option("!!!", "a"),)
        assert not validate_response("", options).is_valid
        assert not validate_response("?", options).is_valid

    def test_no_options(self):
        result = validate_response("anything", ())
        assert not result.is_valid
        assert result.normalized_input == "anything"

    def test_to_dict(self):
        data = validate_response("1", OPTIONS).to_dict()
        assert data == {
            "is_valid": True,
            "option": "E-commerce",
            "index": 0,
            "normalized_input": "1",
        }
