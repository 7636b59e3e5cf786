"""Tests for parsing the analysis response and single-frame descriptions."""

import json

import pytest

from gridshot.errors import ParseError, RemoteServiceError
from gridshot.models.script import SCRIPT_DEFAULTS, GridArity
from gridshot.services.gemini_service import parse_visual_script, to_single_frame


class TestParseVisualScript:
    """Parse with defaults; fail only on total unparseability."""

    def test_full_payload(self):
        text = json.dumps({
            "subject": "Oval face",
            "appearance": "Red silk dress",
            "physique": "Tall",
            "background": "Rooftop at dusk",
            "style": "Editorial",
            "gridType": "4-grid",
            "shots": ["one", "two", "three", "four"],
        })
        script = parse_visual_script(text)
        assert script.subject == "Oval face"
        assert script.grid_arity is GridArity.GRID_2X2
        assert script.shots == ["one", "two", "three", "four"]
        assert script.composition == "MASTER_LAYOUT: grid2x2"

    def test_code_fences_stripped(self):
        text = '```json\n{"subject": "Fenced", "gridType": "9-grid"}\n```'
        script = parse_visual_script(text)
        assert script.subject == "Fenced"
        assert script.grid_arity is GridArity.GRID_3X3

    def test_missing_fields_use_defaults(self):
        script = parse_visual_script("{}")
        for key, default in SCRIPT_DEFAULTS.items():
            assert getattr(script, key) == default
        assert script.grid_arity is GridArity.SINGLE
        assert script.shots == []

    def test_blank_fields_use_defaults(self):
        script = parse_visual_script('{"subject": "   ", "style": null}')
        assert script.subject == SCRIPT_DEFAULTS["subject"]
        assert script.style == SCRIPT_DEFAULTS["style"]

    def test_non_list_shots(self):
        script = parse_visual_script('{"shots": "just one"}')
        assert script.shots == []

    def test_non_string_shots_coerced(self):
        script = parse_visual_script('{"shots": [{"angle": "low"}, "plain", ""]}')
        assert script.shots == ['{"angle": "low"}', "plain"]

    def test_shot_count_not_enforced_here(self):
        script = parse_visual_script('{"gridType": "9-grid", "shots": ["a", "b"]}')
        assert len(script.shots) == 2

    @pytest.mark.parametrize("text", ["", "   ", "not json", "[1, 2, 3]", '"a string"', None])
    def test_unparseable(self, text):
        with pytest.raises(ParseError):
            parse_visual_script(text)

    def test_parse_error_is_remote_error(self):
        with pytest.raises(RemoteServiceError) as exc_info:
            parse_visual_script("nope")
        assert exc_info.value.stage == "analyze"


class TestToSingleFrame:
    """Multi-frame vocabulary is removed before upscaling."""

    def test_replaces_grid_words(self):
        result = to_single_frame("A 3x3 grid of nine shots in a layout")
        assert "grid" not in result.lower()
        assert "3x3" not in result
        assert "nine" not in result.lower()
        assert "single" in result

    def test_replaces_frame_tags(self):
        assert to_single_frame("FRAME_3: close-up") == "the specific frame: close-up"

    def test_case_insensitive(self):
        assert "GRID" not in to_single_frame("GRID Matrix")

    def test_plain_text_untouched(self):
        assert to_single_frame("  Close-up portrait, soft light ") == "Close-up portrait, soft light"
