import pytest
from pydantic import ValidationError

from fshtypes import CardinalityRule, FshPath


class TestFshPathParsing:
    """Author paths are parsed once into segments."""

    def test_plain_dotted_path(self):
        path = FshPath.parse("code.coding.system")
        assert [s.name for s in path.segments] == ["code", "coding", "system"]
        assert all(s.slice_name is None for s in path.segments)

    def test_empty_and_dot_address_the_root(self):
        assert FshPath.parse("").is_root
        assert FshPath.parse(".").is_root
        assert FshPath.parse(None).is_root

    def test_bracket_and_colon_slice_forms_agree(self):
        bracket = FshPath.parse("component[systolic].code")
        colon = FshPath.parse("component:systolic.code")
        assert bracket == colon
        assert bracket.segments[0].slice_name == "systolic"

    def test_choice_marker_stays_in_name(self):
        segment = FshPath.parse("value[x]").last
        assert segment.name == "value[x]"
        assert segment.is_choice
        assert segment.slice_name is None

    def test_numeric_bracket_is_an_index(self):
        path = FshPath.parse("name[0].given[2]")
        assert path.segments[0].index == 0
        assert path.segments[1].index == 2
        assert str(path.without_indices()) == "name.given"

    def test_url_slice_names_keep_their_dots(self):
        path = FshPath.parse("extension[http://example.org/fhir/StructureDefinition/ext].value[x]")
        assert len(path.segments) == 2
        assert path.segments[0].slice_name == "http://example.org/fhir/StructureDefinition/ext"

    def test_reslice_is_joined_with_slash(self):
        segment = FshPath.parse("component[bp][systolic]").last
        assert segment.slice_name == "bp/systolic"

    def test_string_round_trip(self):
        assert str(FshPath.parse("component[systolic].value[x]")) == "component[systolic].value[x]"

    @pytest.mark.parametrize("text", ["code..coding", "code.", ".code", "component[a", "component]a"])
    def test_malformed_paths_are_rejected(self, text):
        with pytest.raises(ValueError):
            FshPath.parse(text)


class TestRuleConstruction:
    """Rules parse their paths and check syntax at construction."""

    def test_rule_path_is_parsed(self):
        rule = CardinalityRule(path="component[systolic].code", min=1)
        assert isinstance(rule.path, FshPath)
        assert rule.path.segments[0].slice_name == "systolic"

    def test_cardinality_needs_min_or_max(self):
        with pytest.raises(ValidationError):
            CardinalityRule(path="identifier")

    def test_cardinality_min_above_max_rejected(self):
        with pytest.raises(ValidationError):
            CardinalityRule(path="identifier", min=2, max="1")

    def test_cardinality_max_accepts_star_and_int(self):
        assert CardinalityRule(path="identifier", max="*").max == "*"
        assert CardinalityRule(path="identifier", max=3).max == "3"
