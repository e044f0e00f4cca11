from conftest import CANONICAL, error_types

from fshtypes import CaretValueRule, CodeSystem, ConceptRule, FshCode, ValueSet, ValueSetComponentRule

CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"


def bp_codes():
    return CodeSystem(name="BPCodes", title="Blood pressure codes", rules=[
        ConceptRule(code="sys", display="Systolic", definition="Systolic pressure"),
        ConceptRule(code="dia", display="Diastolic"),
    ])


class TestCodeSystemExport:
    def test_concepts_and_metadata(self, compile_entities):
        package, state = compile_entities([bp_codes()])
        (resource,) = package.code_systems
        assert resource["resourceType"] == "CodeSystem"
        assert resource["url"] == f"{CANONICAL}/CodeSystem/BPCodes"
        assert resource["title"] == "Blood pressure codes"
        assert resource["status"] == "draft"
        assert resource["content"] == "complete"
        assert resource["count"] == 2
        assert resource["concept"][0] == {"code": "sys", "display": "Systolic", "definition": "Systolic pressure"}
        assert state.diagnostics == []

    def test_duplicate_code_skipped(self, compile_entities):
        codes = CodeSystem(name="Dups", rules=[ConceptRule(code="a"), ConceptRule(code="b"), ConceptRule(code="a")])
        package, state = compile_entities([codes])
        assert [c["code"] for c in package.get("Dups")["concept"]] == ["a", "b"]
        assert error_types(state) == ["InvalidRule"]
        assert state.diagnostics[0].location.rule_index == 2

    def test_caret_rules(self, compile_entities):
        codes = CodeSystem(name="Caret", rules=[
            CaretValueRule(caret_path="caseSensitive", value=True),
            CaretValueRule(caret_path="status", value=FshCode(code="active")),
            CaretValueRule(caret_path="jurisdiction", value=FshCode(code="US", system="urn:iso:std:iso:3166")),
            CaretValueRule(caret_path="nonsense", value="x"),
            CaretValueRule(path="sys", caret_path="display", value="x"),
        ])
        package, state = compile_entities([codes])
        resource = package.get("Caret")
        assert resource["caseSensitive"] is True
        assert resource["status"] == "active"
        assert resource["jurisdiction"] == [{"coding": [{"system": "urn:iso:std:iso:3166", "code": "US"}]}]
        assert error_types(state) == ["InvalidRule", "InvalidRule"]


class TestValueSetExport:
    def test_include_whole_system_and_value_set(self, compile_entities):
        value_set = ValueSet(name="AllBP", description="Every BP code", rules=[
            ValueSetComponentRule(from_system="BPCodes"),
            ValueSetComponentRule(from_value_sets=["observation-status"]),
        ])
        package, state = compile_entities([bp_codes(), value_set])
        resource = package.get("AllBP")
        assert resource["url"] == f"{CANONICAL}/ValueSet/AllBP"
        assert resource["description"] == "Every BP code"
        assert resource["compose"]["include"] == [
            {"system": f"{CANONICAL}/CodeSystem/BPCodes"},
            {"valueSet": ["http://hl7.org/fhir/ValueSet/observation-status"]},
        ]
        assert "exclude" not in resource["compose"]
        assert state.diagnostics == []

    def test_concepts_grouped_by_system(self, compile_entities):
        value_set = ValueSet(name="Mixed", rules=[
            ValueSetComponentRule(concepts=[
                FshCode(code="sys", system="BPCodes"),
                FshCode(code="vital-signs", system="$CAT", display="Vital Signs"),
            ]),
            ValueSetComponentRule(concepts=[FshCode(code="dia", system="BPCodes")]),
            ValueSetComponentRule(inclusion=False, concepts=[FshCode(code="laboratory", system="$CAT")]),
        ])
        package, state = compile_entities([bp_codes(), value_set], aliases={"$CAT": CATEGORY_SYSTEM})
        compose = package.get("Mixed")["compose"]
        assert compose["include"] == [
            {"system": f"{CANONICAL}/CodeSystem/BPCodes", "concept": [{"code": "sys"}, {"code": "dia"}]},
            {"system": CATEGORY_SYSTEM, "concept": [{"code": "vital-signs", "display": "Vital Signs"}]},
        ]
        assert compose["exclude"] == [{"system": CATEGORY_SYSTEM, "concept": [{"code": "laboratory"}]}]
        assert state.diagnostics == []

    def test_unknown_code_in_known_system(self, compile_entities):
        value_set = ValueSet(name="Bad", rules=[
            ValueSetComponentRule(concepts=[FshCode(code="sys", system="BPCodes")]),
            ValueSetComponentRule(from_system="BPCodes", concepts=[FshCode(code="mean")]),
            ValueSetComponentRule(concepts=[FshCode(code="cancelled", system=CATEGORY_SYSTEM)]),
        ])
        package, state = compile_entities([bp_codes(), value_set])
        include = package.get("Bad")["compose"]["include"]
        assert include == [{"system": f"{CANONICAL}/CodeSystem/BPCodes", "concept": [{"code": "sys"}]}]
        assert error_types(state) == ["InvalidRule", "InvalidRule"]

    def test_unresolved_system_name(self, compile_entities):
        value_set = ValueSet(name="Lost", rules=[ValueSetComponentRule(from_system="NoSuchSystem")])
        package, state = compile_entities([value_set])
        assert "compose" not in package.get("Lost")
        assert error_types(state) == ["UnresolvedReference"]
