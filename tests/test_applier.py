from conftest import CANONICAL, FHIR, error_types

from fshtypes import (
    AssignmentRule,
    BindingRule,
    CardinalityRule,
    CaretValueRule,
    CodeSystem,
    ConceptRule,
    ContainsItem,
    ContainsRule,
    Extension,
    FlagRule,
    FshCanonical,
    FshCode,
    FshQuantity,
    FshReference,
    Instance,
    Invariant,
    ObeysRule,
    OnlyRule,
    OnlyRuleType,
    Profile,
    SourceInfo,
    ValueSet,
    ValueSetComponentRule,
)


def export_profile(compile_entities, rules, others=(), aliases=None):
    profile = Profile(name="TestObservation", parent="Observation", rules=rules)
    package, state = compile_entities([profile, *others], aliases=aliases)
    return package.get("TestObservation"), state


def snapshot_element(definition, element_id):
    return definition.tree.get(element_id)


class TestCardinality:
    """Cardinality may only narrow relative to the current state."""

    def test_narrowing_applies(self, compile_entities):
        definition, state = export_profile(compile_entities, [CardinalityRule(path="identifier", min=1, max="1")])
        identifier = snapshot_element(definition, "Observation.identifier")
        assert (identifier.min, identifier.max) == (1, "1")
        assert state.diagnostics == []

    def test_monotonic_sequence(self, compile_entities):
        rules = [
            CardinalityRule(path="identifier", min=1),
            CardinalityRule(path="identifier", min=0, max="1"),
            CardinalityRule(path="identifier", max="3"),
            CardinalityRule(path="identifier", max="2"),
        ]
        definition, state = export_profile(compile_entities, rules)
        identifier = snapshot_element(definition, "Observation.identifier")
        assert (identifier.min, identifier.max) == (1, "2")
        assert error_types(state) == ["IllegalNarrowing"]
        assert state.diagnostics[0].location.rule_index == 1

    def test_widening_required_element_rejected(self, compile_entities):
        definition, state = export_profile(compile_entities, [CardinalityRule(path="status", min=0)])
        status = snapshot_element(definition, "Observation.status")
        assert status.min == 1
        assert error_types(state) == ["IllegalNarrowing"]

    def test_unknown_path(self, compile_entities):
        rule = CardinalityRule(path="nonsense", min=1, source_info=SourceInfo(file="obs.fsh", start_line=4))
        definition, state = export_profile(compile_entities, [rule])
        assert definition is not None
        assert error_types(state) == ["PathNotFound"]
        assert str(state.diagnostics[0].location) == "obs.fsh:4 (TestObservation, rule 1)"
        assert state.is_degraded(next(iter(state.statuses)))

    def test_sliced_element_max_covers_slice_minimums(self, compile_entities):
        rules = [
            CaretValueRule(path="component", caret_path="slicing.discriminator[0].path", value="code"),
            ContainsRule(path="component", items=[ContainsItem(name="a"), ContainsItem(name="b")]),
            CardinalityRule(path="component[a]", min=1),
            CardinalityRule(path="component[b]", min=1),
            CardinalityRule(path="component", max="1"),
        ]
        definition, state = export_profile(compile_entities, rules)
        assert snapshot_element(definition, "Observation.component").max == "*"
        assert error_types(state) == ["IllegalNarrowing"]


class TestFlags:
    def test_flags_set(self, compile_entities):
        rule = FlagRule(path="subject", must_support=True, summary=True, trial_use=True)
        definition, _ = export_profile(compile_entities, [rule])
        subject = snapshot_element(definition, "Observation.subject")
        assert subject.must_support is True
        assert subject.is_summary is True
        assert subject.standards_status == "trial-use"

    def test_must_support_cannot_be_removed(self, compile_entities):
        rules = [FlagRule(path="subject", must_support=True), FlagRule(path="subject", must_support=False)]
        definition, state = export_profile(compile_entities, rules)
        assert snapshot_element(definition, "Observation.subject").must_support is True
        assert error_types(state) == ["IllegalNarrowing"]

    def test_conflicting_status_flags(self, compile_entities):
        definition, state = export_profile(compile_entities, [FlagRule(path="subject", draft=True, normative=True)])
        assert snapshot_element(definition, "Observation.subject").standards_status is None
        assert error_types(state) == ["InvalidRule"]


class TestBinding:
    def test_required_to_extensible_rejected(self, compile_entities):
        rule = BindingRule(path="status", value_set=f"{FHIR}/ValueSet/other-status", strength="extensible")
        definition, state = export_profile(compile_entities, [rule])
        binding = snapshot_element(definition, "Observation.status").binding
        assert binding.strength == "required"
        assert binding.value_set == f"{FHIR}/ValueSet/observation-status"
        assert error_types(state) == ["IllegalNarrowing"]

    def test_strengthening_to_local_value_set(self, compile_entities):
        value_set = ValueSet(name="CategoryValues", rules=[
            ValueSetComponentRule(from_system="http://terminology.hl7.org/CodeSystem/observation-category"),
        ])
        rule = BindingRule(path="category", value_set="CategoryValues", strength="required")
        definition, state = export_profile(compile_entities, [rule], others=[value_set])
        binding = snapshot_element(definition, "Observation.category").binding
        assert binding.strength == "required"
        assert binding.value_set == f"{CANONICAL}/ValueSet/CategoryValues"
        assert state.diagnostics == []

    def test_unknown_value_set_skips_rule(self, compile_entities):
        definition, state = export_profile(compile_entities, [BindingRule(path="category", value_set="NoSuchVS")])
        assert snapshot_element(definition, "Observation.category").binding.strength == "preferred"
        assert error_types(state) == ["UnresolvedReference"]

    def test_element_without_binding_slot(self, compile_entities):
        definition, state = export_profile(compile_entities, [BindingRule(path="subject", value_set=f"{FHIR}/ValueSet/x")])
        assert snapshot_element(definition, "Observation.subject").binding is None
        assert error_types(state) == ["InvalidRule"]


class TestAssignment:
    def test_code_with_alias(self, compile_entities):
        rule = AssignmentRule(path="code", value=FshCode(code="85354-9", system="$LNC", display="BP"))
        definition, state = export_profile(compile_entities, [rule], aliases={"$LNC": "http://loinc.org"})
        code = snapshot_element(definition, "Observation.code")
        assert code.pattern == {"coding": [{"system": "http://loinc.org", "code": "85354-9", "display": "BP"}]}
        assert code.pattern_type == "CodeableConcept"
        assert code.to_fhir()["patternCodeableConcept"] == code.pattern
        assert state.diagnostics == []

    def test_exactly_assigns_fixed(self, compile_entities):
        definition, _ = export_profile(compile_entities, [AssignmentRule(path="status", value=FshCode(code="final"), exactly=True)])
        status = snapshot_element(definition, "Observation.status")
        assert status.fixed == "final"
        assert status.to_fhir()["fixedCode"] == "final"

    def test_conflicting_value_rejected_same_value_allowed(self, compile_entities):
        rules = [
            AssignmentRule(path="status", value=FshCode(code="final")),
            AssignmentRule(path="status", value=FshCode(code="final")),
            AssignmentRule(path="status", value=FshCode(code="amended")),
        ]
        definition, state = export_profile(compile_entities, rules)
        assert snapshot_element(definition, "Observation.status").pattern == "final"
        assert error_types(state) == ["IllegalNarrowing"]
        assert state.diagnostics[0].location.rule_index == 2

    def test_incompatible_type(self, compile_entities):
        definition, state = export_profile(compile_entities, [AssignmentRule(path="status", value=True)])
        assert snapshot_element(definition, "Observation.status").pattern is None
        assert error_types(state) == ["IllegalNarrowing"]

    def test_quantity_on_narrowed_choice(self, compile_entities):
        rules = [
            OnlyRule(path="value[x]", types=[OnlyRuleType(type="Quantity")]),
            AssignmentRule(path="valueQuantity", value=FshQuantity(value=120, unit="mm[Hg]")),
        ]
        definition, state = export_profile(compile_entities, rules)
        value = snapshot_element(definition, "Observation.value[x]")
        assert value.pattern == {"value": 120, "unit": "mm[Hg]", "system": "http://unitsofmeasure.org", "code": "mm[Hg]"}
        assert "patternQuantity" in value.to_fhir()
        assert state.diagnostics == []

    def test_named_choice_type_must_hold_value(self, compile_entities):
        rule = AssignmentRule(path="valueQuantity", value=FshCode(code="x", system="http://example.org/cs"))
        definition, state = export_profile(compile_entities, [rule])
        assert snapshot_element(definition, "Observation.value[x]").pattern is None
        assert error_types(state) == ["IllegalNarrowing"]

    def test_named_choice_type_wins_over_earlier_types(self, compile_entities):
        extension = Extension(name="CodedValue", rules=[
            AssignmentRule(path="valueCodeableConcept", value=FshCode(code="x", system="http://example.org/cs")),
        ])
        package, state = compile_entities([extension])
        value = package.get("CodedValue").tree.get("Extension.value[x]")
        assert value.pattern_type == "CodeableConcept"
        assert value.pattern == {"coding": [{"system": "http://example.org/cs", "code": "x"}]}
        assert state.diagnostics == []

    def test_unresolved_code_system_name(self, compile_entities):
        definition, state = export_profile(compile_entities, [AssignmentRule(path="code", value=FshCode(code="x", system="LNC"))])
        assert snapshot_element(definition, "Observation.code").pattern is None
        assert error_types(state) == ["UnresolvedReference"]

    def test_local_code_system_name_becomes_url(self, compile_entities):
        codes = CodeSystem(name="LocalCodes", rules=[ConceptRule(code="x")])
        rule = AssignmentRule(path="code", value=FshCode(code="x", system="LocalCodes"))
        definition, _ = export_profile(compile_entities, [rule], others=[codes])
        coding = snapshot_element(definition, "Observation.code").pattern["coding"][0]
        assert coding["system"] == f"{CANONICAL}/CodeSystem/LocalCodes"

    def test_reference_to_local_instance(self, compile_entities):
        patient = Instance(name="patient-example", instance_of="Patient")
        rule = AssignmentRule(path="subject", value=FshReference(reference="patient-example"))
        definition, _ = export_profile(compile_entities, [rule], others=[patient])
        assert snapshot_element(definition, "Observation.subject").pattern == {"reference": "Patient/patient-example"}

    def test_canonical_value(self, compile_entities):
        value_set = ValueSet(name="Statuses", rules=[ValueSetComponentRule(from_system="http://example.org/cs")])
        rule = CaretValueRule(path="status", caret_path="short", value=FshCanonical(entity="Statuses"))
        definition, _ = export_profile(compile_entities, [rule], others=[value_set])
        assert snapshot_element(definition, "Observation.status").short == f"{CANONICAL}/ValueSet/Statuses"


class TestContains:
    def test_requires_slicing(self, compile_entities):
        definition, state = export_profile(compile_entities, [ContainsRule(path="component", items=[ContainsItem(name="a")])])
        assert definition.tree.get("Observation.component:a") is None
        assert error_types(state) == ["InvalidRule"]

    def test_slices_after_caret_slicing(self, compile_entities):
        rules = [
            CaretValueRule(path="component", caret_path="slicing.discriminator[0].type", value=FshCode(code="pattern")),
            CaretValueRule(path="component", caret_path="slicing.discriminator[0].path", value="code"),
            CaretValueRule(path="component", caret_path="slicing.rules", value=FshCode(code="open")),
            ContainsRule(path="component", items=[ContainsItem(name="systolic"), ContainsItem(name="diastolic")]),
            CardinalityRule(path="component[systolic]", min=1, max="1"),
            AssignmentRule(path="component[systolic].code", value=FshCode(code="8480-6", system="http://loinc.org")),
        ]
        definition, state = export_profile(compile_entities, rules)
        tree = definition.tree
        component = tree.get("Observation.component")
        assert component.slicing.discriminator[0].type == "pattern"
        assert component.slicing.discriminator[0].path == "code"
        assert [s.slice_name for s in tree.slices(component)] == ["systolic", "diastolic"]
        systolic = tree.get("Observation.component:systolic")
        assert (systolic.min, systolic.max) == (1, "1")
        assert tree.get("Observation.component:systolic.code").pattern["coding"][0]["code"] == "8480-6"
        assert state.diagnostics == []

    def test_duplicate_slice_name(self, compile_entities):
        rules = [
            CaretValueRule(path="component", caret_path="slicing.discriminator[0].path", value="code"),
            ContainsRule(path="component", items=[ContainsItem(name="systolic")]),
            ContainsRule(path="component", items=[ContainsItem(name="systolic"), ContainsItem(name="diastolic")]),
        ]
        definition, state = export_profile(compile_entities, rules)
        component = definition.tree.get("Observation.component")
        assert [s.slice_name for s in definition.tree.slices(component)] == ["systolic", "diastolic"]
        assert error_types(state) == ["DuplicateSlice"]

    def test_local_extension_slice(self, compile_entities):
        extension = Extension(name="BodyPosition", rules=[
            OnlyRule(path="value[x]", types=[OnlyRuleType(type="CodeableConcept")]),
        ])
        rule = ContainsRule(path="extension", items=[ContainsItem(name="position", type="BodyPosition")])
        definition, state = export_profile(compile_entities, [rule], others=[extension])
        tree = definition.tree
        extension_element = tree.get("Observation.extension")
        assert extension_element.slicing.discriminator[0].path == "url"
        assert extension_element.slicing.rules == "open"
        position = tree.get("Observation.extension:position")
        url = f"{CANONICAL}/StructureDefinition/BodyPosition"
        assert position.types[0].profile == [url]
        assert state.diagnostics == []

    def test_unknown_typed_extension(self, compile_entities):
        rule = ContainsRule(path="extension", items=[ContainsItem(name="position", type="NoSuchExtension")])
        definition, state = export_profile(compile_entities, [rule])
        assert definition.tree.get("Observation.extension:position") is None
        assert definition.tree.get("Observation.extension").slicing is None
        assert error_types(state) == ["UnresolvedReference"]

    def test_slicing_added_with_first_valid_slice(self, compile_entities):
        extension = Extension(name="BodyPosition")
        rule = ContainsRule(path="extension", items=[
            ContainsItem(name="lost", type="NoSuchExtension"),
            ContainsItem(name="position", type="BodyPosition"),
        ])
        definition, state = export_profile(compile_entities, [rule], others=[extension])
        extension_element = definition.tree.get("Observation.extension")
        assert extension_element.slicing.discriminator[0].path == "url"
        assert [s.slice_name for s in definition.tree.slices(extension_element)] == ["position"]
        assert error_types(state) == ["UnresolvedReference"]


class TestObeys:
    def test_local_invariant_on_root(self, compile_entities):
        invariant = Invariant(name="bp-1", description="Value or component", expression="value.exists()")
        definition, state = export_profile(compile_entities, [ObeysRule(path="", invariant="bp-1")], others=[invariant])
        keys = [c.key for c in definition.tree.root.constraints]
        assert keys == ["obs-6", "bp-1"]
        added = definition.tree.root.constraints[-1]
        assert added.human == "Value or component"
        assert added.source == f"{CANONICAL}/StructureDefinition/TestObservation"
        assert state.diagnostics == []

    def test_library_invariant(self, compile_entities):
        definition, _ = export_profile(compile_entities, [ObeysRule(path="value[x]", invariant="obs-6")])
        assert [c.key for c in definition.tree.get("Observation.value[x]").constraints] == ["obs-6"]

    def test_unknown_invariant(self, compile_entities):
        definition, state = export_profile(compile_entities, [ObeysRule(path="code", invariant="zzz-1")])
        assert definition.tree.get("Observation.code").constraints == []
        assert error_types(state) == ["UnresolvedReference"]


class TestCaretValue:
    def test_element_and_root_fields(self, compile_entities):
        rules = [
            CaretValueRule(path="code", caret_path="short", value="Blood pressure"),
            CaretValueRule(path="code", caret_path="alias", value="BP"),
            CaretValueRule(path="", caret_path="status", value=FshCode(code="active")),
            CaretValueRule(path="", caret_path="experimental", value=True),
        ]
        definition, state = export_profile(compile_entities, rules)
        code = definition.tree.get("Observation.code")
        assert code.short == "Blood pressure"
        assert code.alias == ["BP"]
        assert definition.status == "active"
        assert definition.experimental is True
        assert state.diagnostics == []

    def test_unrecognized_field(self, compile_entities):
        rules = [
            CaretValueRule(path="code", caret_path="foo", value="x"),
            CaretValueRule(path="", caret_path="status", value=FshCode(code="bogus")),
            CaretValueRule(path="code", caret_path="maxLength", value="ten"),
        ]
        _, state = export_profile(compile_entities, rules)
        assert error_types(state) == ["InvalidRule", "InvalidRule", "InvalidRule"]


class TestOnly:
    def test_narrow_choice_to_two_types(self, compile_entities):
        rule = OnlyRule(path="value[x]", types=[OnlyRuleType(type="Quantity"), OnlyRuleType(type="string")])
        definition, _ = export_profile(compile_entities, [rule])
        assert definition.tree.get("Observation.value[x]").type_codes == ["Quantity", "string"]

    def test_type_outside_allowed_set(self, compile_entities):
        definition, state = export_profile(compile_entities, [OnlyRule(path="value[x]", types=[OnlyRuleType(type="Patient")])])
        assert len(definition.tree.get("Observation.value[x]").types) == 5
        assert error_types(state) == ["IllegalNarrowing"]

    def test_reference_targets(self, compile_entities):
        patient_profile = Profile(name="AdultPatient", parent="Patient")
        rule = OnlyRule(path="subject", types=[
            OnlyRuleType(type="Patient", is_reference=True),
            OnlyRuleType(type="AdultPatient", is_reference=True),
        ])
        definition, state = export_profile(compile_entities, [rule], others=[patient_profile])
        subject = definition.tree.get("Observation.subject")
        assert subject.types[0].code == "Reference"
        assert subject.types[0].target_profile == [
            f"{FHIR}/StructureDefinition/Patient",
            f"{CANONICAL}/StructureDefinition/AdultPatient",
        ]
        assert state.diagnostics == []

    def test_reference_target_not_allowed(self, compile_entities):
        rule = OnlyRule(path="subject", types=[OnlyRuleType(type="Observation", is_reference=True)])
        definition, state = export_profile(compile_entities, [rule])
        assert len(definition.tree.get("Observation.subject").types[0].target_profile) == 2
        assert error_types(state) == ["IllegalNarrowing"]

    def test_profile_of_allowed_type(self, compile_entities):
        quantity_profile = Profile(name="SimpleQty", parent="Quantity")
        rule = OnlyRule(path="value[x]", types=[OnlyRuleType(type="SimpleQty")])
        definition, state = export_profile(compile_entities, [rule], others=[quantity_profile])
        value = definition.tree.get("Observation.value[x]")
        assert value.type_codes == ["Quantity"]
        assert value.types[0].profile == [f"{CANONICAL}/StructureDefinition/SimpleQty"]
        assert state.diagnostics == []
