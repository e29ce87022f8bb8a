from lawkb.llm_extraction.normalizer import (
    canonicalize_category,
    normalize_extracted_entities,
    normalize_relationship_matrix,
    sanitize_object,
)


def test_missing_sections_and_metadata_get_defaults():
    data = normalize_extracted_entities({})
    for section in ("concepts", "cases", "principles", "rules"):
        assert data[section] == []
    metadata = data["metadata"]
    assert metadata["sourceDocuments"] == []
    assert metadata["modelId"] == "unknown"
    assert metadata["tokensUsed"] == 0
    assert isinstance(metadata["extractedAt"], str)


def test_malformed_metadata_fields_are_defaulted_individually():
    data = normalize_extracted_entities(
        {
            "concepts": "oops",
            "metadata": {
                "sourceDocuments": ["a.md", None, 3],
                "extractedAt": 12,
                "modelId": "gemini",
                "tokensUsed": -5,
            },
        }
    )
    assert data["concepts"] == []
    assert data["metadata"]["sourceDocuments"] == ["a.md"]
    assert data["metadata"]["modelId"] == "gemini"
    assert data["metadata"]["tokensUsed"] == 0
    assert isinstance(data["metadata"]["extractedAt"], str)


def test_sanitize_object_removes_nulls_and_defaults_arrays():
    obj = {"id": "a", "nameLocalized": None, "sourceRefs": ["x.md", None], "year": "1974"}
    sanitize_object(obj, ["sourceRefs", "relatedConceptIds"])
    assert obj == {
        "id": "a",
        "sourceRefs": ["x.md"],
        "relatedConceptIds": [],
        "year": 1974,
    }


def test_textual_year_is_coerced_or_dropped():
    good = {"year": " 1974.0 "}
    bad = {"year": "circa 1974"}
    nan = {"year": "nan"}
    for obj in (good, bad, nan):
        sanitize_object(obj)
    assert good == {"year": 1974}
    assert bad == {}
    assert nan == {}


def test_category_canonicalization():
    assert canonicalize_category(" Doctrine ") == "doctrine"
    assert canonicalize_category("Legal Concept") == "doctrine"
    assert canonicalize_category("Exception to the rule") == "defense"
    assert canonicalize_category("statute") == "other"
    assert canonicalize_category(None) == "other"


def test_non_object_entities_are_dropped():
    data = normalize_extracted_entities(
        {"principles": ["stray", None, {"id": "p", "name": "P", "description": "d"}]}
    )
    assert data["principles"] == [
        {
            "id": "p",
            "name": "P",
            "description": "d",
            "relatedConceptIds": [],
            "supportingCaseIds": [],
            "sourceRefs": [],
        }
    ]


def test_incomplete_trailing_case_is_dropped():
    data = normalize_extracted_entities(
        {
            "cases": [
                {"id": "a", "name": "A v. B", "facts": "f", "holding": "h", "significance": "s"},
                {"id": "c", "name": "C v. D", "facts": "f"},
            ]
        }
    )
    assert [c["id"] for c in data["cases"]] == ["a"]


def test_only_the_last_element_is_checked():
    data = normalize_extracted_entities(
        {"concepts": [{"id": "a"}, {"id": "b", "name": "B", "definition": "d"}]}
    )
    assert [c["id"] for c in data["concepts"]] == ["a", "b"]


def test_truncated_parse_requires_complete_last_element():
    raw = {"concepts": [{"id": "a", "name": "Foo", "definition": "bar"}]}
    kept = normalize_extracted_entities({"concepts": [dict(raw["concepts"][0])]})
    dropped = normalize_extracted_entities(raw, truncated=True)
    assert kept["concepts"][0]["category"] == "other"
    assert dropped["concepts"] == []


def test_truncation_check_applies_to_last_written_section_only():
    data = normalize_extracted_entities(
        {
            "concepts": [{"id": "a", "name": "A", "definition": "d"}],
            "rules": [{"id": "r", "name": "R", "statement": "s"}],
        },
        truncated=True,
    )
    assert len(data["concepts"]) == 1
    assert len(data["rules"]) == 1


def test_strength_in_kind_field_is_swapped():
    data = normalize_relationship_matrix(
        {"entries": [{"caseId": "c", "conceptId": "k", "kind": "primary", "description": "d"}]}
    )
    entry = data["entries"][0]
    assert entry["kind"] == "illustrates"
    assert entry["strength"] == "primary"


def test_swap_does_not_override_valid_strength():
    data = normalize_relationship_matrix(
        {
            "entries": [
                {
                    "caseId": "c",
                    "conceptId": "k",
                    "kind": "primary",
                    "strength": "Tangential",
                    "description": "d",
                }
            ]
        }
    )
    assert data["entries"][0]["strength"] == "tangential"


def test_relationship_type_alias_and_defaults():
    data = normalize_relationship_matrix(
        {
            "entries": [
                {"caseId": "c1", "conceptId": "k1", "relationshipType": " Establishes ", "description": "d"},
                {"caseId": "c2", "conceptId": "k1", "kind": "cites", "description": "d"},
                {"caseId": "c1", "conceptId": "k2", "kind": "applies", "description": "d"},
                None,
            ]
        }
    )
    kinds = [(e["kind"], e["strength"]) for e in data["entries"]]
    assert kinds == [
        ("establishes", "secondary"),
        ("illustrates", "secondary"),
        ("applies", "secondary"),
    ]
    assert "relationshipType" not in data["entries"][0]
    assert data["casesInOrder"] == ["c1", "c2"]
    assert data["conceptsInOrder"] == ["k1", "k2"]


def test_given_ordering_arrays_are_kept():
    data = normalize_relationship_matrix(
        {
            "entries": [{"caseId": "c1", "conceptId": "k1", "kind": "applies", "description": "d"}],
            "casesInOrder": ["c9", None, "c1"],
        }
    )
    assert data["casesInOrder"] == ["c9", "c1"]
    assert data["conceptsInOrder"] == ["k1"]


def test_missing_entries_become_empty():
    assert normalize_relationship_matrix({}) == {
        "entries": [],
        "casesInOrder": [],
        "conceptsInOrder": [],
    }
