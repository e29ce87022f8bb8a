from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ConceptCategory(str, Enum):
    doctrine = "doctrine"
    rule = "rule"
    standard = "standard"
    defense = "defense"
    remedy = "remedy"
    procedure = "procedure"
    other = "other"


class RelationshipKind(str, Enum):
    """How a case bears on a concept."""

    establishes = "establishes"
    applies = "applies"
    modifies = "modifies"
    distinguishes = "distinguishes"
    overrules = "overrules"
    illustrates = "illustrates"


class RelationshipStrength(str, Enum):
    primary = "primary"
    secondary = "secondary"
    tangential = "tangential"


class ExtractionModel(BaseModel):
    """Base for every record exchanged with the completion service.

    Wire keys are camelCase (``sourceRefs``); attributes are snake_case.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        protected_namespaces=(),
    )

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Concept(ExtractionModel):
    """A legal doctrine, standard, defense or similar concept."""

    id: str = Field(..., description="Stable lowercase-kebab-case identifier.")
    name: str = Field(..., description="Canonical concept name.")
    name_localized: Optional[str] = Field(
        None, description="Name in the secondary output language, if any."
    )
    definition: str = Field(..., description="Short definition (1-3 sentences).")
    category: ConceptCategory = Field(..., description="Closed concept category.")
    source_refs: List[str] = Field(
        default_factory=list, description="Source documents mentioning the concept."
    )


class Case(ExtractionModel):
    """A decided case referenced by the source material."""

    id: str
    name: str
    citation: Optional[str] = None
    year: Optional[int] = None
    court: Optional[str] = None
    facts: str = Field(..., description="Facts (1-2 sentences).")
    holding: str = Field(..., description="Holding (1 sentence).")
    significance: str = Field(..., description="Why the case matters (1 sentence).")
    related_concept_ids: List[str] = Field(default_factory=list)
    source_refs: List[str] = Field(default_factory=list)


class Principle(ExtractionModel):
    id: str
    name: str
    name_localized: Optional[str] = None
    description: str
    related_concept_ids: List[str] = Field(default_factory=list)
    supporting_case_ids: List[str] = Field(default_factory=list)
    source_refs: List[str] = Field(default_factory=list)


class Rule(ExtractionModel):
    id: str
    name: str
    name_localized: Optional[str] = None
    statement: str
    elements: List[str] = Field(default_factory=list)
    exceptions: List[str] = Field(default_factory=list)
    application_steps: List[str] = Field(default_factory=list)
    related_concept_ids: List[str] = Field(default_factory=list)
    supporting_case_ids: List[str] = Field(default_factory=list)
    source_refs: List[str] = Field(default_factory=list)


class ExtractionMetadata(ExtractionModel):
    source_documents: List[str] = Field(default_factory=list)
    extracted_at: str = Field(..., description="ISO 8601 extraction timestamp.")
    model_id: str = Field("unknown", description="Model that produced the batch.")
    tokens_used: int = Field(0, ge=0)


class ExtractionBatch(ExtractionModel):
    """One extraction call's full output: every entity array plus metadata."""

    concepts: List[Concept] = Field(default_factory=list)
    cases: List[Case] = Field(default_factory=list)
    principles: List[Principle] = Field(default_factory=list)
    rules: List[Rule] = Field(default_factory=list)
    metadata: ExtractionMetadata

    def count_entities(self) -> int:
        return (
            len(self.concepts) + len(self.cases) + len(self.principles) + len(self.rules)
        )

    def summary(self) -> str:
        return (
            f"{len(self.concepts)} concepts, {len(self.cases)} cases, "
            f"{len(self.principles)} principles, {len(self.rules)} rules"
        )


class RelationshipEntry(ExtractionModel):
    case_id: str
    concept_id: str
    kind: RelationshipKind
    description: str = Field(..., description="1-2 sentence explanation.")
    strength: RelationshipStrength


class RelationshipMatrix(ExtractionModel):
    entries: List[RelationshipEntry] = Field(default_factory=list)
    cases_in_order: List[str] = Field(default_factory=list)
    concepts_in_order: List[str] = Field(default_factory=list)


# Wire-level field names used by the normalizer, per entity section.
ENTITY_ARRAY_FIELDS = {
    "concepts": ["sourceRefs"],
    "cases": ["relatedConceptIds", "sourceRefs"],
    "principles": ["relatedConceptIds", "supportingCaseIds", "sourceRefs"],
    "rules": [
        "elements",
        "exceptions",
        "applicationSteps",
        "relatedConceptIds",
        "supportingCaseIds",
        "sourceRefs",
    ],
}

ENTITY_COMPLETE_FIELDS = {
    "concepts": ["id", "name", "definition", "category"],
    "cases": ["id", "name", "facts", "holding", "significance"],
    "principles": ["id", "name", "description"],
    "rules": ["id", "name", "statement"],
}

ENTITY_SECTIONS = tuple(ENTITY_ARRAY_FIELDS)
