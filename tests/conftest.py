import os
import sys
from typing import Iterator, List, Optional, Sequence, Union

import pytest

# Ensure the `src/` directory is on sys.path so we can import the `lawkb` package
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(PROJECT_ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from lawkb.llm_extraction.completion import CompletionConfig, CompletionService  # noqa: E402
from lawkb.llm_extraction.models import ExtractionBatch  # noqa: E402

Scripted = Union[str, BaseException]


class FakeCompletionService(CompletionService):
    """Plays back scripted responses; an exception in the script is raised instead."""

    model = "fake-model"

    def __init__(self, responses: Sequence[Scripted], fragment_size: int = 7):
        super().__init__()
        self.responses: List[Scripted] = list(responses)
        self.fragment_size = fragment_size
        self.prompts: List[str] = []
        self.configs: List[CompletionConfig] = []

    def _next(self, prompt: str, config: CompletionConfig) -> str:
        self.prompts.append(prompt)
        self.configs.append(config)
        if not self.responses:
            raise AssertionError("FakeCompletionService ran out of scripted responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        self.last_token_count = len(item)
        return item

    def generate(self, prompt: str, config: CompletionConfig) -> str:
        return self._next(prompt, config)

    def stream(self, prompt: str, config: CompletionConfig) -> Iterator[str]:
        text = self._next(prompt, config)
        for i in range(0, len(text), self.fragment_size):
            yield text[i : i + self.fragment_size]

    @property
    def calls(self) -> int:
        return len(self.prompts)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FixedRandom:
    """random.Random stand-in with a constant value."""

    def __init__(self, value: float = 0.5):
        self.value = value

    def random(self) -> float:
        return self.value


def make_batch(
    concepts: Optional[list] = None,
    cases: Optional[list] = None,
    principles: Optional[list] = None,
    rules: Optional[list] = None,
    source_documents: Optional[list] = None,
    extracted_at: str = "2024-01-01T00:00:00+00:00",
) -> ExtractionBatch:
    return ExtractionBatch.model_validate(
        {
            "concepts": concepts or [],
            "cases": cases or [],
            "principles": principles or [],
            "rules": rules or [],
            "metadata": {
                "sourceDocuments": source_documents or [],
                "extractedAt": extracted_at,
            },
        }
    )


def concept(name: str, definition: str = "A definition.", **extra) -> dict:
    data = {
        "id": name.lower().replace(" ", "-"),
        "name": name,
        "definition": definition,
        "category": "doctrine",
        "sourceRefs": [],
    }
    data.update(extra)
    return data


def case(name: str, **extra) -> dict:
    data = {
        "id": name.lower().replace(" ", "-").replace(".", ""),
        "name": name,
        "facts": "Facts.",
        "holding": "Holding.",
        "significance": "Significance.",
    }
    data.update(extra)
    return data


VALID_ENTITIES_JSON = """{
  "concepts": [
    {"id": "aggregate-theory", "name": "Aggregate Theory", "definition": "A partnership is its partners.", "category": "doctrine", "sourceRefs": ["ch1.md"]}
  ],
  "cases": [
    {"id": "diamond", "name": "Diamond v. Commissioner", "citation": "492 F.2d 286", "year": 1974, "court": "7th Cir.", "facts": "Services for a profits interest.", "holding": "Receipt was taxable.", "significance": "Profits interests can be income.", "relatedConceptIds": ["aggregate-theory"], "sourceRefs": ["ch1.md"]}
  ],
  "principles": [],
  "rules": [],
  "metadata": {"sourceDocuments": ["ch1.md"], "extractedAt": "2024-01-01T00:00:00+00:00", "modelId": "fake-model", "tokensUsed": 12}
}"""


@pytest.fixture
def valid_entities_json() -> str:
    return VALID_ENTITIES_JSON


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fixed_random() -> FixedRandom:
    return FixedRandom()
