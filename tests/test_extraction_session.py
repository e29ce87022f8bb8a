import json
import threading

import pytest

from conftest import FakeCompletionService, FixedRandom, RecordingSleep, concept, make_batch
from lawkb.llm_extraction.completion import CompletionService
from lawkb.llm_extraction.errors import CompletionError, ErrorKind, JsonRepairError
from lawkb.llm_extraction.orchestrator import RequestOrchestrator
from lawkb.llm_extraction.prompts import chunking_instructions
from lawkb.pipeline.chunking import SourceChunker, SourceDocument
from lawkb.pipeline.extraction_session import (
    EntityExtractor,
    ExtractionSession,
    InvalidTransitionError,
    RelationshipMapper,
    SessionState,
)


def doc(name: str, text: str) -> SourceDocument:
    return SourceDocument(path=name, filename=name, text=text)


def orchestrator_for(service) -> RequestOrchestrator:
    return RequestOrchestrator(service, sleep=RecordingSleep(), rng=FixedRandom())


def entities_json(*names: str) -> str:
    return json.dumps(
        {
            "concepts": [concept(name) for name in names],
            "metadata": {"sourceDocuments": ["made-up.md"], "modelId": "claimed"},
        }
    )


def test_single_request_extraction(valid_entities_json):
    service = FakeCompletionService([valid_entities_json])
    extractor = EntityExtractor(orchestrator_for(service), streaming=False)

    batch = extractor.extract([doc("ch1.md", "Partnership notes.")])

    assert service.calls == 1
    assert "--- SOURCE: ch1.md ---\nPartnership notes." in service.prompts[0]
    assert chunking_instructions not in service.prompts[0]
    assert service.configs[0].json_mode is True
    assert [c.name for c in batch.concepts] == ["Aggregate Theory"]
    assert batch.metadata.source_documents == ["ch1.md"]
    assert batch.metadata.model_id == "fake-model"
    assert batch.metadata.tokens_used == len(valid_entities_json)


def test_chunked_extraction_merges_and_deduplicates():
    service = FakeCompletionService(
        [
            entities_json("Consideration", "Promissory Estoppel"),
            entities_json("Estoppel", "Mailbox Rule"),
        ]
    )
    extractor = EntityExtractor(
        orchestrator_for(service), chunker=SourceChunker(max_tokens=15), streaming=False
    )

    batch = extractor.extract([doc("ch1.md", "a" * 40), doc("ch2.md", "b" * 40)])

    assert service.calls == 2
    assert all(chunking_instructions in prompt for prompt in service.prompts)
    assert "ch2.md" not in service.prompts[0]
    assert [c.name for c in batch.concepts] == [
        "Consideration",
        "Promissory Estoppel",
        "Mailbox Rule",
    ]
    assert batch.metadata.source_documents == ["ch1.md", "ch2.md"]


def test_chunked_extraction_with_workers_keeps_chunk_order():
    service = FakeCompletionService(
        [entities_json("Consideration"), entities_json("Mailbox Rule")]
    )
    extractor = EntityExtractor(
        orchestrator_for(service),
        chunker=SourceChunker(max_tokens=15),
        streaming=False,
        max_workers=2,
    )

    batch = extractor.extract([doc("ch1.md", "a" * 40), doc("ch2.md", "b" * 40)])

    assert service.calls == 2
    assert len(batch.concepts) == 2
    assert batch.metadata.source_documents == ["ch1.md", "ch2.md"]


class UsageByDocumentService(CompletionService):
    """Answers by which source file the prompt carries, reporting a fixed usage for each."""

    model = "fake-model"

    def __init__(self, replies, barrier=None):
        super().__init__()
        self.replies = replies
        self.barrier = barrier

    def generate(self, prompt, config):
        filename = next(name for name in self.replies if f"SOURCE: {name} ---" in prompt)
        text, tokens = self.replies[filename]
        if tokens is not None:
            self.last_token_count = tokens
        if self.barrier is not None:
            # Both chunks are in flight before either one finishes
            self.barrier.wait(timeout=5)
        return text

    def stream(self, prompt, config):
        yield self.generate(prompt, config)


def test_parallel_chunks_record_their_own_token_usage():
    service = UsageByDocumentService(
        {
            "ch1.md": (entities_json("Consideration"), 100),
            "ch2.md": (entities_json("Mailbox Rule"), 200),
        },
        barrier=threading.Barrier(2),
    )
    extractor = EntityExtractor(
        orchestrator_for(service),
        chunker=SourceChunker(max_tokens=15),
        streaming=False,
        max_workers=2,
    )

    batch = extractor.extract([doc("ch1.md", "a" * 40), doc("ch2.md", "b" * 40)])

    assert batch.metadata.tokens_used == 300


def test_missing_usage_is_not_inherited_from_previous_request():
    service = UsageByDocumentService(
        {
            "ch1.md": (entities_json("Consideration"), 50),
            "ch2.md": (entities_json("Mailbox Rule"), None),
        }
    )
    extractor = EntityExtractor(orchestrator_for(service), streaming=False)

    assert extractor.extract([doc("ch1.md", "notes")]).metadata.tokens_used == 50
    assert extractor.extract([doc("ch2.md", "notes")]).metadata.tokens_used == 0


def test_streaming_extraction_reports_progress(valid_entities_json):
    service = FakeCompletionService([valid_entities_json], fragment_size=50)
    extractor = EntityExtractor(orchestrator_for(service), streaming=True)
    accumulated = []

    extractor.extract([doc("ch1.md", "notes")], on_chunk=lambda d, acc: accumulated.append(acc))

    assert accumulated[-1] == valid_entities_json
    assert len(accumulated) > 1


def test_extract_requires_documents():
    with pytest.raises(ValueError):
        EntityExtractor(orchestrator_for(FakeCompletionService([]))).extract([])


def test_relationship_mapping(valid_entities_json):
    entities = EntityExtractor(
        orchestrator_for(FakeCompletionService([valid_entities_json])), streaming=False
    ).extract([doc("ch1.md", "notes")])
    matrix_json = json.dumps(
        {
            "entries": [
                {
                    "caseId": "diamond",
                    "conceptId": "aggregate-theory",
                    "relationshipType": "Applies",
                    "description": "Applies the theory.",
                    "strength": "PRIMARY",
                }
            ]
        }
    )
    service = FakeCompletionService([matrix_json])
    mapper = RelationshipMapper(orchestrator_for(service), language="en", streaming=False)

    matrix = mapper.map(entities, [doc("ch1.md", "notes")])

    assert "- diamond: Diamond v. Commissioner" in service.prompts[0]
    assert "- aggregate-theory: Aggregate Theory" in service.prompts[0]
    assert "Write all descriptive text in English." in service.prompts[0]
    assert matrix.entries[0].kind == "applies"
    assert matrix.entries[0].strength == "primary"
    assert matrix.cases_in_order == ["diamond"]


def test_session_accepts_validated_result():
    batch = make_batch(concepts=[concept("Consideration")])
    session = ExtractionSession(lambda: batch)

    assert session.state == SessionState.IDLE
    assert session.run() == SessionState.VALIDATED
    assert session.result is batch
    assert session.accept() is batch
    assert session.state == SessionState.DONE


def test_session_failure_then_retry():
    outcomes = [
        JsonRepairError("Could not repair JSON", "{bad"),
        make_batch(concepts=[concept("Consideration")]),
    ]

    def extract():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    session = ExtractionSession(extract)
    assert session.run() == SessionState.FAILED
    assert isinstance(session.error, JsonRepairError)
    assert session.result is None

    with pytest.raises(InvalidTransitionError):
        session.accept()

    assert session.retry() == SessionState.VALIDATED
    assert session.error is None
    assert session.attempts == 2


def test_session_can_be_abandoned():
    def extract():
        raise CompletionError(ErrorKind.AUTH_ERROR, "bad key")

    session = ExtractionSession(extract)
    session.run()
    session.abandon()
    assert session.state == SessionState.DONE
    assert session.accepted is None
    with pytest.raises(InvalidTransitionError):
        session.retry()


def test_session_cannot_run_twice():
    session = ExtractionSession(lambda: make_batch())
    session.run()
    with pytest.raises(InvalidTransitionError):
        session.run()


def test_unexpected_errors_propagate_and_fail_the_session():
    def extract():
        raise KeyError("boom")

    session = ExtractionSession(extract)
    with pytest.raises(KeyError):
        session.run()
    assert session.state == SessionState.FAILED


def test_session_merges_into_existing_corpus():
    existing = make_batch(
        concepts=[concept("Consideration", "Old.")], source_documents=["ch1.md"]
    )
    incoming = make_batch(
        concepts=[concept("Consideration", "New."), concept("Estoppel"), concept("Promissory Estoppel")],
        source_documents=["ch2.md"],
    )
    session = ExtractionSession(lambda: incoming, existing=existing)

    session.run()
    result = session.accept()

    assert [c.name for c in result.concepts] == ["Consideration", "Estoppel"]
    assert result.concepts[0].definition == "New."
    assert result.metadata.source_documents == ["ch1.md", "ch2.md"]
    assert [c.definition for c in existing.concepts] == ["Old."]
