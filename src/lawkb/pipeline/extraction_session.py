import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from threading import Event
from typing import Callable, List, Optional, Sequence

from tqdm import tqdm

from lawkb.llm_extraction.errors import ExtractionError
from lawkb.llm_extraction.models import ExtractionBatch, RelationshipMatrix
from lawkb.llm_extraction.orchestrator import ChunkCallback, RequestOrchestrator
from lawkb.llm_extraction.parser import StructuredOutputParser
from lawkb.llm_extraction.prompts import (
    build_entity_extraction_prompt,
    build_relationship_mapping_prompt,
)
from lawkb.pipeline.chunking import SourceChunker, SourceDocument
from lawkb.pipeline.entity_merger import deduplicate_entities, merge_entities

logger = logging.getLogger(__name__)


class EntityExtractor:
    """Extracts an ExtractionBatch from source documents.

    Sources under the chunk budget go out in a single request. Larger inputs are split
    into chunks of whole documents, extracted one request per chunk, merged in chunk
    order and deduplicated.
    """

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        chunker: Optional[SourceChunker] = None,
        language: str = "mixed",
        streaming: bool = True,
        max_workers: int = 1,
        show_progress: bool = False,
    ):
        self.orchestrator = orchestrator
        self.chunker = chunker or SourceChunker()
        self.language = language
        self.streaming = streaming
        self.max_workers = max(1, max_workers)
        self.show_progress = show_progress

    def extract(
        self,
        documents: Sequence[SourceDocument],
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[Event] = None,
    ) -> ExtractionBatch:
        if not documents:
            raise ValueError("No source documents to extract from")

        if self.chunker.fits_single_request(documents):
            batch = self.extract_chunk(documents, False, on_chunk, cancel_event)
            return deduplicate_entities(batch)

        chunks = self.chunker.build_chunks(documents)
        logger.info(
            f"Sources exceed {self.chunker.max_tokens} tokens, "
            f"extracting in {len(chunks)} chunks"
        )
        results = self._extract_chunks(chunks, on_chunk, cancel_event)

        merged = results[0]
        for batch in results[1:]:
            merged = merge_entities(merged, batch)
        return deduplicate_entities(merged)

    def _extract_chunks(
        self,
        chunks: List[List[SourceDocument]],
        on_chunk: Optional[ChunkCallback],
        cancel_event: Optional[Event],
    ) -> List[ExtractionBatch]:
        results: List[Optional[ExtractionBatch]] = [None] * len(chunks)

        if self.max_workers == 1:
            for i, chunk in enumerate(
                tqdm(chunks, desc="Extracting chunks", unit="chunk", disable=not self.show_progress)
            ):
                results[i] = self.extract_chunk(chunk, True, on_chunk, cancel_event)
            return results

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.extract_chunk, chunk, True, on_chunk, cancel_event): i
                for i, chunk in enumerate(chunks)
            }
            for future in tqdm(
                as_completed(futures),
                total=len(futures),
                desc="Extracting chunks",
                unit="chunk",
                disable=not self.show_progress,
            ):
                # Re-raises the first failing chunk's error
                results[futures[future]] = future.result()
        return results

    def extract_chunk(
        self,
        documents: Sequence[SourceDocument],
        chunked: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[Event] = None,
    ) -> ExtractionBatch:
        """One request for one group of documents."""
        prompt = build_entity_extraction_prompt(
            self.chunker.format_sources(documents), self.language, chunked=chunked
        )
        text = self.orchestrator.submit(
            prompt,
            json_mode=True,
            streaming=self.streaming,
            on_chunk=on_chunk,
            cancel_event=cancel_event,
        )
        batch = StructuredOutputParser.parse_entities(text)
        self._fill_metadata(batch, documents)
        logger.info(f"Extracted {batch.summary()} from {len(documents)} document(s)")
        return batch

    def _fill_metadata(
        self, batch: ExtractionBatch, documents: Sequence[SourceDocument]
    ) -> None:
        """Record what was actually sent and used; the model's own claims are not trusted."""
        metadata = batch.metadata
        metadata.source_documents = [doc.filename for doc in documents]
        service = self.orchestrator.service
        if service.model and service.model != "unknown":
            metadata.model_id = service.model
        # Read on the thread that made the request; 0 when the service reported no usage
        metadata.tokens_used = service.last_token_count or 0


class RelationshipMapper:
    """Maps confirmed cases to confirmed concepts."""

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        language: str = "mixed",
        streaming: bool = True,
    ):
        self.orchestrator = orchestrator
        self.language = language
        self.streaming = streaming

    def map(
        self,
        batch: ExtractionBatch,
        documents: Sequence[SourceDocument],
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[Event] = None,
    ) -> RelationshipMatrix:
        prompt = build_relationship_mapping_prompt(
            batch, SourceChunker.format_sources(documents), self.language
        )
        text = self.orchestrator.submit(
            prompt,
            json_mode=True,
            streaming=self.streaming,
            on_chunk=on_chunk,
            cancel_event=cancel_event,
        )
        matrix = StructuredOutputParser.parse_relationships(text)

        known_cases = {case.id for case in batch.cases}
        known_concepts = {concept.id for concept in batch.concepts}
        unknown = [
            entry
            for entry in matrix.entries
            if entry.case_id not in known_cases or entry.concept_id not in known_concepts
        ]
        if unknown:
            logger.warning(
                f"{len(unknown)} relationship(s) reference ids outside the confirmed entities"
            )

        logger.info(
            f"Mapped {len(matrix.entries)} relationships across "
            f"{len(matrix.cases_in_order)} cases and {len(matrix.concepts_in_order)} concepts"
        )
        return matrix


class SessionState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    VALIDATED = "validated"
    FAILED = "failed"
    DONE = "done"


class InvalidTransitionError(ExtractionError):
    """An operator decision that the session's current state does not allow."""


class ExtractionSession:
    """
    Review loop around an extraction.

    IDLE -> EXTRACTING -> VALIDATED | FAILED. From VALIDATED or FAILED the operator
    decides: ``retry()`` runs the extraction again, ``accept()`` (VALIDATED only) or
    ``abandon()`` ends the session in DONE. With an ``existing`` corpus, a successful
    extraction is merged into it and deduplicated before review.
    """

    def __init__(
        self,
        extract: Callable[[], ExtractionBatch],
        existing: Optional[ExtractionBatch] = None,
    ):
        self._extract = extract
        self.existing = existing
        self.state = SessionState.IDLE
        self.attempts = 0
        self.result: Optional[ExtractionBatch] = None
        self.error: Optional[ExtractionError] = None
        self.accepted: Optional[ExtractionBatch] = None

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidTransitionError(
                f"Session is {self.state.value}; expected one of: {allowed}"
            )

    def run(self) -> SessionState:
        self._require(SessionState.IDLE)
        return self._run()

    def retry(self) -> SessionState:
        self._require(SessionState.VALIDATED, SessionState.FAILED)
        logger.info(f"Re-extracting (attempt {self.attempts + 1})")
        return self._run()

    def accept(self) -> ExtractionBatch:
        self._require(SessionState.VALIDATED)
        self.accepted = self.result
        self.state = SessionState.DONE
        return self.accepted

    def abandon(self) -> None:
        self._require(SessionState.VALIDATED, SessionState.FAILED)
        self.accepted = None
        self.state = SessionState.DONE
        logger.info("Extraction abandoned")

    def _run(self) -> SessionState:
        self.state = SessionState.EXTRACTING
        self.attempts += 1
        self.result = None
        self.error = None
        try:
            batch = self._extract()
        except ExtractionError as e:
            self.error = e
            self.state = SessionState.FAILED
            logger.error(f"Extraction failed: {e}")
            return self.state
        except Exception:
            self.state = SessionState.FAILED
            raise

        if self.existing is not None:
            batch = deduplicate_entities(merge_entities(self.existing, batch))
        self.result = batch
        self.state = SessionState.VALIDATED
        return self.state

