#!/usr/bin/env python3
"""
Extract Legal Entities

Extracts concepts, cases, principles and rules from legal study notes with a completion
service, lets the operator review the result, and saves it as JSON. With --existing, the
new extraction is merged into a previously saved batch (incremental update).

Usage:
    python scripts/extract_entities.py notes/ch1.md notes/ch2.md --output entities.json
    python scripts/extract_entities.py notes/ch3.md --existing entities.json --relationships matrix.json

Settings come from the environment or a .env file (GEMINI_API_KEY, LAWKB_MODEL, ...).
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError
from tqdm import tqdm

from lawkb.config import Settings
from lawkb.llm_extraction.errors import ExtractionError
from lawkb.llm_extraction.models import ExtractionBatch
from lawkb.llm_extraction.orchestrator import RetryNotice
from lawkb.llm_extraction.parser import StructuredOutputParser
from lawkb.pipeline.chunking import SourceChunker, load_documents
from lawkb.pipeline.entity_merger import find_duplicate_pairs
from lawkb.pipeline.extraction_session import (
    EntityExtractor,
    ExtractionSession,
    RelationshipMapper,
    SessionState,
)

load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("extract_entities")

SUPPORTED_SUFFIXES = {".md", ".txt"}


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Extract legal entities from study notes into a JSON knowledge base"
    )
    parser.add_argument("inputs", nargs="+", help="Source note files (.md or .txt)")
    parser.add_argument(
        "--existing",
        type=str,
        help="Previously saved entities JSON to merge the new extraction into",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="entities.json",
        help="Where to write the extracted entities (default: entities.json)",
    )
    parser.add_argument(
        "--relationships",
        type=str,
        help="Also map case/concept relationships and write them to this file",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for complete responses instead of streaming",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=1,
        help="Chunks extracted concurrently when the sources need chunking",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Accept the first successful extraction without prompting",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args()


def load_existing(path: str) -> ExtractionBatch:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    try:
        return ExtractionBatch.model_validate(data)
    except ValidationError as e:
        raise SystemExit(f"{path} is not a valid entities file: {e}") from e


def write_json(path: str, payload: dict) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)
    logger.info(f"Wrote {path}")


def print_review(batch: ExtractionBatch) -> None:
    print(f"\nExtracted: {batch.summary()}")
    for section in ("concepts", "principles", "rules"):
        for pair in find_duplicate_pairs(getattr(batch, section)):
            print(f"  possible duplicate {section}: '{pair.name_a}' / '{pair.name_b}'")


def print_failure(session: ExtractionSession) -> None:
    print(f"\nExtraction failed: {session.error}")
    raw_text = getattr(session.error, "raw_preview", None)
    if raw_text:
        print("Raw response (truncated):")
        print(raw_text)


def ask_decision(state: SessionState) -> str:
    choices = "[r]etry / a[b]andon"
    if state == SessionState.VALIDATED:
        choices = "[a]ccept / " + choices
    while True:
        answer = input(f"{choices}? ").strip().lower()
        if answer in ("r", "retry"):
            return "retry"
        if answer in ("b", "abandon"):
            return "abandon"
        if state == SessionState.VALIDATED and answer in ("a", "accept"):
            return "accept"


def review(session: ExtractionSession, auto_accept: bool) -> Optional[ExtractionBatch]:
    state = session.run()
    while state != SessionState.DONE:
        if state == SessionState.VALIDATED:
            print_review(session.result)
            decision = "accept" if auto_accept else ask_decision(state)
        else:
            print_failure(session)
            if auto_accept:
                session.abandon()
                break
            decision = ask_decision(state)

        if decision == "accept":
            return session.accept()
        if decision == "abandon":
            session.abandon()
            break
        state = session.retry()
    return None


def save_results(
    args: argparse.Namespace,
    batch: ExtractionBatch,
    mapper: RelationshipMapper,
    documents,
    on_chunk,
) -> int:
    write_json(args.output, batch.to_wire())
    if not args.relationships:
        return 0

    try:
        matrix = mapper.map(batch, documents, on_chunk=on_chunk)
    except ExtractionError as e:
        logger.error(f"Relationship mapping failed: {e}")
        return 1
    write_json(args.relationships, matrix.to_wire())
    return 0


def main():
    args = parse_args()
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    for path in args.inputs:
        if Path(path).suffix.lower() not in SUPPORTED_SUFFIXES:
            logger.error(f"Unsupported file type: {path}")
            return 1

    try:
        settings = Settings.from_env(dotenv=False)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    streaming = settings.streaming and not args.no_stream
    documents = load_documents(args.inputs)
    existing = load_existing(args.existing) if args.existing else None

    with tqdm(desc="Receiving response", unit="chars", disable=not streaming) as progress:

        def on_chunk(delta: str, accumulated: str) -> None:
            progress.update(len(delta))

        def on_retry(notice: RetryNotice) -> None:
            progress.write(str(notice))

        orchestrator = settings.build_orchestrator(on_retry=on_retry)
        extractor = EntityExtractor(
            orchestrator,
            chunker=SourceChunker(settings.max_source_tokens_per_chunk),
            language=settings.language.value,
            streaming=streaming,
            max_workers=args.max_workers,
            show_progress=True,
        )
        session = ExtractionSession(
            lambda: extractor.extract(documents, on_chunk=on_chunk), existing=existing
        )

        batch = review(session, args.yes)
        if batch is None:
            if args.debug:
                _, stage, errors = StructuredOutputParser.get_last_debug_info()
                logger.debug(f"Last repair stage: {stage}; validation errors: {errors}")
            logger.info("No entities saved")
            return 1

        mapper = RelationshipMapper(
            orchestrator, language=settings.language.value, streaming=streaming
        )
        return save_results(args, batch, mapper, documents, on_chunk)


if __name__ == "__main__":
    sys.exit(main())
