import logging
import math
import re
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")

MAX_SOURCE_TOKENS_PER_CHUNK = 40000


def estimate_tokens(text: str) -> int:
    """Rough token count: a CJK character is 1/1.5 token, anything else 1/4."""
    cjk = len(_CJK_PATTERN.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5 + other / 4)


class SourceDocument(BaseModel):
    """A source note sent to the model for extraction."""

    path: str = Field(..., description="Path the document was read from")
    filename: str = Field(..., description="Name shown to the model and used in sourceRefs")
    text: str = Field(..., description="Raw document text")

    @property
    def char_count(self) -> int:
        return len(self.text)

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.text)

    @classmethod
    def from_path(cls, path, encoding: str = "utf-8") -> "SourceDocument":
        path = Path(path)
        return cls(path=str(path), filename=path.name, text=path.read_text(encoding=encoding))


class SourceChunker:
    """Groups source documents into requests that fit the source token budget."""

    def __init__(
        self,
        max_tokens: int = MAX_SOURCE_TOKENS_PER_CHUNK,
        split_oversized: bool = False,
    ):
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens
        self.split_oversized = split_oversized

    @staticmethod
    def format_sources(documents: Sequence[SourceDocument]) -> str:
        """Render documents as ``--- SOURCE: name ---`` blocks for a prompt."""
        return "\n\n".join(
            f"--- SOURCE: {doc.filename} ---\n{doc.text}" for doc in documents
        )

    def fits_single_request(self, documents: Sequence[SourceDocument]) -> bool:
        return estimate_tokens(self.format_sources(documents)) <= self.max_tokens

    def build_chunks(
        self, documents: Sequence[SourceDocument]
    ) -> List[List[SourceDocument]]:
        """
        Split documents into chunks whose estimated tokens stay under the budget.

        Documents are never split across chunks. A single document over the budget
        becomes a chunk of its own (or, with ``split_oversized``, is divided into
        paragraph-aligned parts that each form a chunk).
        """
        chunks: List[List[SourceDocument]] = []
        current: List[SourceDocument] = []
        current_tokens = 0

        for doc in documents:
            doc_tokens = doc.token_estimate

            if doc_tokens > self.max_tokens:
                if current:
                    chunks.append(current)
                    current = []
                    current_tokens = 0
                logger.warning(
                    f"{doc.filename} (~{doc_tokens} tokens) exceeds the chunk budget "
                    f"of {self.max_tokens} tokens"
                )
                if self.split_oversized:
                    chunks.extend([part] for part in self.split_document(doc))
                else:
                    chunks.append([doc])
                continue

            if current and current_tokens + doc_tokens > self.max_tokens:
                chunks.append(current)
                current = []
                current_tokens = 0

            current.append(doc)
            current_tokens += doc_tokens

        if current:
            chunks.append(current)

        logger.info(f"Built {len(chunks)} chunk(s) from {len(documents)} document(s)")
        return chunks

    @staticmethod
    def split_paragraphs(text: str) -> List[str]:
        """Split text into paragraphs, handling various newline formats."""
        text = text.replace("\r\n", "\n")
        paragraphs = [p.strip() for p in text.split("\n\n") if p.strip()]

        # No blank-line separators: fall back to single newlines
        if len(paragraphs) <= 1:
            paragraphs = [p.strip() for p in text.split("\n") if p.strip()]

        if not paragraphs:
            return [text]
        return paragraphs

    def split_document(self, doc: SourceDocument) -> List[SourceDocument]:
        """Divide one document into paragraph-aligned parts under the budget."""
        parts: List[str] = []
        current: List[str] = []
        current_tokens = 0

        for paragraph in self.split_paragraphs(doc.text):
            paragraph_tokens = estimate_tokens(paragraph)
            if current and current_tokens + paragraph_tokens > self.max_tokens:
                parts.append("\n\n".join(current))
                current = []
                current_tokens = 0
            # A single paragraph over the budget is kept whole
            current.append(paragraph)
            current_tokens += paragraph_tokens

        if current:
            parts.append("\n\n".join(current))

        if len(parts) == 1:
            return [doc]
        return [
            SourceDocument(
                path=doc.path,
                filename=f"{doc.filename} (part {i}/{len(parts)})",
                text=part,
            )
            for i, part in enumerate(parts, start=1)
        ]


def load_documents(paths: Sequence, encoding: Optional[str] = "utf-8") -> List[SourceDocument]:
    documents = []
    for path in paths:
        doc = SourceDocument.from_path(path, encoding=encoding)
        logger.info(f"Loaded {doc.filename}: {doc.char_count} chars, ~{doc.token_estimate} tokens")
        documents.append(doc)
    return documents
