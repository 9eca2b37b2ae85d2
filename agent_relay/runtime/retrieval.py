from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class RetrievedChunk:
    text: str
    source: str = "unknown"
    score: float = 0.0
    section: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "section": self.section, "score": self.score, "preview": self.text}


class Retriever(Protocol):
    """
    Knowledge-base lookup. How documents are chunked and embedded is up to the
    implementation; the gateway only needs ranked passages back.
    """

    def is_ready(self) -> bool:
        ...

    async def retrieve(self, query: str, *, top_k: int = 5) -> List[RetrievedChunk]:
        ...


def format_context(chunks: List[RetrievedChunk]) -> str:
    if not chunks:
        return "No relevant information found in the knowledge base."
    parts = []
    for c in chunks:
        header = f"[Source: {c.source}" + (f" | Section: {c.section}" if c.section else "") + "]"
        parts.append(f"{header}\n{c.text}")
    return "\n\n---\n\n".join(parts)


def build_rag_system_prompt(base: str, chunks: List[RetrievedChunk]) -> str:
    return f"""{base}

## Knowledge Base Context

You have access to the following information from the StreamVerse knowledge base. Use this to provide accurate, specific answers:

{format_context(chunks)}

## Guidelines

- Prioritize information from the knowledge base context when answering questions
- If information is missing call the relevant tools
- Cite sources (e.g., "According to the streaming-api documentation...")
- If the knowledge base doesn't contain relevant information, acknowledge this
- You can combine knowledge base information with your general knowledge when appropriate"""
