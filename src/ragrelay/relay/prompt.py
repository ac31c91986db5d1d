"""Builds the context message injected ahead of a user text turn."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ragrelay.models import ContextResult

DEFAULT_INSTRUCTIONS = (
    "You are a helpful AI assistant with access to specific knowledge. When responding:\n"
    "1. Always reference the provided context in your answers\n"
    "2. Use direct quotes when citing specific information\n"
    "3. Indicate clearly which parts of the context you're drawing from, naming the source\n"
    "4. If the context doesn't contain relevant information, say so"
)


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for context prompt construction."""

    instructions: str = DEFAULT_INSTRUCTIONS
    citation_prefix: str = "["
    citation_suffix: str = "]"
    include_sources: bool = True


class ContextPromptBuilder:
    """Wraps retrieved texts in an instruction to cite them."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def build_context(self, results: Sequence[ContextResult]) -> str:
        if not results:
            return ""
        if not self._config.include_sources:
            return "\n".join(result.text for result in results)
        lines = []
        for index, result in enumerate(results, start=1):
            prefix = f"{self._config.citation_prefix}{index}{self._config.citation_suffix}"
            lines.append(f"{prefix} {result.text}\nSource: {result.source_name}")
        return "\n\n".join(lines)

    def build(self, results: Sequence[ContextResult]) -> str:
        context = self.build_context(results)
        if not context:
            return ""
        return f"{self._config.instructions}\n\nHere is your reference context:\n\n{context}"
