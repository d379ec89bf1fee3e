"""Content generation adapter.

Wraps a prompt-completion backend and turns its replies into validated
ebook documents. The pipeline only depends on the ContentGenerator
protocol, so tests and alternative providers plug in without a model.
"""

import json
import logging
from typing import Optional, Protocol

from pydantic import ValidationError

from src.ebook.errors import GenerationError
from src.ebook.prompts import SYSTEM_PROMPT, PromptComposer
from src.ebook.schemas import ChapterOutline, EbookDescription, GeneratedChapter
from src.llm.backends import ModelBackend
from src.llm.client import parse_llm_json_response, strip_markdown_fence

logger = logging.getLogger(__name__)

WORDS_PER_PAGE = 500


class ContentGenerator(Protocol):
    """Prompt in, structured document out."""

    def generate_description(
        self,
        title: str,
        target_audience: Optional[str] = None,
        industry: Optional[str] = None,
        *,
        chapters: int = 10,
        pages_per_chapter: int = 5,
        previous_problems: Optional[list[str]] = None,
    ) -> EbookDescription: ...

    def generate_introduction(self, title: str, description: EbookDescription) -> str: ...

    def generate_chapter(
        self,
        title: str,
        description: EbookDescription,
        chapter: ChapterOutline,
        total_chapters: int,
    ) -> GeneratedChapter: ...

    def generate_conclusion(self, title: str, key_points: list[str]) -> str: ...


class LLMContentGenerator:
    """ContentGenerator backed by an LLM ModelBackend."""

    def __init__(
        self,
        backend: ModelBackend,
        composer: Optional[PromptComposer] = None,
        *,
        max_tokens: int = 8000,
        temperature: float = 0.7,
    ):
        self.backend = backend
        self.composer = composer or PromptComposer()
        self.max_tokens = max_tokens
        self.temperature = temperature

    def generate_description(
        self,
        title: str,
        target_audience: Optional[str] = None,
        industry: Optional[str] = None,
        *,
        chapters: int = 10,
        pages_per_chapter: int = 5,
        previous_problems: Optional[list[str]] = None,
    ) -> EbookDescription:
        prompt = self.composer.compose(
            "description",
            title=title,
            target_audience=target_audience,
            industry=industry,
            chapters=chapters,
            pages_per_chapter=pages_per_chapter,
            total_pages=chapters * pages_per_chapter,
            previous_problems=previous_problems or [],
        )
        data = self._call_json(prompt, label="description")
        try:
            return EbookDescription(**data)
        except ValidationError as e:
            raise GenerationError(f"Description reply does not match the expected shape: {e}") from e

    def generate_introduction(self, title: str, description: EbookDescription) -> str:
        prompt = self.composer.compose(
            "introduction",
            title=title,
            description=description.description,
            target_audience=description.target_audience,
            objectives=description.objectives,
        )
        return self._call_text(prompt, label="introduction")

    def generate_chapter(
        self,
        title: str,
        description: EbookDescription,
        chapter: ChapterOutline,
        total_chapters: int,
    ) -> GeneratedChapter:
        label = f"chapter-{chapter.number}"
        prompt = self.composer.compose(
            "chapter",
            title=title,
            description=description.description,
            target_audience=description.target_audience,
            chapter=chapter,
            total_chapters=total_chapters,
            target_words=chapter.pages * WORDS_PER_PAGE,
        )
        data = self._call_json(prompt, label=label)

        # The outline is authoritative for numbering and titles
        data["chapter_number"] = chapter.number
        data["title"] = chapter.title
        try:
            generated = GeneratedChapter(**data)
        except ValidationError as e:
            raise GenerationError(f"Chapter {chapter.number} reply is malformed: {e}") from e

        if generated.word_count <= 0:
            generated.word_count = len(generated.content.split())
        return generated

    def generate_conclusion(self, title: str, key_points: list[str]) -> str:
        prompt = self.composer.compose("conclusion", title=title, key_points=key_points)
        return self._call_text(prompt, label="conclusion")

    # --- Internals ---

    def _complete(self, prompt: str, label: str) -> str:
        try:
            result = self.backend.execute_sync(
                SYSTEM_PROMPT,
                prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                label=label,
            )
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"LLM call failed for {label}: {e}") from e

        if getattr(result, "truncated", False):
            logger.warning(f"[{label}] Reply hit max_tokens ({self.max_tokens}); output may be cut")
        return result.content

    def _call_json(self, prompt: str, label: str) -> dict:
        raw = self._complete(prompt, label)
        try:
            return parse_llm_json_response(raw)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"[{label}] Could not parse JSON reply ({len(raw)} chars): {e}")
            raise GenerationError(f"Model returned invalid JSON for {label}: {e}") from e

    def _call_text(self, prompt: str, label: str) -> str:
        text = strip_markdown_fence(self._complete(prompt, label))
        if not text:
            raise GenerationError(f"Model returned no text for {label}")
        return text
