"""Question generators: turn extracted document text into quiz questions.

Two interchangeable strategies share the `QuestionGenerator` protocol:

- `HeuristicQuestionGenerator` picks well-formed sentences from the text
  and asks which one really appears in the script (no network).
- `LlmQuestionGenerator` asks an external chat model for a JSON list of
  questions and lets the model decide how many make sense.

Both return raw candidate dicts with the keys `stem`, `choices`,
`correct_index` (or `correctIndex`) and `explanation`. Candidates are only
trusted after `validate_candidates`, which the study set lifecycle runs on
every generator result.
"""

import json
import logging
import random
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Protocol

import spacy

from .errors import GenerationError
from .llm_client import LlmClient, LlmConfig
from .schemas import QuestionCandidate

log = logging.getLogger("studyquiz.generation")

Candidate = Dict[str, Any]

CHOICE_COUNT = 4


class QuestionGenerator(Protocol):
    def generate(self, text: str, count: Optional[int] = None) -> List[Candidate]:
        ...


def validate_candidates(items: Iterable[Any]) -> List[QuestionCandidate]:
    """Keep only candidates with a non-blank stem, four string choices and a valid index."""
    out = []
    for item in items:
        if not isinstance(item, dict):
            continue
        stem = item.get('stem')
        choices = item.get('choices')
        idx = item.get('correct_index', item.get('correctIndex'))
        if not isinstance(stem, str) or not stem.strip():
            continue
        if not isinstance(choices, list) or len(choices) != CHOICE_COUNT:
            continue
        if not all(isinstance(c, str) for c in choices):
            continue
        # bool is an int subclass; `true` is not an index
        if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < CHOICE_COUNT:
            continue
        explanation = item.get('explanation')
        if not isinstance(explanation, str) or not explanation.strip():
            explanation = None
        out.append(QuestionCandidate(stem=stem.strip(), choices=list(choices), correct_index=idx, explanation=explanation))
    return out


# ---------------------------------------------------------------------------
# heuristic strategy
# ---------------------------------------------------------------------------

MIN_SENTENCE_CHARS = 50
MAX_CHOICE_CHARS = 220
MIN_SENTENCE_WORDS = 6

HEURISTIC_STEM = "Which statement appears in the script?"
HEURISTIC_EXPLANATION = "Original sentence from the uploaded script."
DECOYS = (
    "This statement does not appear in the script.",
    "None of the other answers is correct.",
    "This statement is made up.",
)

DEFAULT_SENTENCE_LANGUAGE = "de"


@lru_cache(maxsize=None)
def _sentencizer(language: str):
    """A blank spaCy pipeline for `language` with only the rule-based sentencizer.

    The language's tokenizer exceptions keep abbreviations such as "z.B."
    or "Dr." in one token, so their periods do not end a sentence.
    """
    nlp = spacy.blank(language)
    nlp.add_pipe("sentencizer")
    return nlp


def split_sentences(text: str, language: str = DEFAULT_SENTENCE_LANGUAGE) -> List[str]:
    """Split prose into sentences using the locale rules of `language`."""
    if not text or not text.strip():
        return []
    nlp = _sentencizer(language)
    nlp.max_length = max(nlp.max_length, len(text) + 1)
    doc = nlp(text)
    return [sent.text.strip() for sent in doc.sents if sent.text.strip()]


def looks_like_statement(s: str) -> bool:
    if len(s) < MIN_SENTENCE_CHARS:
        return False
    if s.endswith(':'):
        return False
    if len(s.split()) < MIN_SENTENCE_WORDS:
        return False
    lower = s.lower()
    if '©' in s or 'figure' in lower or 'abbildung' in lower:
        return False
    return True


def _truncate(s: str, limit: int = MAX_CHOICE_CHARS) -> str:
    if len(s) <= limit:
        return s
    return s[:limit - 3] + '...'


class HeuristicQuestionGenerator:
    """Build "which sentence is from the script" questions without any model."""

    def __init__(self, rng: Optional[random.Random] = None, default_count: int = 10,
                 language: str = DEFAULT_SENTENCE_LANGUAGE):
        self.rng = rng or random.Random()
        self.default_count = default_count
        self.language = language

    def candidate_sentences(self, text: str) -> List[str]:
        seen = set()
        out = []
        for s in split_sentences(text or '', self.language):
            s = s.strip()
            if s in seen or not looks_like_statement(s):
                continue
            seen.add(s)
            out.append(s)
        return out

    def generate(self, text: str, count: Optional[int] = None) -> List[Candidate]:
        count = max(1, count or self.default_count)
        out = []
        for sentence in self.candidate_sentences(text)[:count]:
            correct = _truncate(sentence)
            choices = [correct, *DECOYS]
            self.rng.shuffle(choices)
            out.append({
                'stem': HEURISTIC_STEM,
                'choices': choices,
                'correct_index': choices.index(correct),
                'explanation': HEURISTIC_EXPLANATION,
            })
        log.debug("heuristic generator produced %s questions (requested %s)", len(out), count)
        return out


# ---------------------------------------------------------------------------
# LLM strategy
# ---------------------------------------------------------------------------

LLM_SYSTEM_PROMPT = """You are a tutor. Write multiple-choice questions about the given course text.
Requirements:
- Answer ONLY with a JSON object that has a "questions" field; no text outside the JSON.
- Each question: { "stem": string, "choices": string[4], "correctIndex": 0-3, "explanation": string? }.
- Write as many questions as the material supports, without duplicates.
- Keep answers short and precise; exactly one choice is correct."""

LLM_USER_PROMPT = """Course text:
---
{text}
---
Return ONLY this JSON:
{{ "questions": [ {{ "stem": "...", "choices": ["...","...","...","..."], "correctIndex": 0, "explanation": "..." }}, ... ] }}"""


def parse_llm_questions(content: str) -> List[Candidate]:
    """Parse the model reply into raw candidate dicts.

    Accepts `{"questions": [...]}` or a bare JSON array.
    """
    try:
        data = json.loads(content)
    except ValueError as e:
        raise GenerationError(f"LLM reply is not valid JSON: {e}") from e
    items = data.get('questions') if isinstance(data, dict) else data
    if not isinstance(items, list) or not items:
        raise GenerationError("LLM reply contained no questions")
    return items


class LlmQuestionGenerator:
    """Delegate question writing to an external chat model.

    The `count` hint is ignored; the model decides how many questions the
    text supports.
    """

    def __init__(self, config: LlmConfig, client: Optional[LlmClient] = None):
        self.config = config
        self.client = client or LlmClient(config)

    def generate(self, text: str, count: Optional[int] = None) -> List[Candidate]:
        clipped = (text or '').strip()[:self.config.clip_chars]
        log.debug("LLM generation request chars=%s", len(clipped))
        content = self.client.chat_json(LLM_SYSTEM_PROMPT, LLM_USER_PROMPT.format(text=clipped))
        items = parse_llm_questions(content)
        log.debug("LLM returned %s raw questions", len(items))
        return items


def build_generator(settings) -> QuestionGenerator:
    """Pick the generator strategy named by `settings.QUESTION_GENERATOR`."""
    if settings.QUESTION_GENERATOR == 'llm':
        return LlmQuestionGenerator(LlmConfig.from_settings(settings))
    return HeuristicQuestionGenerator(
        default_count=settings.GENERATION_DEFAULT_COUNT, language=settings.SENTENCE_LANGUAGE
    )
