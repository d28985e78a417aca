"""
Phase 2 backend: language detection + translation to the target language.
The model is told to keep binomials, units and measurements verbatim;
find_unpreserved_terms() spot-checks that it did.
"""
import logging
import re
from typing import Protocol

from langchain_core.prompts import ChatPromptTemplate

from arborkb.config import settings
from arborkb.errors import BackendError
from arborkb.states.state import TranslationResult
from arborkb.tools.chat_models import get_chat_model
from arborkb.tools.ocr_tools import LANGUAGE_FUNCTION_WORDS

logger = logging.getLogger(__name__)

_TRANSLATE_PROMPT = ChatPromptTemplate.from_messages([
    ("system",
     "You are a language detection and translation expert specialising in forestry, "
     "arboriculture and botanical content. Detect the language of the text. "
     "If it is not in {target_language}, translate it to {target_language}; otherwise return it unchanged. "
     "Preserve EXACTLY as written: scientific names (Latin binomials), units, measurements, "
     "numbers, ratings and the structure of lists and paragraphs. "
     "Keep '[FIGURE REMOVED]' markers in place. "
     "Report confidence between 0 and 1."),
    ("human", "TEXT:\n{content}"),
])

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")
_BINOMIAL_RE = re.compile(r"\b([A-Z][a-z]{2,}) ([a-z]{3,})\b")
_LATIN_EPITHET_SUFFIXES = (
    "us", "um", "is", "ii", "ae", "ensis", "oides", "ica", "ata", "ana", "ina",
    "ea", "ens", "or", "ur", "ix", "ax", "ides", "iana", "ella",
)
_NOT_A_GENUS = {w.capitalize() for vocab in LANGUAGE_FUNCTION_WORDS.values() for w in vocab}


class Translator(Protocol):
    def translate(self, content: str) -> TranslationResult: ...


class LLMTranslator:
    def translate(self, content: str) -> TranslationResult:
        structured_llm = get_chat_model(settings.translation_model).with_structured_output(TranslationResult)
        try:
            result = structured_llm.invoke(
                _TRANSLATE_PROMPT.format_messages(target_language=settings.target_language, content=content)
            )
        except Exception as e:
            raise BackendError(f"Translation backend error: {e}") from e
        if result is None or not result.translated_content:
            raise BackendError("Translation backend returned an incomplete response")
        return result


def find_unpreserved_terms(source: str, translated: str) -> list[str]:
    """Numbers and Latin binomials present in the source but missing from the translation."""
    missing = []
    for number in dict.fromkeys(_NUMBER_RE.findall(source)):
        if number not in translated:
            missing.append(number)
    for genus, epithet in dict.fromkeys(_BINOMIAL_RE.findall(source)):
        if genus in _NOT_A_GENUS or not epithet.endswith(_LATIN_EPITHET_SUFFIXES):
            continue
        name = f"{genus} {epithet}"
        if name not in translated:
            missing.append(name)
    return missing
