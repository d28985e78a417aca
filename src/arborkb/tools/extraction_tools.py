"""
Phase 3 backend: mine normalized text for knowledge-base facts.

The model returns loosely-typed suggestions; validate_suggestions() checks
each against the per-table payload schema and the confidence floor, so
nothing malformed or guessed reaches page_suggestions.
"""
import logging
from dataclasses import dataclass, field
from typing import Protocol

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import PydanticOutputParser
from langchain_core.prompts import ChatPromptTemplate
from pydantic import ValidationError

from arborkb.config import settings
from arborkb.errors import BackendError
from arborkb.models.page_suggestion import SuggestionType
from arborkb.states.state import ExtractedSuggestions, RawSuggestion, suggestion_payload_adapter
from arborkb.tools.chat_models import get_chat_model

logger = logging.getLogger(__name__)

TARGET_TABLE_TYPES = {
    "species"            : SuggestionType.SPECIES,
    "defects"            : SuggestionType.DEFECT,
    "fungi"              : SuggestionType.FUNGUS,
    "mitigations"        : SuggestionType.MITIGATION,
    "species_growth"     : SuggestionType.FEATURE,
    "species_site_traits": SuggestionType.FEATURE,
}

_parser = PydanticOutputParser(pydantic_object=ExtractedSuggestions)

_EXTRACT_PROMPT = ChatPromptTemplate.from_messages([
    ("system",
     "You are an expert in forestry, arboriculture and botanical data extraction. "
     "Extract structured facts that can populate a tree knowledge base.\n\n"
     "TARGET TABLES (target_table: fields):\n"
     "- species: scientific_name, common_names[], family, genus, regions[]\n"
     "- defects: name, category, field_indicators[], development, mechanics_effect\n"
     "- fungi: scientific_name, common_names[], decay, colonization[], typical_tissue[]\n"
     "- species_growth: species_scientific_name, mature_height_m, mature_spread_m, growth_rate, lifespan_years\n"
     "- species_site_traits: species_scientific_name, pollution_tolerance, drought_tolerance, "
     "shade_tolerance (1-5 scale)\n"
     "- mitigations: action, mtype, defect_name, species_scientific_name, conditions, timing, follow_up\n\n"
     "RULES:\n"
     "- Only extract data explicitly stated in the text. Never guess.\n"
     "- Convert measurements to metres, years and 1-5 scales.\n"
     "- Emit one suggestion per table row the text supports.\n"
     "- confidence_score: 0.9-1.0 explicit complete data; 0.7-0.89 clear with minor gaps; "
     "0.5-0.69 partial or interpreted; below 0.5 do not suggest at all.\n"
     "- rationale: quote or paraphrase the supporting sentence.\n"
     "- Return an empty suggestions list when nothing qualifies.\n\n"
     "{format_instructions}"),
    ("human", "Extract structured data from this text:\n\n{content}"),
])


class StructuredExtractor(Protocol):
    def extract(self, content: str) -> list[RawSuggestion]: ...


class LLMStructuredExtractor:
    def extract(self, content: str) -> list[RawSuggestion]:
        llm = get_chat_model(settings.extraction_model, max_tokens=settings.vision_max_tokens)
        chain = _EXTRACT_PROMPT | llm | _parser
        try:
            result: ExtractedSuggestions = chain.invoke({
                "format_instructions": _parser.get_format_instructions(),
                "content": content,
            })
        except OutputParserException as e:
            raise BackendError(f"Extraction backend returned malformed output: {e}") from e
        except Exception as e:
            raise BackendError(f"Extraction backend error: {e}") from e
        logger.info("Extraction model proposed %d suggestions", len(result.suggestions))
        return result.suggestions


# ── Boundary validation ───────────────────────────────────────────────────────

@dataclass
class ValidatedSuggestion:
    target_table: str
    suggestion_type: SuggestionType
    suggested_data: dict
    confidence_score: float
    rationale: str


@dataclass
class ValidationOutcome:
    accepted: list[ValidatedSuggestion] = field(default_factory=list)
    below_floor: int = 0
    malformed: int = 0


def confidence_band(score: float) -> str:
    if score >= 0.9:
        return "explicit"
    if score >= 0.7:
        return "clear"
    if score >= 0.5:
        return "partial"
    return "insufficient"


def validate_suggestions(raw: list[RawSuggestion], min_confidence: float) -> ValidationOutcome:
    outcome = ValidationOutcome()
    for suggestion in raw:
        if not 0.0 <= suggestion.confidence_score <= 1.0:
            logger.warning("Dropping %s suggestion with confidence %.3f out of range",
                           suggestion.target_table, suggestion.confidence_score)
            outcome.malformed += 1
            continue
        if suggestion.confidence_score < min_confidence:
            outcome.below_floor += 1
            continue
        try:
            payload = suggestion_payload_adapter.validate_python({
                "target_table"  : suggestion.target_table,
                "suggested_data": suggestion.suggested_data,
            })
        except ValidationError as e:
            logger.warning("Dropping malformed %s suggestion: %s", suggestion.target_table, e.errors()[:3])
            outcome.malformed += 1
            continue
        outcome.accepted.append(ValidatedSuggestion(
            target_table     = payload.target_table,
            suggestion_type  = TARGET_TABLE_TYPES[payload.target_table],
            suggested_data   = payload.suggested_data.model_dump(exclude_none=True),
            confidence_score = suggestion.confidence_score,
            rationale        = suggestion.rationale,
        ))
    return outcome
