from typing import TypedDict, Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter


# ── Pydantic schemas for structured LLM outputs ──────────────────────────────

class ExtractedFigure(BaseModel):
    """One [FIGURES FOUND] block the recognizer reported for a page."""
    type: str = "unknown"
    description: str = ""
    caption: Optional[str] = None
    scientific_content: Optional[str] = None
    location: Optional[str] = None


class TranslationResult(BaseModel):
    """Structured output of the translation call."""
    translated_content: str = Field(..., description="The full text translated to the target language")
    detected_language: str = Field(..., description="ISO 639-1 code of the source text, e.g. 'sv'")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Translation confidence 0-1")


class RawSuggestion(BaseModel):
    """A suggestion as the extraction model emits it, before per-table validation."""
    target_table: str = Field(..., description="species | defects | fungi | species_growth | species_site_traits | mitigations")
    suggested_data: dict = Field(..., description="Fields for the target table, only those stated in the text")
    confidence_score: float = Field(..., description="0.9-1.0 explicit, 0.7-0.89 clear, 0.5-0.69 partial")
    rationale: str = Field("", description="Which sentence supports the suggestion")


class ExtractedSuggestions(BaseModel):
    suggestions: list[RawSuggestion] = Field(
        default_factory=list,
        description="Empty when the text states no extractable facts. Never guess.",
    )


# ── Per-table payloads ────────────────────────────────────────────────────────

class SpeciesData(BaseModel):
    scientific_name: str = Field(..., min_length=3)
    common_names: list[str] = Field(default_factory=list)
    family: Optional[str] = None
    genus: Optional[str] = None
    regions: list[str] = Field(default_factory=list)


class DefectData(BaseModel):
    name: str = Field(..., min_length=2)
    category: Optional[str] = None
    field_indicators: list[str] = Field(default_factory=list)
    development: Optional[str] = None
    mechanics_effect: Optional[str] = None


class FungusData(BaseModel):
    scientific_name: str = Field(..., min_length=3)
    common_names: list[str] = Field(default_factory=list)
    decay: Optional[str] = None
    colonization: list[str] = Field(default_factory=list)
    typical_tissue: list[str] = Field(default_factory=list)


class SpeciesGrowthData(BaseModel):
    species_scientific_name: str
    mature_height_m: Optional[float] = Field(None, ge=0)
    mature_spread_m: Optional[float] = Field(None, ge=0)
    growth_rate: Optional[str] = None
    lifespan_years: Optional[int] = Field(None, ge=0)


class SpeciesSiteTraitsData(BaseModel):
    species_scientific_name: str
    pollution_tolerance: Optional[int] = Field(None, ge=1, le=5)
    drought_tolerance: Optional[int] = Field(None, ge=1, le=5)
    shade_tolerance: Optional[int] = Field(None, ge=1, le=5)


class MitigationData(BaseModel):
    action: str = Field(..., min_length=3)
    mtype: Optional[str] = None
    defect_name: Optional[str] = None
    species_scientific_name: Optional[str] = None
    conditions: Optional[str] = None
    timing: Optional[str] = None
    follow_up: Optional[str] = None


class SpeciesPayload(BaseModel):
    target_table: Literal["species"]
    suggested_data: SpeciesData


class DefectPayload(BaseModel):
    target_table: Literal["defects"]
    suggested_data: DefectData


class FungusPayload(BaseModel):
    target_table: Literal["fungi"]
    suggested_data: FungusData


class SpeciesGrowthPayload(BaseModel):
    target_table: Literal["species_growth"]
    suggested_data: SpeciesGrowthData


class SpeciesSiteTraitsPayload(BaseModel):
    target_table: Literal["species_site_traits"]
    suggested_data: SpeciesSiteTraitsData


class MitigationPayload(BaseModel):
    target_table: Literal["mitigations"]
    suggested_data: MitigationData


SuggestionPayload = Annotated[
    Union[
        SpeciesPayload,
        DefectPayload,
        FungusPayload,
        SpeciesGrowthPayload,
        SpeciesSiteTraitsPayload,
        MitigationPayload,
    ],
    Field(discriminator="target_table"),
]

suggestion_payload_adapter = TypeAdapter(SuggestionPayload)


# ── LangGraph State definitions ───────────────────────────────────────────────

class PageState(TypedDict, total=False):
    """State for one claimed page moving through the three stages."""
    page_id: int
    attempt: int
    batch_id: int
    source_id: str
    source_page: int
    image_uri: Optional[str]
    resume_from: str                            # extraction | translation | structured_extraction
    chunk_id: Optional[int]
    detected_language: Optional[str]
    suggestions_created: int
    completed_stage: Optional[str]              # last stage that committed for this run
    error: Optional[dict]                       # {stage, type, message}
    stale: bool
