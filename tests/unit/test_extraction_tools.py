from arborkb.models.page_suggestion import SuggestionType
from arborkb.states.state import RawSuggestion
from arborkb.tools.extraction_tools import confidence_band, validate_suggestions
from arborkb.tools.translation_tools import find_unpreserved_terms


def _raw(table: str, data: dict, score: float) -> RawSuggestion:
    return RawSuggestion(target_table=table, suggested_data=data, confidence_score=score, rationale="stated")


def test_suggestions_below_floor_are_dropped() -> None:
    outcome = validate_suggestions(
        [
            _raw("species", {"scientific_name": "Quercus robur"}, 0.9),
            _raw("species", {"scientific_name": "Fagus sylvatica"}, 0.49),
        ],
        min_confidence=0.5,
    )

    assert [s.suggested_data["scientific_name"] for s in outcome.accepted] == ["Quercus robur"]
    assert outcome.below_floor == 1
    assert outcome.malformed == 0


def test_payloads_are_checked_per_target_table() -> None:
    outcome = validate_suggestions(
        [
            _raw("species_site_traits", {"species_scientific_name": "Tilia cordata", "drought_tolerance": 9}, 0.8),
            _raw("defects", {"category": "no name given"}, 0.8),
            _raw("planets", {"name": "Mars"}, 0.8),
            _raw("fungi", {"scientific_name": "Ganoderma applanatum", "decay": "white rot"}, 1.3),
            _raw("mitigations", {"action": "Crown reduction", "timing": "late winter"}, 0.7),
        ],
        min_confidence=0.5,
    )

    assert outcome.malformed == 4
    assert len(outcome.accepted) == 1
    accepted = outcome.accepted[0]
    assert accepted.suggestion_type == SuggestionType.MITIGATION
    assert accepted.suggested_data == {"action": "Crown reduction", "timing": "late winter"}


def test_growth_and_site_traits_map_to_feature() -> None:
    outcome = validate_suggestions(
        [
            _raw("species_growth", {"species_scientific_name": "Quercus robur", "mature_height_m": 35}, 0.9),
            _raw("species_site_traits", {"species_scientific_name": "Quercus robur", "shade_tolerance": 2}, 0.6),
        ],
        min_confidence=0.5,
    )

    assert {s.suggestion_type for s in outcome.accepted} == {SuggestionType.FEATURE}


def test_confidence_bands() -> None:
    assert confidence_band(0.95) == "explicit"
    assert confidence_band(0.75) == "clear"
    assert confidence_band(0.5) == "partial"
    assert confidence_band(0.2) == "insufficient"


def test_unpreserved_terms_lists_missing_numbers_and_binomials() -> None:
    source = "Quercus robur kan bli 35 meter hög och leva i 500 år. Det är en bra art."
    translated = "Quercus robur can grow 35 metres tall and live for centuries. It is a good species."

    assert find_unpreserved_terms(source, translated) == ["500"]
    assert find_unpreserved_terms(source, source) == []


def test_unpreserved_terms_ignores_sentence_starts_that_are_not_genera() -> None:
    source = "Det finns Fistulina hepatica här."
    assert find_unpreserved_terms(source, "Here is Fistulina hepatica.") == []
    assert find_unpreserved_terms(source, "Here is beefsteak fungus.") == ["Fistulina hepatica"]
