import pytest

from services.domain import (
    CONFIDENCE_THRESHOLD,
    DOMAIN_CONFIGS,
    get_custom_instructions_for_domain,
    get_domain_instructions,
    GENERAL_INSTRUCTIONS,
    validate_question_for_domain,
)


def test_patent_question_is_legal():
    result = validate_question_for_domain("What is the process to file a patent?", "legal")
    assert result.is_valid
    assert result.confidence > 0
    assert result.suggestion is None


def test_pasta_question_is_rejected_for_legal():
    result = validate_question_for_domain("What's a good recipe for pasta?", "legal")
    assert not result.is_valid
    assert result.confidence == 0
    assert "Legal" in result.suggestion


def test_unknown_and_missing_domains_accept_everything():
    for domain in (None, "", "astrology"):
        result = validate_question_for_domain("What's a good recipe for pasta?", domain)
        assert result.is_valid
        assert result.confidence == 1.0


def test_matching_is_case_insensitive():
    result = validate_question_for_domain("Can my LANDLORD raise the RENT?", "real_estate")
    assert result.is_valid


@pytest.mark.parametrize("domain", sorted(DOMAIN_CONFIGS))
def test_confidence_grows_with_matches_and_agrees_with_validity(domain):
    keywords = DOMAIN_CONFIGS[domain].keywords
    previous = -1.0
    for count in range(len(keywords) + 1):
        question = "question about " + " and ".join(keywords[:count])
        result = validate_question_for_domain(question, domain)
        assert result.confidence >= previous
        assert result.is_valid == (result.confidence > CONFIDENCE_THRESHOLD)
        previous = result.confidence


def test_domain_instructions_fall_back_to_general():
    assert get_domain_instructions("legal") == DOMAIN_CONFIGS["legal"].instructions
    assert get_domain_instructions("unknown") == GENERAL_INSTRUCTIONS
    assert get_domain_instructions(None) == GENERAL_INSTRUCTIONS


def test_custom_instructions_for_domain():
    assert "real estate" in get_custom_instructions_for_domain("real_estate").lower()
    assert get_custom_instructions_for_domain("unknown") == ""
