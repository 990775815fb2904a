"""Domain configuration and the keyword heuristic that gates off-topic questions."""
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict
import logging

logger = logging.getLogger(__name__)

# Share of a domain's keywords a question must hit, scaled so one match in a
# short keyword list is already enough.
KEYWORD_SCALE = 0.1
CONFIDENCE_THRESHOLD = 0.1

GENERAL_INSTRUCTIONS = "You are a helpful assistant that can answer questions and help with tasks."


class DomainConfig(BaseModel):
    """Static description of a restricted subject-matter domain."""
    model_config = ConfigDict(frozen=True)

    name: str
    keywords: List[str]
    description: str
    restrictive: bool
    instructions: str


class DomainValidation(BaseModel):
    """Outcome of checking a question against a domain."""
    is_valid: bool
    confidence: float
    suggestion: Optional[str] = None


DOMAIN_CONFIGS: Dict[str, DomainConfig] = {
    "legal": DomainConfig(
        name="Legal",
        keywords=[
            "law", "legal", "court", "attorney", "lawyer", "contract", "lawsuit", "regulation",
            "statute", "litigation", "compliance", "constitutional", "criminal", "civil law",
            "intellectual property", "patent", "trademark", "copyright", "privacy law",
            "employment law", "business law", "tax law", "immigration law", "family law",
            "jurisdiction", "precedent", "defendant", "plaintiff", "evidence", "testimony",
            "subpoena", "deposition", "arbitration", "mediation", "settlement", "verdict",
        ],
        description="Legal advice, law, regulations, and legal procedures",
        restrictive=True,
        instructions=(
            "You are specialized in legal advice and information. Provide accurate, professional "
            "legal guidance while noting that this is not a substitute for professional legal counsel."
        ),
    ),
    "civil_engineering": DomainConfig(
        name="Civil Engineering",
        keywords=[
            "construction", "engineering", "structural", "building", "infrastructure", "concrete",
            "steel", "foundation", "bridge", "road", "highway", "drainage", "geotechnical",
            "surveying", "CAD", "blueprint", "building code", "construction management",
            "project management", "materials", "soil", "earthquake", "seismic", "load",
            "beam", "column", "truss", "excavation", "grading", "utilities", "stormwater",
        ],
        description="Civil engineering, construction, structural design, and infrastructure",
        restrictive=True,
        instructions=(
            "You are specialized in civil engineering and construction. Provide technical guidance "
            "on construction, engineering principles, and building practices."
        ),
    ),
    "real_estate": DomainConfig(
        name="Real Estate",
        keywords=[
            "property", "real estate", "house", "home", "apartment", "commercial property",
            "residential", "mortgage", "loan", "appraisal", "listing", "buying", "selling",
            "rental", "lease", "landlord", "tenant", "property management", "investment",
            "market analysis", "zoning", "property tax", "escrow", "closing", "MLS",
            "realtor", "broker", "commission", "equity", "refinance", "foreclosure",
        ],
        description="Real estate, property markets, buying/selling, and property management",
        restrictive=True,
        instructions=(
            "You are specialized in real estate and property guidance. Provide insights on property "
            "markets, real estate transactions, and property management."
        ),
    ),
}


def get_domain_config(domain: Optional[str]) -> Optional[DomainConfig]:
    if not domain:
        return None
    return DOMAIN_CONFIGS.get(domain)


def get_domain_instructions(domain: Optional[str]) -> str:
    """Instruction block for the system prompt; unknown domains get the general assistant text."""
    config = get_domain_config(domain)
    return config.instructions if config else GENERAL_INSTRUCTIONS


def validate_question_for_domain(question: str, domain: Optional[str]) -> DomainValidation:
    """
    Decide whether a question plausibly belongs to a domain.

    Confidence is the number of configured keywords found in the question
    (case-insensitive substring match) divided by max(keyword_count * 0.1, 1).
    Non-restrictive and unknown domains accept every question.
    """
    config = get_domain_config(domain)
    if config is None or not config.restrictive:
        return DomainValidation(is_valid=True, confidence=1.0)

    question_lower = question.lower()
    matched = [keyword for keyword in config.keywords if keyword.lower() in question_lower]
    confidence = len(matched) / max(len(config.keywords) * KEYWORD_SCALE, 1)

    if confidence <= CONFIDENCE_THRESHOLD:
        logger.info(f"Question rejected for domain {domain} (confidence={confidence:.3f})")
        return DomainValidation(
            is_valid=False,
            confidence=confidence,
            suggestion=(
                f"This question appears to be outside the {config.name} domain. Please switch to the "
                "appropriate domain or use the general assistant for questions about other topics."
            ),
        )

    return DomainValidation(is_valid=True, confidence=confidence)


def get_custom_instructions_for_domain(domain: Optional[str]) -> str:
    """Default custom instructions seeded when a user switches domain."""
    config = get_domain_config(domain)
    if config is None:
        return ""
    return (
        f"Focus exclusively on {config.description}. Politely decline questions outside this domain "
        "and redirect users to the appropriate specialist or general assistant."
    )
