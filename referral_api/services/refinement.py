"""
Prompt refinement suggestions for vague referral searches
"""
import re
from typing import Dict, List, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

UNIVERSAL = "*"


class RefinementSuggestion(BaseModel):
    """Static catalogue entry; immutable reference data"""
    model_config = ConfigDict(frozen=True)

    id: str
    icon: str
    label: str
    value: str
    category: Tuple[str, ...]

    @property
    def is_universal(self) -> bool:
        return UNIVERSAL in self.category


def _s(id: str, icon: str, label: str, value: str, *category: str) -> RefinementSuggestion:
    return RefinementSuggestion(id=id, icon=icon, label=label, value=value, category=category)


REFINEMENT_SUGGESTIONS: Tuple[RefinementSuggestion, ...] = (
    # Shown for every search
    _s("low-income", "💰", "Low income", "for low-income individual or family", UNIVERSAL),
    _s("family", "👨‍👩‍👧‍👦", "Family with kids", "for family with children", UNIVERSAL),
    _s("emergency", "⚡", "Emergency", "with emergency or immediate need", UNIVERSAL),
    # Food
    _s("snap", "🍽️", "SNAP eligible", "eligible for SNAP/food stamps", "food", "nutrition"),
    _s("senior-meals", "🧓", "Senior (60+)", "for senior citizen age 60 or older", "food", "nutrition", "healthcare"),
    _s("no-transport", "🚗", "No transport", "with no transportation", "food", "nutrition", "healthcare"),
    # Housing
    _s("homeless", "🏠", "Homeless", "experiencing homelessness", "housing", "shelter"),
    _s("eviction", "⚠️", "Eviction risk", "at risk of eviction", "housing"),
    _s("veteran", "🎖️", "Veteran", "who is a military veteran", "housing", "healthcare", "employment"),
    # Employment
    _s("no-hs", "🎓", "No diploma", "without high school diploma or GED", "employment", "job", "training", "work"),
    _s("limited-english", "🌍", "Limited English", "with limited English proficiency",
       "employment", "job", "training", "education", "work"),
    _s("criminal-record", "📋", "Criminal record", "with criminal background or returning citizen",
       "employment", "job", "work"),
    # Healthcare
    _s("uninsured", "🏥", "No insurance", "who is uninsured or has no health insurance", "healthcare", "health", "medical"),
    _s("mental-health", "🧠", "Mental health", "with mental health needs", "healthcare", "health"),
    _s("disability", "♿", "Disability", "with disability or special needs", "healthcare", "health", "housing", "employment"),
    # Education
    _s("ged", "📚", "Need GED", "seeking GED or high school equivalency", "education", "training"),
    # Transportation
    _s("rural", "🌾", "Rural area", "living in rural area", "transportation", "food", "healthcare"),
    # Age
    _s("youth", "👦", "Youth (under 18)", "for youth under 18", "education", "food", "healthcare"),
)

CONTEXT_INDICATORS = (
    "family", "income", "emergency", "homeless", "children", "senior",
    "veteran", "disability", "uninsured", "criminal", "immigrant",
    "single", "mother", "father", "parent", "student", "college",
    "pregnant", "elderly", "youth", "teen", "low-income", "disabled",
)

SINGLE_WORD_CATEGORIES = frozenset({
    "food", "housing", "job", "jobs", "work", "health", "healthcare",
    "shelter", "rent", "employment", "training", "education", "transportation",
    "clothes", "clothing", "medical", "dental", "mental", "counseling",
})

LOCATION_ONLY = re.compile(r"^(food|housing|job|jobs|health|healthcare|shelter)\s+(in\s+)?[a-z\s]+$", re.IGNORECASE)

CATEGORY_PATTERNS: Dict[str, re.Pattern] = {
    "food": re.compile(r"\b(food|meal|pantry|hunger|eat|nutrition|snap|grocery|groceries|feed|feeding)\b", re.IGNORECASE),
    "housing": re.compile(r"\b(housing|shelter|homeless|apartment|rent|eviction|home|lease)\b", re.IGNORECASE),
    "employment": re.compile(r"\b(job|jobs|work|employment|career|resume|interview|hiring|position|opportunity)\b", re.IGNORECASE),
    "training": re.compile(r"\b(training|class|classes|course|learn|skill|certification|certificate)\b", re.IGNORECASE),
    "healthcare": re.compile(r"\b(health|medical|doctor|clinic|hospital|medicine|insurance|mental|dental|therapy)\b", re.IGNORECASE),
    "education": re.compile(r"\b(education|school|ged|diploma|college|university|tutor|literacy)\b", re.IGNORECASE),
    "transportation": re.compile(r"\b(transportation|transport|bus|ride|travel|commute|transit)\b", re.IGNORECASE),
}


def is_prompt_vague(prompt) -> bool:
    """Heuristic: short prompts without any client context are vague"""
    if not prompt or not isinstance(prompt, str):
        return False

    trimmed = prompt.strip()
    words = trimmed.split()
    word_count = len(words)

    if word_count <= 2:
        return True

    if word_count <= 4:
        lower = trimmed.lower()
        if not any(indicator in lower for indicator in CONTEXT_INDICATORS):
            return True

    if word_count == 1 and trimmed.lower() in SINGLE_WORD_CATEGORIES:
        return True

    if LOCATION_ONLY.match(trimmed) and word_count <= 4:
        return True

    return False


def detect_search_category(prompt: str) -> List[str]:
    """Categories mentioned in the prompt, always ending with the universal one"""
    categories = [name for name, pattern in CATEGORY_PATTERNS.items() if pattern.search(prompt or "")]
    categories.append(UNIVERSAL)
    return categories


def get_suggestions_for_search(prompt: str, max_suggestions: int = 8) -> List[RefinementSuggestion]:
    """Universal suggestions first, then those matching detected categories"""
    categories = set(detect_search_category(prompt))
    matching = [
        s for s in REFINEMENT_SUGGESTIONS
        if s.is_universal or any(cat in categories for cat in s.category)
    ]
    universal = [s for s in matching if s.is_universal]
    specific = [s for s in matching if not s.is_universal]
    return (universal + specific)[:max_suggestions]


def build_refined_prompt(original_prompt: str, manual_input: str, selected: Sequence[RefinementSuggestion]) -> str:
    """
    Manual input replaces the original prompt; chips alone extend it.
    """
    suggestion_text = ", ".join(s.value for s in selected)

    if manual_input.strip():
        parts = [manual_input.strip()]
        if suggestion_text:
            parts.append(suggestion_text)
        return " ".join(parts)

    if suggestion_text:
        return f"{original_prompt.strip()} {suggestion_text}"

    return original_prompt.strip()
