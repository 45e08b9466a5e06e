"""Keyword and pattern heuristics that classify request text.

All functions here are pure: no I/O, no shared state, same input gives
the same output.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

from llm_dispatch.models import ComplexityTier, Specialization

# Expected tokens per request, by tier
TOKEN_ESTIMATES: dict[ComplexityTier, int] = {
    ComplexityTier.CASUAL: 500,
    ComplexityTier.SIMPLE: 1500,
    ComplexityTier.MEDIUM: 3000,
    ComplexityTier.COMPLEX: 6000,
    ComplexityTier.EXPERT: 15000,
}

CODE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"```"),
    re.compile(r"`[^`\n]+`"),
    re.compile(r"\b(def|function|func|fn)\s+\w+\s*\("),
    re.compile(r"\b(const|let|var)\s+\w+\s*="),
    re.compile(r"\bclass\s+\w+\s*(\(|:|\{|extends|implements)"),
    re.compile(r"^\s*from\s+[\w.]+\s+import\s+\w|\bimport\s+.+\s+from\s+['\"]", re.MULTILINE),
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE)\s+.+\s+(FROM|INTO|SET)\b", re.IGNORECASE),
    re.compile(r"\b(CREATE|ALTER|DROP)\s+(TABLE|INDEX|DATABASE)\b", re.IGNORECASE),
    re.compile(r"\.(map|filter|reduce|forEach)\s*\("),
    re.compile(r"=>|->|::|!==|==="),
]

TECHNICAL_KEYWORDS: list[str] = [
    "algorithm",
    "api",
    "architecture",
    "authentication",
    "backend",
    "database",
    "debug",
    "deployment",
    "docker",
    "encryption",
    "framework",
    "frontend",
    "function",
    "javascript",
    "kubernetes",
    "latency",
    "optimization",
    "python",
    "schema",
    "sql",
    "typescript",
]

ANALYTICAL_KEYWORDS: list[str] = [
    "analyze",
    "analyse",
    "compare",
    "evaluate",
    "assess",
    "trade-off",
    "tradeoff",
    "pros and cons",
    "strategy",
    "in-depth",
    "step by step",
    "comprehensive",
    "explain in detail",
    "implications",
]

HIGH_STAKES_PATTERNS: list[re.Pattern[str]] = [
    # Legal
    re.compile(r"\b(contract|agreement|legal|lawsuit|liability|compliance)\b", re.IGNORECASE),
    re.compile(r"\b(terms\s*(and|&)\s*conditions|privacy\s*policy|nda|sla)\b", re.IGNORECASE),
    re.compile(r"\b(court|judge|lawyer|attorney|litigation|arbitration)\b", re.IGNORECASE),
    # Financial
    re.compile(r"\b(investment|tax|audit|financial\s*statement|balance\s*sheet)\b", re.IGNORECASE),
    re.compile(r"\b(revenue|profit|forecast|valuation|funding)\b", re.IGNORECASE),
    re.compile(r"₹\s*\d{5,}|\$\s*\d{4,}|€\s*\d{4,}"),
    re.compile(r"\b(crore|lakh|million|billion)\b", re.IGNORECASE),
    # Medical
    re.compile(r"\b(diagnos\w*|medical|symptoms?|treatment|prescription|dosage)\b", re.IGNORECASE),
    re.compile(r"\b(disease|medication|surgery|therapy|doctor|patient|hospital)\b", re.IGNORECASE),
    # Business critical
    re.compile(r"\b(pitch\s*deck|investor|acquisition|merger|ipo)\b", re.IGNORECASE),
    re.compile(r"\b(board\s*meeting|shareholder|stakeholder|confidential|proprietary)\b", re.IGNORECASE),
    # Security
    re.compile(r"\b(password|vulnerability|breach|api\s*key|oauth|jwt|firewall)\b", re.IGNORECASE),
]

# Checked in order; first family with a hit wins
SPECIALIZATION_PATTERNS: list[tuple[Specialization, list[re.Pattern[str]]]] = [
    (
        Specialization.CODE,
        [
            re.compile(r"```"),
            re.compile(r"\b(code|bug|error|debug|function|api|database|query|schema)\b"),
            re.compile(r"\b(typescript|javascript|python|react|node|sql|rust|golang|java)\b"),
            re.compile(r"\b(npm|pip|git|docker|aws|gcp|azure|deploy|server)\b"),
            re.compile(r"\b(frontend|backend|fullstack|devops)\b"),
        ],
    ),
    (
        Specialization.BUSINESS,
        [
            re.compile(r"\b(pitch|investor|startup|revenue|margin|roi|kpi|okr)\b"),
            re.compile(r"\b(marketing|sales|customer|product|growth)\b"),
            re.compile(r"\b(pricing|competition|market|business|company|enterprise)\b"),
            re.compile(r"\b(spreadsheet|presentation|dashboard|b2b|b2c|saas|churn)\b"),
        ],
    ),
    (
        Specialization.WRITING,
        [
            re.compile(r"\b(write|draft|compose|essay|article|blog|story|poem)\b"),
            re.compile(r"\b(email|letter|caption|script|headline|copy)\b"),
            re.compile(r"\b(proofread|edit|rewrite|rephrase|paraphrase|summarize)\b"),
            re.compile(r"\b(tone|formal|professional)\b"),
        ],
    ),
    (
        Specialization.REASONING,
        [
            re.compile(r"\b(why|explain|analy[sz]e|compare|evaluate|argue)\b"),
            re.compile(r"\b(logic|reason|argument|conclusion|evidence|proof)\b"),
            re.compile(r"\b(pros\s*(and|&)\s*cons|trade-?offs?|decide|choose)\b"),
            re.compile(r"\b(philosophy|ethics|morality|principle|theory)\b"),
        ],
    ),
]

_KEYWORD_CACHE: dict[tuple[str, ...], re.Pattern[str]] = {}


def _keyword_pattern(keywords: list[str]) -> re.Pattern[str]:
    """Compile a word-boundary alternation for a keyword list, once."""
    key = tuple(keywords)
    pattern = _KEYWORD_CACHE.get(key)
    if pattern is None:
        alternation = "|".join(re.escape(kw) for kw in keywords)
        pattern = re.compile(rf"\b({alternation})\b", re.IGNORECASE)
        _KEYWORD_CACHE[key] = pattern
    return pattern


class TextFeatures(BaseModel):
    """Surface features the classifier rules are expressed in."""

    model_config = ConfigDict(frozen=True)

    word_count: int
    has_code: bool
    has_technical: bool
    has_analytical: bool
    ends_with_question: bool


def extract_features(text: str) -> TextFeatures:
    """Compute the surface features of a request text.

    Args:
        text: Raw request text.

    Returns:
        TextFeatures for the text.
    """
    stripped = text.strip()
    return TextFeatures(
        word_count=len(stripped.split()),
        has_code=any(pattern.search(stripped) for pattern in CODE_PATTERNS),
        has_technical=_keyword_pattern(TECHNICAL_KEYWORDS).search(stripped) is not None,
        has_analytical=_keyword_pattern(ANALYTICAL_KEYWORDS).search(stripped) is not None,
        ends_with_question=stripped.endswith("?"),
    )


def classify_complexity(text: str) -> ComplexityTier:
    """Map request text to a complexity tier.

    Rules are checked in priority order and the first match wins:

    1. At most 5 words and no code or analysis markers: CASUAL.
    2. Code-like syntax, technical vocabulary and more than 100 words: EXPERT.
    3. Code-like or analytical, more than 80 words: COMPLEX.
    4. Code-like or analytical, more than 20 words: MEDIUM.
    5. At most 20 words, or ends with a question mark: SIMPLE.
    6. Otherwise: MEDIUM.

    Args:
        text: Raw request text.

    Returns:
        The complexity tier. Never raises.
    """
    features = extract_features(text)
    words = features.word_count
    marked = features.has_code or features.has_analytical

    if words <= 5 and not marked:
        return ComplexityTier.CASUAL
    if features.has_code and features.has_technical and words > 100:
        return ComplexityTier.EXPERT
    if marked and words > 80:
        return ComplexityTier.COMPLEX
    if marked and words > 20:
        return ComplexityTier.MEDIUM
    if words <= 20 or features.ends_with_question:
        return ComplexityTier.SIMPLE
    return ComplexityTier.MEDIUM


def detect_high_stakes(text: str) -> bool:
    """Whether the text touches legal, financial, medical, security or deal topics."""
    return any(pattern.search(text) for pattern in HIGH_STAKES_PATTERNS)


def detect_specialization(text: str) -> Optional[Specialization]:
    """Detect the domain a request leans toward.

    Args:
        text: Raw request text.

    Returns:
        The first matching specialization (code, business, writing,
        reasoning, in that order), or None.
    """
    lowered = text.lower()
    for specialization, patterns in SPECIALIZATION_PATTERNS:
        if any(pattern.search(lowered) for pattern in patterns):
            return specialization
    return None


def estimate_tokens(tier: ComplexityTier) -> int:
    """Expected token consumption for a request of the given tier."""
    return TOKEN_ESTIMATES[tier]
