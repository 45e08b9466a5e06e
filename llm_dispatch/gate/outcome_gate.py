"""Pre-dispatch gate: decide whether a request reaches a provider at all."""

import logging
import re
from typing import Optional

from llm_dispatch.models import (
    Language,
    OutcomeDecision,
    OutcomeResult,
    PlanTier,
    UserBudgetState,
)
from llm_dispatch.policy.overrides import PolicyOverrideLayer
from llm_dispatch.routing.pressure import usage_ratio

logger = logging.getLogger(__name__)

ILLEGAL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"how\s+to\s+(make|create|build)\s+(a\s+)?(bomb|explosive|weapon)", re.IGNORECASE),
    re.compile(r"how\s+to\s+(hack|breach|break\s+into)", re.IGNORECASE),
    re.compile(r"how\s+to\s+(steal|forge|counterfeit)", re.IGNORECASE),
]

PRIVACY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"give\s+me\s+(someone's|his|her)\s+(address|phone|ssn|password)", re.IGNORECASE),
    re.compile(r"dox(x)?ing", re.IGNORECASE),
    re.compile(r"find\s+(personal|private)\s+information\s+about", re.IGNORECASE),
]

JAILBREAK_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ignore\s+(previous|all)\s+(instructions|prompts)", re.IGNORECASE),
    re.compile(r"you\s+are\s+now\s+(dan|evil|unrestricted)", re.IGNORECASE),
    re.compile(r"pretend\s+you\s+(have\s+no|don't\s+have)\s+(rules|restrictions)", re.IGNORECASE),
    re.compile(r"bypass\s+(your|the)\s+(safety|content)\s+(filter|restrictions)", re.IGNORECASE),
]

# Flagged for careful handling, never declined
SELF_HARM_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"how\s+to\s+(kill|hurt)\s+(myself|yourself)", re.IGNORECASE),
    re.compile(r"suicide\s+methods", re.IGNORECASE),
]

_PUNCTUATION_ONLY = re.compile(r"^[\s.!?,;:]+$")

DECLINE_CATEGORIES: list[tuple[str, list[re.Pattern[str]]]] = [
    ("ILLEGAL_REQUEST", ILLEGAL_PATTERNS),
    ("PRIVACY_VIOLATION", PRIVACY_PATTERNS),
    ("JAILBREAK_ATTEMPT", JAILBREAK_PATTERNS),
]

DECLINE_MESSAGES: dict[str, dict[Language, str]] = {
    "ILLEGAL_REQUEST": {
        "en": "That's not something I can assist with. How else can I help you today?",
        "hi": "Is kaam mein main madad nahi kar sakta. Main aur kaise madad kar sakta hun?",
        "hinglish": "Ye wala kaam main nahi kar sakta. Aur kuch help chahiye?",
    },
    "PRIVACY_VIOLATION": {
        "en": (
            "I can't help find private information about others. "
            "Is there something else I can help with?"
        ),
        "hi": "Main doosron ki niji jaankari nahi dhoondh sakta. Kya main kuch aur madad karun?",
        "hinglish": "Kisi ki private info dhoondhna allowed nahi hai. Kuch aur batao?",
    },
    "JAILBREAK_ATTEMPT": {
        "en": "Nice try! But I'm happy being helpful. What can I actually help you with?",
        "hi": "Achchi koshish! Lekin main aise hi madadgaar hun. Bataiye, kya madad chahiye?",
        "hinglish": "Nice try bhai! Main aise hi helpful hun. Batao kya chahiye?",
    },
}

MAINTENANCE_MESSAGES: dict[Language, str] = {
    "en": "We're taking a quick breather for maintenance. Back soon!",
    "hi": "Hum thodi der ke liye maintenance par hain. Jald wapas aayenge!",
    "hinglish": "Thoda maintenance chal raha hai. Bas aa rahe hain wapas!",
}

DAILY_BUDGET_MESSAGES: dict[Language, str] = {
    "en": "You've reached today's limit. Resets at midnight.",
    "hi": "Aaj ki seema poori ho gayi hai. Aadhi raat ko reset hogi.",
    "hinglish": "Aaj ka limit khatam ho gaya. Midnight pe reset hoga.",
}

MONTHLY_BUDGET_MESSAGES: dict[Language, str] = {
    "en": "Monthly limit reached. Resets on the 1st.",
    "hi": "Is mahine ki seema poori ho gayi hai. 1 tareekh ko reset hogi.",
    "hinglish": "Is month ka limit khatam. 1st ko reset hoga.",
}

UPGRADE_HINTS: dict[Language, str] = {
    "en": "Consider upgrading for more!",
    "hi": "Zyada ke liye plan upgrade karein!",
    "hinglish": "Zyada chahiye toh upgrade kar lo!",
}

CLARIFICATION_PROMPTS: dict[Language, str] = {
    "en": "Could you tell me a bit more about what you need?",
    "hi": "Kya aap thoda aur bata sakte hain ki aapko kya chahiye?",
    "hinglish": "Kuch aur batao - main help karne ke liye ready hun!",
}


def needs_special_care(text: str) -> bool:
    """Whether the text contains self-harm-adjacent language."""
    return any(pattern.search(text) for pattern in SELF_HARM_PATTERNS)


def detect_decline_reason(text: str) -> Optional[str]:
    """Policy-violation category of the text, or None when it is acceptable."""
    for reason, patterns in DECLINE_CATEGORIES:
        if any(pattern.search(text) for pattern in patterns):
            return reason
    return None


def budget_message(daily: bool, plan: PlanTier, language: Language = "en") -> str:
    """Window-specific exhaustion message, with an upgrade hint for monthly limits below the top plan."""
    if daily:
        return DAILY_BUDGET_MESSAGES[language]
    message = MONTHLY_BUDGET_MESSAGES[language]
    if plan != PlanTier.SOVEREIGN:
        message = f"{message} {UPGRADE_HINTS[language]}"
    return message


class OutcomeGate:
    """Ordered pre-dispatch checks; the first failing check decides.

    Order: maintenance, content policy, budget exhaustion, clarity. Only
    an ANSWER lets the request reach ranking and dispatch.

    Args:
        policy: Policy layer consulted for maintenance mode and pressure.
    """

    def __init__(self, policy: PolicyOverrideLayer) -> None:
        self._policy = policy

    def evaluate(
        self,
        text: str,
        budget: UserBudgetState,
        session_message_count: int = 0,
        language: Language = "en",
    ) -> OutcomeResult:
        """Run every check in order.

        Args:
            text: Raw request text.
            budget: Current budget snapshot for the user.
            session_message_count: Messages already exchanged in the session.
            language: Language for canned messages.

        Returns:
            OutcomeResult with the decision, reason and any canned message.
        """
        passed: list[str] = []

        if self._policy.is_maintenance_mode_on():
            logger.info(f"outcome_gate_pause: user={budget.user_id}, reason=MAINTENANCE_MODE")
            return OutcomeResult(
                decision=OutcomeDecision.PAUSE,
                reason="MAINTENANCE_MODE",
                user_message=MAINTENANCE_MESSAGES[language],
                checks_failed=["maintenance"],
            )
        passed.append("maintenance")

        special_care = needs_special_care(text)
        decline_reason = detect_decline_reason(text)
        if decline_reason is not None:
            logger.warning(f"outcome_gate_decline: user={budget.user_id}, reason={decline_reason}")
            return OutcomeResult(
                decision=OutcomeDecision.DECLINE,
                reason=decline_reason,
                user_message=DECLINE_MESSAGES[decline_reason][language],
                needs_special_care=special_care,
                checks_passed=passed,
                checks_failed=["content_policy"],
            )
        passed.append("content_policy")

        monthly_ratio = usage_ratio(budget.monthly_used, budget.monthly_limit)
        daily_ratio = usage_ratio(budget.daily_used, budget.daily_limit)
        pressure = self._policy.effective_pressure(max(monthly_ratio, daily_ratio))
        if pressure >= 1.0:
            daily = daily_ratio > monthly_ratio
            logger.info(
                f"outcome_gate_pause: user={budget.user_id}, reason=BUDGET_EXHAUSTED, "
                f"window={'daily' if daily else 'monthly'}"
            )
            return OutcomeResult(
                decision=OutcomeDecision.PAUSE,
                reason="BUDGET_EXHAUSTED",
                user_message=budget_message(daily, budget.plan, language),
                effective_pressure=pressure,
                needs_special_care=special_care,
                checks_passed=passed,
                checks_failed=["budget"],
            )
        passed.append("budget")

        if self._needs_clarification(text, session_message_count):
            logger.info(f"outcome_gate_ask_back: user={budget.user_id}, reason=UNCLEAR_INTENT")
            return OutcomeResult(
                decision=OutcomeDecision.ASK_BACK,
                reason="UNCLEAR_INTENT",
                clarification_prompt=CLARIFICATION_PROMPTS[language],
                effective_pressure=pressure,
                needs_special_care=special_care,
                checks_passed=passed,
                checks_failed=["clarity"],
            )
        passed.append("clarity")

        if special_care:
            logger.warning(f"outcome_gate_special_care: user={budget.user_id}")

        return OutcomeResult(
            decision=OutcomeDecision.ANSWER,
            reason="all_checks_passed",
            effective_pressure=pressure,
            needs_special_care=special_care,
            checks_passed=passed,
        )

    @staticmethod
    def _needs_clarification(text: str, session_message_count: int) -> bool:
        # Short replies are fine mid-conversation
        if session_message_count > 1:
            return False
        trimmed = text.strip()
        return len(trimmed) < 3 or _PUNCTUATION_ONLY.match(trimmed) is not None
