"""Canned user-facing messages for requests that end without a provider answer."""

from llm_dispatch.models import Language, PlanTier

ULTIMATE_FALLBACK_MESSAGES: dict[Language, str] = {
    "en": (
        "I'm having a brief moment of reflection. Could you please try again in a few "
        "seconds? I want to give you my best response."
    ),
    "hi": (
        "Main abhi thoda soch raha hun. Kya aap kuch seconds baad dubara try kar sakte "
        "hain? Main aapko best response dena chahta hun."
    ),
    "hinglish": "Ek second bhai, thoda load aa gaya. Try again karo, main ready hun!",
}

BUDGET_ENFORCEMENT_MESSAGES: dict[Language, str] = {
    "en": "You've hit your usage limit for now. Please try again a little later.",
    "hi": "Abhi ke liye aapki usage seema poori ho gayi hai. Thodi der baad try karein.",
    "hinglish": "Abhi ke liye limit hit ho gaya. Thodi der baad try karo.",
}

UPGRADE_SUFFIX: dict[Language, str] = {
    "en": "Upgrading your plan unlocks more.",
    "hi": "Plan upgrade karne par aur milega.",
    "hinglish": "Upgrade karo toh aur milega.",
}


def ultimate_fallback(language: Language = "en") -> str:
    """Generic try-again message used when recovery is exhausted."""
    return ULTIMATE_FALLBACK_MESSAGES.get(language, ULTIMATE_FALLBACK_MESSAGES["en"])


def budget_enforcement(plan: PlanTier, language: Language = "en") -> str:
    """Short message for a rate-limit or quota signal raised mid-call."""
    message = BUDGET_ENFORCEMENT_MESSAGES.get(language, BUDGET_ENFORCEMENT_MESSAGES["en"])
    if plan != PlanTier.SOVEREIGN:
        message = f"{message} {UPGRADE_SUFFIX.get(language, UPGRADE_SUFFIX['en'])}"
    return message
