"""Deterministic lexicon evaluation of rewritten messages.

Hard violations (vulgarity, slurs, attacks, authority or rules language,
preference disclosure, medical labels, blame, wrong locale) fail tone safety
and the lexicon check. Sarcasm and heavy hedging only warn.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import Literal

LEXICON_VERSION = "complaint_rewrite_lexicon_v1"
JUDGE_VERSION = "v1"

Verdict = Literal["pass", "warn", "fail"]
PowerMode = Literal["peer", "higher_sender", "higher_recipient"]

POWER_MODES = ("peer", "higher_sender", "higher_recipient")

PROFANITY = re.compile(r"\b(fuck|shit|damn|asshole|bitch|bastard)\b", re.I)
SLURS = re.compile(r"\b(retard|idiot|moron)\b", re.I)
PERSONAL_ATTACK = re.compile(r"\byou\b[^.!?]*(stupid|lazy|disgusting|selfish|idiot)", re.I)
AUTHORITY = re.compile(
    r"(because\s+i\s*(am|'m)\s*(the\s*)?(owner|landlord)|house rules|you must|you have to)",
    re.I,
)
PREF_DISCLOSURE = re.compile(r"(your preferences|tailored for you|based on your answers)", re.I)
MEDICAL = re.compile(r"(adhd|autistic|bipolar|psychopath|crazy)", re.I)
BLAME = re.compile(r"(your fault|you always|you never)", re.I)
SARCASM = re.compile(r"(yeah right|sure you|of course you)", re.I)
HEDGE = re.compile(r"(maybe|perhaps|kinda|sort of|possibly)", re.I)

HIGHER_SENDER_AUTHORITY = re.compile(r"\b(must|have to|rules)\b", re.I)
HIGHER_RECIPIENT_DEMAND = re.compile(r"\b(must|have to|immediately)\b", re.I)
POLITE_REQUEST = re.compile(r"\b(could you|would you|please|can you|let's|would it be)\b", re.I)

HARD_VIOLATIONS = frozenset(
    {
        "vulgarity",
        "slur",
        "personal_attack",
        "authority",
        "preference_disclosure",
        "medical",
        "new_fact",
        "non_target_locale",
        "blame",
    }
)
WARN_VIOLATIONS = frozenset({"sarcasm_warn", "hedge_warn"})

HEDGE_RATIO_WARN = 0.01


@dataclass(frozen=True)
class EvalResult:
    schema_valid: bool
    lexicon_pass: bool
    tone_safety: Verdict
    intent_preserved: Verdict
    violations: list[str] = field(default_factory=list)
    judge_version: str = JUDGE_VERSION
    dataset_version: str = "none"

    @property
    def passed(self) -> bool:
        return self.lexicon_pass and self.tone_safety != "fail"

    def to_dict(self) -> dict:
        return asdict(self)


def power_mode_from_context(context_pack: object) -> PowerMode:
    """Read context_pack.power.power_mode, defaulting to peer."""
    if isinstance(context_pack, dict):
        power = context_pack.get("power")
        if isinstance(power, dict) and power.get("power_mode") in POWER_MODES:
            return power["power_mode"]
    return "peer"


def evaluate_rewrite(
    rewritten_text: str,
    output_language: str,
    target_locale: str,
    intent: str,
    *,
    rewrite_request_id: object = None,
    recipient_user_id: object = None,
    power_mode: str = "peer",
    judge_version: str = JUDGE_VERSION,
    dataset_version: str = "none",
) -> EvalResult:
    """Score one rewritten message against the lexicon."""
    text = rewritten_text or ""
    violations: list[str] = []

    schema_valid = bool(rewrite_request_id) and bool(recipient_user_id) and bool(text)
    if (output_language or "").lower() != (target_locale or "").lower():
        violations.append("non_target_locale")

    for pattern, code in (
        (PROFANITY, "vulgarity"),
        (SLURS, "slur"),
        (PERSONAL_ATTACK, "personal_attack"),
        (AUTHORITY, "authority"),
        (PREF_DISCLOSURE, "preference_disclosure"),
        (MEDICAL, "medical"),
        (BLAME, "blame"),
    ):
        if pattern.search(text):
            violations.append(code)

    if SARCASM.search(text):
        violations.append("sarcasm_warn")

    hedge_hits = len(HEDGE.findall(text))
    token_count = max(1, len(re.split(r"\s+", text)))
    if hedge_hits / token_count > HEDGE_RATIO_WARN:
        violations.append("hedge_warn")

    if power_mode == "higher_sender" and HIGHER_SENDER_AUTHORITY.search(text):
        violations.append("authority")
    if power_mode == "higher_recipient" and HIGHER_RECIPIENT_DEMAND.search(text):
        violations.append("authority")

    intent_preserved: Verdict = "pass"
    if intent in ("request", "boundary") and not POLITE_REQUEST.search(text):
        intent_preserved = "warn"

    unique = list(dict.fromkeys(violations))
    hard = any(v in HARD_VIOLATIONS for v in unique)
    warn_only = not hard and any(v in WARN_VIOLATIONS for v in unique)
    tone_safety: Verdict = "fail" if hard else "warn" if warn_only else "pass"

    return EvalResult(
        schema_valid=schema_valid,
        lexicon_pass=not hard,
        tone_safety=tone_safety,
        intent_preserved=intent_preserved,
        violations=unique,
        judge_version=judge_version or JUDGE_VERSION,
        dataset_version=dataset_version or "none",
    )
