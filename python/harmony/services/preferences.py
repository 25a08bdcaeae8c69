"""Recipient preference payloads and the rewrite context pack.

The payload is a flat ``preference_id -> value_key`` map resolved in priority
order: a point-in-time snapshot, the latest published personal preference
report, then the raw per-preference responses.

The context pack is what the prompt builder sees about the recipient: the
power relationship, the topic scope, and one instruction per preference that
matters for the detected topics.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from harmony.db.models import PreferenceReport, PreferenceResponse
from harmony.services.snapshots import get_preference_snapshot_payload

PERSONAL_PREFERENCES_TEMPLATE = "personal_preferences_v1"
PUBLISHED = "published"

CONTEXT_VERSION = "v1"
DEFAULT_POWER_MODE = "peer"

COMMUNICATION_CORE_KEYS = (
    "communication_directness",
    "communication_channel",
    "conflict_resolution_style",
)

TOPIC_PREFERENCE_IDS: dict[str, tuple[str, ...]] = {
    "noise": (
        "environment_noise_tolerance",
        "schedule_quiet_hours_preference",
        "conflict_resolution_style",
        "communication_directness",
    ),
    "privacy": (
        "privacy_room_entry",
        "privacy_notifications",
        "communication_channel",
        "conflict_resolution_style",
    ),
}

# preference_id -> (value_key -> instruction, fallback instruction)
_INSTRUCTIONS: dict[str, tuple[dict[str, str], str]] = {
    "communication_directness": (
        {
            "gentle": "Prefer softer phrasing and good timing; avoid blunt wording.",
            "balanced": "Be clear but not harsh; avoid sharp tone.",
            "direct": "Be straightforward without commands; keep concise.",
        },
        "Keep clear and respectful tone.",
    ),
    "conflict_resolution_style": (
        {
            "cool_off": "Offer space first; avoid demanding immediate response.",
            "talk_soon": "Invite a short chat when convenient; avoid urgency.",
            "mediate": "Suggest a gentle check-in later; no third-party mediation implied.",
            "check_in": "Suggest a gentle check-in later; no third-party mediation implied.",
        },
        "Suggest a calm follow-up.",
    ),
    "environment_noise_tolerance": (
        {
            "low": "Frame as a quiet-time request using impact language; avoid blame.",
            "medium": "Ask for mindful hours; keep tone neutral.",
            "high": "Keep request minimal; avoid overstating impact.",
        },
        "Ask for considerate noise levels.",
    ),
    "schedule_quiet_hours_preference": (
        {
            "early_evening": "Avoid late-night asks; suggest daytime without exact times.",
            "late_evening_or_night": "Allow later timing; avoid exact times unless provided.",
            "none": "No added timing constraints.",
        },
        "Keep timing reasonable.",
    ),
    "privacy_room_entry": (
        {"always_ask": "Ask permission before entering; phrase as a request, not a rule."},
        "Ask before entering shared/private spaces.",
    ),
    "privacy_notifications": (
        {"none": "Avoid after-hours notifications; suggest tomorrow without inventing times."},
        "Be mindful of notification timing.",
    ),
    "communication_channel": (
        {
            "text": "Written request is fine; keep concise and calm.",
            "call": "Offer a quick call when convenient; avoid urgency.",
            "in_person": "Offer a brief in-person check-in; avoid pressure.",
        },
        "Use a considerate communication channel.",
    ),
    "cleanliness_shared_space_tolerance": (
        {
            "low": 'Use reset/tidy-up framing; avoid "messy" accusations.',
            "high": "Keep request minimal; avoid policing tone.",
        },
        "Ask for shared-space reset.",
    ),
    "social_togetherness": (
        {
            "mostly_solo": "Avoid pushing group talk; keep 1:1 framing.",
            "balanced": "Neutral social framing.",
            "mostly_together": "Allow gentle invitation; avoid pressure.",
        },
        "Keep social tone balanced.",
    ),
    "social_hosting_frequency": (
        {
            "rare": "Emphasize heads-up and consent for visitors.",
            "sometimes": "Use gentle heads-up language for visitors.",
            "often": "Avoid judgment; keep request specific and time-bounded.",
        },
        "Ask for visitor heads-up.",
    ),
    "routine_planning_style": (
        {
            "planner": "Provide heads-up and propose planning; avoid last-minute tone.",
            "mixed": "No change to timing tone.",
            "spontaneous": "Keep request lightweight; avoid heavy planning language.",
        },
        "Keep timing language light.",
    ),
}

_DEFAULT_INSTRUCTION = "Keep tone warm and clear."


def map_instruction(preference_id: str, value_key: str) -> str:
    """Instruction sentence for one preference value."""
    entry = _INSTRUCTIONS.get(preference_id)
    if entry is None:
        return _DEFAULT_INSTRUCTION
    by_value, fallback = entry
    return by_value.get(value_key, fallback)


def report_value_map(report: dict[str, Any]) -> dict[str, str]:
    """Flatten a report's ``resolved`` section to preference_id -> value_key."""
    resolved = report.get("resolved") if isinstance(report, dict) else None
    if not isinstance(resolved, dict):
        return {}
    out: dict[str, str] = {}
    for preference_id, value in resolved.items():
        if isinstance(value, dict):
            value_key = value.get("value_key")
            if isinstance(value_key, str) and value_key:
                out[preference_id] = value_key
    return out


def normalize_preference_payload(payload: Any) -> dict[str, str]:
    """Accept either a flat string map or a report with a ``resolved`` section."""
    if not isinstance(payload, dict):
        return {}
    values = list(payload.values())
    if values and all(isinstance(v, str) for v in values):
        return dict(payload)
    return report_value_map(payload)


def build_snapshot_preferences(value_map: dict[str, str]) -> dict[str, str]:
    """Preferences written to the snapshot. Communication keys are always forwarded."""
    core = {key: value_map[key] for key in COMMUNICATION_CORE_KEYS if key in value_map}
    return {**value_map, **core}


def _responses_value_map(db: Session, user_id: UUID) -> dict[str, str]:
    rows = db.execute(
        select(PreferenceResponse.preference_id, PreferenceResponse.option_value).where(
            PreferenceResponse.user_id == user_id
        )
    ).all()
    return {row.preference_id: row.option_value for row in rows}


def resolve_preference_payload(
    db: Session,
    recipient_user_id: UUID,
    snapshot_id: UUID | None = None,
) -> dict[str, str]:
    """Resolve the recipient's preference map: snapshot, report, then responses."""
    payload: dict | None = None
    if snapshot_id is not None:
        payload = get_preference_snapshot_payload(db, snapshot_id)

    if payload is None:
        payload = db.execute(
            select(PreferenceReport.content)
            .where(
                PreferenceReport.subject_user_id == recipient_user_id,
                PreferenceReport.template_key == PERSONAL_PREFERENCES_TEMPLATE,
                PreferenceReport.status == PUBLISHED,
            )
            .order_by(PreferenceReport.published_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    if isinstance(payload, dict) and "preferences" in payload and "resolved" not in payload:
        # snapshots wrap the map as {"preferences": {...}}
        payload = payload["preferences"]

    if isinstance(payload, dict) and "resolved" in payload:
        value_map = report_value_map(payload)
    else:
        value_map = normalize_preference_payload(payload)

    if not value_map:
        value_map = _responses_value_map(db, recipient_user_id)
    return value_map


def build_context_pack(
    recipient_user_id: UUID,
    value_map: dict[str, str],
    topics: list[str],
    target_language: str,
    preference_payload: dict[str, Any] | None = None,
    power_mode: str = DEFAULT_POWER_MODE,
) -> dict[str, Any]:
    """Assemble the context pack stored on the request and fed to the prompt."""
    topics = list(topics) if topics else ["other"]

    relevant: list[str] = []
    for topic in topics:
        for preference_id in TOPIC_PREFERENCE_IDS.get(topic, ()):
            if preference_id not in relevant:
                relevant.append(preference_id)

    included = [key for key in value_map if key in relevant]
    signals = [
        {
            "preference_id": key,
            "value_key": value_map[key],
            "instruction": map_instruction(key, value_map[key]),
        }
        for key in included
    ]

    return {
        "context_version": CONTEXT_VERSION,
        "recipient_user_id": str(recipient_user_id),
        "target_language": target_language,
        "power": {
            "sender_role": "housemate",
            "recipient_role": "housemate",
            "power_mode": power_mode,
        },
        "topic_scope": {"topics": topics, "included_preference_ids": included},
        "instructions": {
            "tone": "warm_clear",
            "directness": "soft",
            "avoid": [
                "authority_language",
                "rules_language",
                "enforcement_language",
                "preference_disclosure",
            ],
        },
        "recipient_signals": signals,
        "preference_payload": preference_payload or {},
        "preference_value_map": value_map,
    }
