"""Incident-commander prompt for the reasoning service."""
from typing import Iterable, Optional

# Field-note words that force risk escalation above the reported density
DANGER_KEYWORDS = frozenset({"panic", "fight", "medical", "fire", "crush"})

NO_FIELD_NOTE = "No specific details provided"

# Keep the rendered prompt well under the provider prompt limit on dense graphs
MAX_PROMPT_CORRIDORS = 20
MAX_FIELD_NOTE_CHARS = 1000

SYSTEM_PROMPT = (
    "You are a Senior Incident Commander for a large public event. "
    "You analyze field reports and issue immediate tactical commands. "
    "You reply with raw JSON only."
)

_TEMPLATE = """ROLE: Senior Incident Commander for a large public event.
OBJECTIVE: Analyze field reports and issue immediate tactical commands.

--- INPUT DATA ---
- Reported Density: {crowd_level}
- Field Note: "{field_note}"
- Verified Evacuation Routes:
{corridors}

--- ANALYSIS RULES ---
1. RISK CALCULATION: Base risk on 'Reported Density'. HOWEVER, if 'Field Note' contains keywords like {keywords}, ESCALATE risk immediately.
2. ROUTE UTILIZATION: You MUST reference specific "Verified Evacuation Routes" by name in your actions to guide traffic away from the hotspot.
3. TONE: Imperative, concise, and operational (e.g., "Close Gate A", "Deploy Medical Team").

--- REQUIRED OUTPUT ---
Return RAW JSON only (no markdown formatting, no code blocks).
{{
  "risk": "LOW | MEDIUM | HIGH | CRITICAL",
  "summary": "A single, high-impact situation report sentence.",
  "actions": [
    "Immediate Containment (e.g., 'Halt entry at [Location]')",
    "Traffic Diversion (MUST cite a specific route from inputs)",
    "Escalation/Support (e.g., 'Notify Control Room', 'Request EMS')"
  ]
}}
"""


def build_incident_prompt(
    crowd_level: str,
    field_note: Optional[str],
    corridors: Iterable[str],
) -> str:
    """Render the enrichment prompt.

    Args:
        crowd_level: Reported density (LOW/MEDIUM/HIGH/CRITICAL)
        field_note: Volunteer's free text, may be empty
        corridors: Evacuation routes already rendered with display names.
            Only the first MAX_PROMPT_CORRIDORS are listed; the rest are
            summarized as a count.

    Returns:
        Prompt text
    """
    note = (field_note or "").strip()[:MAX_FIELD_NOTE_CHARS] or NO_FIELD_NOTE
    keywords = ", ".join(f'"{k}"' for k in sorted(DANGER_KEYWORDS))

    routes = list(corridors)
    lines = [f"  - {c}" for c in routes[:MAX_PROMPT_CORRIDORS]]
    if len(routes) > MAX_PROMPT_CORRIDORS:
        lines.append(f"  - (+{len(routes) - MAX_PROMPT_CORRIDORS} more routes not listed)")

    return _TEMPLATE.format(
        crowd_level=crowd_level,
        field_note=note.replace('"', "'"),
        corridors="\n".join(lines),
        keywords=keywords,
    )


def mentions_danger(field_note: Optional[str]) -> bool:
    """Whether the field note contains an escalation keyword."""
    if not field_note:
        return False
    lowered = field_note.lower()
    return any(keyword in lowered for keyword in DANGER_KEYWORDS)
