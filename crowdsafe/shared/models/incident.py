"""Observation domain models.

An observation is a volunteer's field report of crowd conditions at a
waypoint. Two independent axes track it:
- ``status`` follows the human workflow (NEW -> PENDING -> ACKNOWLEDGED -> RESOLVED)
- ``ai_status`` follows automated enrichment (PENDING -> PROCESSING -> DONE|FAILED)
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CrowdLevel(Enum):
    """Crowd density reported by a volunteer."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskLevel(Enum):
    """Risk classification returned by the reasoning service."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ObservationStatus(Enum):
    """Human workflow state. RESOLVED is terminal."""
    NEW = "NEW"
    PENDING = "PENDING"             # Instruction sent, awaiting volunteer
    ACKNOWLEDGED = "ACKNOWLEDGED"   # Volunteer is handling it
    RESOLVED = "RESOLVED"


class AIStatus(Enum):
    """Enrichment state. DONE and FAILED are terminal."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class AIInsight:
    """Risk assessment and recommended actions for one observation."""
    risk: RiskLevel
    summary: str
    actions: Tuple[str, ...] = ()

    def to_document(self) -> Dict[str, Any]:
        return {
            "risk": self.risk.value,
            "summary": self.summary,
            "actions": list(self.actions),
        }

    @classmethod
    def from_document(cls, data: Any) -> "AIInsight":
        """Build an insight from its stored form.

        Raises:
            ValueError: If the stored value is not a complete insight object
        """
        if not isinstance(data, dict):
            raise ValueError(f"aiInsight must be an object, got {type(data).__name__}")
        if "risk" not in data or "summary" not in data:
            raise ValueError("aiInsight requires risk and summary")

        actions = data.get("actions") or ()
        if not isinstance(actions, (list, tuple)):
            raise ValueError("aiInsight actions must be a list")

        return cls(
            risk=RiskLevel(data["risk"]),
            summary=str(data["summary"]),
            actions=tuple(str(a) for a in actions),
        )


@dataclass(frozen=True)
class ObservationImage:
    """Compressed image preview embedded in the observation document."""
    base64: str
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class Observation:
    """Snapshot of an observation document.

    Instances are read-only views of the most recently delivered state;
    they are never written back wholesale.
    """
    observation_id: str
    waypoint_id: Optional[str]
    volunteer_email: str
    crowd_level: CrowdLevel
    status: ObservationStatus
    created_at: Optional[str] = None
    expires_at: Optional[str] = None
    message: Optional[str] = None
    image: Optional[ObservationImage] = None
    ai_status: Optional[AIStatus] = None
    ai_insight: Optional[AIInsight] = None
    ai_error: Optional[str] = None
    ai_error_detail: Optional[str] = None
    ai_claim_id: Optional[str] = None
    ai_claimed_at: Optional[str] = None
    instruction: Optional[str] = None
    admin_email: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.status is ObservationStatus.RESOLVED

    @property
    def awaits_enrichment(self) -> bool:
        """Absent aiStatus counts as eligible, same as PENDING."""
        return self.ai_status in (None, AIStatus.PENDING)

    @classmethod
    def from_document(cls, observation_id: str, data: Dict[str, Any]) -> "Observation":
        """Build an Observation from a raw store document.

        Raises:
            ValueError: If an enumerated field holds an unknown value
        """
        image = None
        if data.get("imageBase64"):
            image = ObservationImage(
                base64=data["imageBase64"],
                width=data.get("imageWidth"),
                height=data.get("imageHeight"),
            )

        ai_status = data.get("aiStatus")
        insight = data.get("aiInsight")

        return cls(
            observation_id=observation_id,
            waypoint_id=data.get("waypointId"),
            volunteer_email=data.get("volunteerEmail", ""),
            crowd_level=CrowdLevel(data.get("crowdLevel", CrowdLevel.LOW.value)),
            status=ObservationStatus(data.get("status", ObservationStatus.NEW.value)),
            created_at=data.get("createdAt"),
            expires_at=data.get("expiresAt"),
            message=data.get("message") or None,
            image=image,
            ai_status=AIStatus(ai_status) if ai_status else None,
            ai_insight=AIInsight.from_document(insight) if insight else None,
            ai_error=data.get("aiError"),
            ai_error_detail=data.get("aiErrorDetail"),
            ai_claim_id=data.get("aiClaimId"),
            ai_claimed_at=data.get("aiClaimedAt"),
            instruction=data.get("instruction"),
            admin_email=data.get("adminEmail"),
            resolved_by=data.get("resolvedBy"),
            resolved_at=data.get("resolvedAt"),
        )
