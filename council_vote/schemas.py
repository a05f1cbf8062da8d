"""
Shared Pydantic schemas: request validation, response serialisation and the
persisted ballot snapshot.

Organised by bounded context:
    1. Ballot : positions, candidates, session snapshot
    2. Voting : device context, selection requests, leave warning
    3. Results : tallies, physical (paper) votes, maintenance
    4. Common : health
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


# ══════════════════════════════════════════════════════════════════════════════
# 1. BALLOT
# ══════════════════════════════════════════════════════════════════════════════

class Candidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    photo: str | None = None
    class_name: str
    stream_name: str


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    candidates: tuple[Candidate, ...] = ()

    def candidate(self, candidate_id: str) -> Candidate | None:
        for c in self.candidates:
            if c.id == candidate_id:
                return c
        return None


class BallotSnapshot(BaseModel):
    """Selection and lock maps, both keyed by position id."""
    selections: dict[str, str] = Field(default_factory=dict)
    locked: dict[str, bool] = Field(default_factory=dict)


class VoterProfile(BaseModel):
    id: str
    name: str
    email: str
    class_name: str = "Unknown"
    stream_name: str = "Unknown"


# ══════════════════════════════════════════════════════════════════════════════
# 2. VOTING
# ══════════════════════════════════════════════════════════════════════════════

class BehaviorAnalytics(BaseModel):
    mouse_movement_count: int = 0
    average_mouse_speed: float = 0
    key_press_count: int = 0
    average_typing_speed: float = 0
    click_count: int = 0
    click_frequency: float = 0
    behavior_signature: str = "unavailable"


class DeviceContext(BaseModel):
    """Best-effort client context captured alongside each vote.

    Every field may be missing; the context is stored with the vote as-is.
    """
    device: str | None = None
    browser: str | None = None
    os: str | None = None
    screen_resolution: str | None = None
    timezone: str | None = None
    language: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_accuracy: float | None = None
    location_denied: bool = False
    canvas_fingerprint: str | None = None
    webgl_fingerprint: str | None = None
    installed_fonts: list[str] = Field(default_factory=list)
    battery_level: float | None = None
    battery_charging: bool | None = None
    behavior: BehaviorAnalytics | None = None

    @classmethod
    def from_user_agent(cls, user_agent: str | None, **fields) -> DeviceContext:
        """Classify device, browser and OS from a User-Agent header."""
        ua = user_agent or ""
        lowered = ua.lower()

        if "mobile" in lowered:
            device = "Mobile"
        elif "tablet" in lowered:
            device = "Tablet"
        else:
            device = "Desktop"

        # Order matters: Chrome UAs also mention Safari.
        browser = "Unknown"
        for token, name in (("Firefox", "Firefox"), ("Chrome", "Chrome"),
                            ("Safari", "Safari"), ("Edge", "Edge")):
            if token in ua:
                browser = name
                break

        os_name = "Unknown"
        for token, name in (("Windows", "Windows"), ("Mac", "macOS"),
                            ("Linux", "Linux"), ("Android", "Android"),
                            ("iOS", "iOS")):
            if token in ua:
                os_name = name
                break

        fields.setdefault("device", device)
        fields.setdefault("browser", browser)
        fields.setdefault("os", os_name)
        return cls(**fields)

    def with_defaults(self, other: DeviceContext) -> DeviceContext:
        """Fill unset fields of this context from ``other``."""
        merged = other.model_dump()
        merged.update(self.model_dump(exclude_none=True))
        return DeviceContext(**merged)

    @property
    def vote_status(self) -> str:
        if self.location_denied or (self.latitude is None and self.longitude is None):
            return "invalid"
        return "valid"


class SelectRequest(BaseModel):
    candidate_id: str
    device: DeviceContext | None = None


class LeaveWarning(BaseModel):
    warn: bool
    message: str | None = None


# ══════════════════════════════════════════════════════════════════════════════
# 3. RESULTS
# ══════════════════════════════════════════════════════════════════════════════

class PhysicalVoteCreate(BaseModel):
    candidate_id: str = Field(min_length=1)
    candidate_name: str = Field(min_length=1)
    position: str = Field(min_length=1)
    votes_count: int = Field(ge=0)
    notes: str | None = None
    added_by: str | None = None


class CandidateTally(BaseModel):
    candidate_id: str
    candidate_name: str
    valid_votes: int = 0
    invalid_votes: int = 0
    physical_votes: int = 0
    total_votes: int = 0


class PositionResults(BaseModel):
    position: str
    total_votes: int
    candidates: list[CandidateTally]


class DedupeResponse(BaseModel):
    message: str
    deleted: int


# ══════════════════════════════════════════════════════════════════════════════
# 4. COMMON
# ══════════════════════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    status: str
    service: str
