"""Domain models for the flocksync ChMS integration layer.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain.

Normalized entities (NormalizedPerson, NormalizedFamily, NormalizedGroup,
ActivityWriteBack) are ephemeral: adapters build them fresh from each
provider response and the sync engine is the only component that turns
them into durable local or provider state.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal, TypeAlias

Gender: TypeAlias = Literal["male", "female"]
FamilyRole: TypeAlias = Literal["head", "spouse", "child", "other"]
PersonFamilyRole: TypeAlias = Literal["adult", "child"]
GroupRole: TypeAlias = Literal["leader", "member"]
OrgRole: TypeAlias = Literal["student", "guardian"]
Relationship: TypeAlias = Literal["parent", "guardian"]
SyncStatus: TypeAlias = Literal["success", "partial", "error"]
SyncType: TypeAlias = Literal["import_people", "incremental", "test_connection"]


class ChmsProvider(Enum):
    """External church management systems with an adapter."""

    ROCK = "rock"
    PLANNING_CENTER = "planning_center"
    CCB = "ccb"

    @property
    def display_name(self) -> str:
        return _PROVIDER_DISPLAY_NAMES[self]


_PROVIDER_DISPLAY_NAMES = {
    ChmsProvider.ROCK: "Rock RMS",
    ChmsProvider.PLANNING_CENTER: "Planning Center",
    ChmsProvider.CCB: "CCB",
}


class TriggerMethod(Enum):
    """What started a sync run."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"


# ============================================================================
# NORMALIZED ENTITIES
# ============================================================================


@dataclass(frozen=True)
class Campus:
    """A provider campus reference."""

    id: str
    name: str = ""


@dataclass(frozen=True)
class NormalizedAddress:
    """A postal address from any provider."""

    street1: str
    city: str = ""
    state: str = ""
    postal_code: str = ""
    street2: str | None = None
    country: str | None = None
    type: Literal["home", "work", "other"] | None = None


@dataclass(frozen=True)
class NormalizedPerson:
    """Canonical representation of one human record from any provider.

    The core's normalized format: not a Rock row, not a JSON:API resource,
    not a CCB XML element. ``phone`` is always E.164 once it leaves an
    adapter. A person with neither a first nor a last name is discarded by
    the adapter and never reaches the sync engine.
    """

    external_id: str
    first_name: str
    last_name: str
    external_alias_id: str | None = None
    external_guid: str | None = None
    nickname: str | None = None
    email: str | None = None
    phone: str | None = None
    gender: Gender | None = None
    birth_date: str | None = None  # ISO 8601 date (YYYY-MM-DD)
    grade: str | None = None
    graduation_year: int | None = None
    campus: Campus | None = None
    family_id: str | None = None
    family_role: PersonFamilyRole | None = None
    addresses: tuple[NormalizedAddress, ...] = ()
    custom_fields: dict[str, str] | MappingProxyType[str, str] = field(
        default_factory=dict
    )  # converted to proxy in __post_init__
    external_created_at: str | None = None
    external_updated_at: str | None = None

    def __post_init__(self) -> None:
        """Validate identifiers and freeze custom fields."""
        if not self.external_id or not str(self.external_id).strip():
            raise ValueError("external_id must be a non-empty string")
        if not isinstance(self.external_id, str):
            object.__setattr__(self, "external_id", str(self.external_id))
        if isinstance(self.custom_fields, dict):
            object.__setattr__(
                self, "custom_fields", MappingProxyType(self.custom_fields)
            )

    @property
    def has_name(self) -> bool:
        """True when at least one of first/last name is non-blank."""
        return bool(self.first_name.strip() or self.last_name.strip())

    @property
    def display_name(self) -> str:
        return f"{self.nickname or self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class PersonUpdate:
    """Partial person data pushed to a provider by update_person.

    Fields left as None are not sent.
    """

    first_name: str | None = None
    last_name: str | None = None
    nickname: str | None = None
    email: str | None = None
    phone: str | None = None
    gender: Gender | None = None
    birth_date: str | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.first_name,
                self.last_name,
                self.nickname,
                self.email,
                self.phone,
                self.gender,
                self.birth_date,
            )
        )


@dataclass(frozen=True)
class PersonQuery:
    """Best-effort lookup criteria for search_person."""

    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    def __post_init__(self) -> None:
        if not (self.email or self.phone or (self.first_name and self.last_name)):
            raise ValueError(
                "PersonQuery needs an email, a phone, or both first and last name"
            )


@dataclass(frozen=True)
class NormalizedFamilyMember:
    """One member of a household, in the canonical role vocabulary."""

    external_person_id: str
    role: FamilyRole
    first_name: str = ""
    last_name: str = ""


@dataclass(frozen=True)
class NormalizedFamily:
    """A household unit.

    Member roles are a lossy projection of each provider's family-position
    vocabulary onto head/spouse/child/other.
    """

    external_id: str
    name: str
    members: tuple[NormalizedFamilyMember, ...] = ()

    @property
    def adults(self) -> tuple[NormalizedFamilyMember, ...]:
        return tuple(m for m in self.members if m.role in ("head", "spouse"))

    @property
    def children(self) -> tuple[NormalizedFamilyMember, ...]:
        return tuple(m for m in self.members if m.role == "child")

    def member_ids(self) -> frozenset[str]:
        return frozenset(m.external_person_id for m in self.members)


@dataclass(frozen=True)
class NormalizedGroupMember:
    """One participant in a group."""

    external_person_id: str
    role: GroupRole = "member"


@dataclass(frozen=True)
class NormalizedGroup:
    """A named collection of people with their membership roles."""

    external_id: str
    name: str
    members: tuple[NormalizedGroupMember, ...] = ()
    description: str | None = None
    group_type: str | None = None
    campus: Campus | None = None

    @property
    def leaders(self) -> tuple[NormalizedGroupMember, ...]:
        return tuple(m for m in self.members if m.role == "leader")


# ============================================================================
# CAPABILITIES
# ============================================================================


@dataclass(frozen=True)
class RateLimit:
    """Provider call budget. Both None means no external limit (self-hosted)."""

    per_minute: int | None = None
    per_day: int | None = None

    @property
    def is_unbounded(self) -> bool:
        return self.per_minute is None and self.per_day is None


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static per-provider feature flags consumed by the sync engine.

    ``custom_field_slots`` is None when the provider allows any number of
    custom fields.
    """

    can_write_attendance: bool
    can_write_interactions: bool
    can_write_custom_fields: bool
    custom_field_slots: int | None
    has_webhooks: bool
    has_incremental_sync: bool
    max_page_size: int
    rate_limit: RateLimit = field(default_factory=RateLimit)

    def __post_init__(self) -> None:
        if self.max_page_size < 1:
            raise ValueError(
                f"max_page_size must be >= 1, got {self.max_page_size}"
            )
        if self.custom_field_slots is not None and self.custom_field_slots < 0:
            raise ValueError(
                f"custom_field_slots must be non-negative, got {self.custom_field_slots}"
            )

    @property
    def can_write_activity(self) -> bool:
        """True when any kind of activity write-back is possible."""
        return (
            self.can_write_attendance
            or self.can_write_interactions
            or self.can_write_custom_fields
        )


# ============================================================================
# ACTIVITY WRITE-BACK
# ============================================================================


@dataclass(frozen=True)
class Interaction:
    """A structured activity-log entry for providers with an interactions API."""

    date: str
    component_name: str  # "Check-In" | "SMS" | "Quest"
    summary: str
    channel_name: str = "Flock"


@dataclass(frozen=True)
class ActivityWriteBack:
    """Ministry-engagement data to push to one external person."""

    external_person_id: str
    external_alias_id: str | None = None
    local_profile_id: str | None = None
    last_check_in: str | None = None  # ISO date
    last_text: str | None = None  # ISO date
    belonging_status: str | None = None
    total_points: int | None = None
    total_check_ins: int | None = None
    interaction: Interaction | None = None

    def has_data(self) -> bool:
        """True when at least one engagement field is set."""
        return any(
            value is not None
            for value in (
                self.last_check_in,
                self.last_text,
                self.belonging_status,
                self.total_points,
                self.total_check_ins,
                self.interaction,
            )
        )


@dataclass(frozen=True)
class WriteFailure:
    """One write-back item that a provider rejected."""

    external_person_id: str
    error: str


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a best-effort batch write.

    Partial failure is an expected outcome, so it is returned rather than
    raised.
    """

    succeeded: int = 0
    failures: tuple[WriteFailure, ...] = ()

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def failed_ids(self) -> frozenset[str]:
        return frozenset(f.external_person_id for f in self.failures)


@dataclass(frozen=True)
class ConnectionTestResult:
    """Health-check result; never raised, always returned."""

    ok: bool
    error: str | None = None


# ============================================================================
# CONNECTION CONFIGURATION
# ============================================================================


def _id_tuple(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, (str, int)):
        return (str(value),)
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class SyncConfig:
    """Per-connection sync knobs parsed from the stored free-form payload."""

    rock_group_type_ids: tuple[str, ...] = ()
    rock_person_attribute_key: str = "Flock"
    pco_field_prefix: str = "flock"
    ccb_group_ids: tuple[str, ...] = ()
    campus_mapping: Mapping[str, str] = field(default_factory=dict)
    last_incremental_sync_at: str | None = None

    _ALIASES = {
        "rockGroupTypeIds": "rock_group_type_ids",
        "rockPersonAttributeKey": "rock_person_attribute_key",
        "pcoFieldPrefix": "pco_field_prefix",
        "ccbGroupIds": "ccb_group_ids",
        "campusMapping": "campus_mapping",
        "lastIncrementalSyncAt": "last_incremental_sync_at",
    }

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "campus_mapping", MappingProxyType(dict(self.campus_mapping))
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "SyncConfig":
        """Build from a stored payload, accepting camelCase or snake_case keys.

        Unknown keys are ignored.
        """
        if not data:
            return cls()
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name in ("rock_group_type_ids", "ccb_group_ids"):
                values[name] = _id_tuple(value)
            elif name in (
                "rock_person_attribute_key",
                "pco_field_prefix",
                "last_incremental_sync_at",
            ):
                if value:
                    values[name] = str(value)
            elif name == "campus_mapping" and isinstance(value, Mapping):
                values[name] = {str(k): str(v) for k, v in value.items()}
        return cls(**values)

    def to_mapping(self) -> dict[str, Any]:
        """Serialize back to the stored snake_case payload."""
        return {
            "rock_group_type_ids": list(self.rock_group_type_ids),
            "rock_person_attribute_key": self.rock_person_attribute_key,
            "pco_field_prefix": self.pco_field_prefix,
            "ccb_group_ids": list(self.ccb_group_ids),
            "campus_mapping": dict(self.campus_mapping),
            "last_incremental_sync_at": self.last_incremental_sync_at,
        }


@dataclass(frozen=True)
class ConnectionConfig:
    """One organization's link to an external ChMS.

    ``provider`` is kept as the raw stored identifier; the adapter factory
    validates it. ``base_url`` is required for Rock and CCB (church
    subdomain) and ignored for Planning Center.
    """

    organization_id: str
    provider: str
    credentials: Mapping[str, str]
    base_url: str | None = None
    sync_config: SyncConfig = field(default_factory=SyncConfig)
    id: str | None = None
    display_name: str | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    last_sync_status: SyncStatus | None = None

    def __post_init__(self) -> None:
        if not self.organization_id:
            raise ValueError("organization_id must be a non-empty string")
        object.__setattr__(
            self, "credentials", MappingProxyType(dict(self.credentials))
        )

    def credential(self, key: str) -> str:
        """Return a credential value, or an empty string when missing."""
        return str(self.credentials.get(key) or "")


# ============================================================================
# LOCAL IDENTITY RECORDS
# ============================================================================


@dataclass(frozen=True)
class LocalProfile:
    """A local identity record, as returned by the identity store."""

    id: str
    first_name: str
    last_name: str
    email: str | None = None
    phone_number: str | None = None
    date_of_birth: str | None = None


@dataclass(frozen=True)
class ProfileFields:
    """Profile columns derived from a NormalizedPerson."""

    first_name: str
    last_name: str
    email: str | None = None
    phone_number: str | None = None
    date_of_birth: str | None = None


@dataclass(frozen=True)
class StudentProfileFields:
    """Student-profile columns derived from a NormalizedPerson."""

    grade: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    gender: str | None = None

    def non_empty(self) -> dict[str, str]:
        return {k: v for k, v in self.__dict__.items() if v}


@dataclass(frozen=True)
class ProfileMapping:
    """Both halves of a person-to-profile translation."""

    profile: ProfileFields
    student: StudentProfileFields


@dataclass(frozen=True)
class ProfileLink:
    """Organization-scoped mapping from an external person to a local profile."""

    organization_id: str
    provider: str
    external_person_id: str
    profile_id: str
    link_method: Literal["email_match", "phone_match", "auto_created", "manual"]
    external_alias_id: str | None = None
    external_guid: str | None = None
    external_family_id: str | None = None
    last_synced_at: datetime | None = None
    last_write_back_at: datetime | None = None


@dataclass(frozen=True)
class EngagementSummary:
    """Locally computed ministry engagement for one profile."""

    profile_id: str
    last_check_in: datetime | None = None
    last_text: datetime | None = None
    belonging_status: str | None = None
    total_points: int | None = None
    total_check_ins: int | None = None

    def latest_activity(self) -> datetime | None:
        stamps = [s for s in (self.last_check_in, self.last_text) if s is not None]
        return max(stamps) if stamps else None


# ============================================================================
# SYNC RUNS
# ============================================================================


class SyncState(Enum):
    """States of one sync run.

    Transitions are strictly forward:
    AUTHENTICATING → IMPORTING → MATCHING → LINKING → FAMILY_SYNC →
    WRITING_BACK → LOGGING → DONE. FAILED is reachable only from
    AUTHENTICATING and IMPORTING, the two connection-level steps.
    """

    AUTHENTICATING = "authenticating"
    IMPORTING = "importing"
    MATCHING = "matching"
    LINKING = "linking"
    FAMILY_SYNC = "family_sync"
    WRITING_BACK = "writing_back"
    LOGGING = "logging"
    DONE = "done"
    FAILED = "failed"


_SYNC_ORDER = (
    SyncState.AUTHENTICATING,
    SyncState.IMPORTING,
    SyncState.MATCHING,
    SyncState.LINKING,
    SyncState.FAMILY_SYNC,
    SyncState.WRITING_BACK,
    SyncState.LOGGING,
    SyncState.DONE,
)
_FAILABLE = frozenset({SyncState.AUTHENTICATING, SyncState.IMPORTING})


@dataclass
class SyncStats:
    """Mutable counters accumulated during a run."""

    processed: int = 0
    created: int = 0
    linked: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    families_synced: int = 0
    relationships_created: int = 0
    activity_written: int = 0
    activity_failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class SyncError:
    """A per-record failure, keyed by the external ID that caused it."""

    external_id: str
    error: str


@dataclass
class SyncRun:
    """Tracks the state machine of one run.

    Note: This dataclass is intentionally mutable; the engine advances it
    as the pipeline progresses.
    """

    organization_id: str
    provider: str
    trigger: TriggerMethod
    started_at: datetime
    state: SyncState = SyncState.AUTHENTICATING
    stats: SyncStats = field(default_factory=SyncStats)
    errors: list[SyncError] = field(default_factory=list)
    error_message: str | None = None

    def advance(self, state: SyncState) -> None:
        """Move forward to ``state``; skipping ahead is allowed, going back is not."""
        if self.state in (SyncState.DONE, SyncState.FAILED):
            raise ValueError(f"Cannot leave terminal state {self.state}")
        if state == SyncState.FAILED:
            raise ValueError("Use fail() to enter the FAILED state")
        if _SYNC_ORDER.index(state) <= _SYNC_ORDER.index(self.state):
            raise ValueError(f"Cannot move from {self.state} to {state}")
        self.state = state

    def fail(self, message: str) -> None:
        """Abort the run from a connection-level state."""
        if self.state not in _FAILABLE:
            raise ValueError(
                f"Run cannot fail from {self.state}; only connection-level "
                "steps are fatal"
            )
        self.state = SyncState.FAILED
        self.error_message = message

    def record_error(self, external_id: str, error: str) -> None:
        self.errors.append(SyncError(external_id=external_id, error=error))


@dataclass(frozen=True)
class SyncResult:
    """Summary of a completed (or failed) sync run."""

    organization_id: str
    provider: str
    trigger: TriggerMethod
    sync_type: SyncType
    final_state: SyncState
    stats: SyncStats
    errors: tuple[SyncError, ...]
    started_at: datetime
    completed_at: datetime
    error_message: str | None = None

    @property
    def status(self) -> SyncStatus:
        if self.final_state == SyncState.FAILED:
            return "error"
        return "partial" if self.errors else "success"

    @property
    def succeeded(self) -> int:
        return self.stats.created + self.stats.linked + self.stats.updated

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def failing_external_ids(self) -> tuple[str, ...]:
        return tuple(e.external_id for e in self.errors)


@dataclass(frozen=True)
class SyncLogEntry:
    """One persisted row summarizing a run."""

    organization_id: str
    provider: str
    sync_type: SyncType
    trigger_method: TriggerMethod
    status: SyncStatus
    stats: Mapping[str, int]
    errors: tuple[SyncError, ...]
    started_at: datetime
    completed_at: datetime
    error_message: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stats", MappingProxyType(dict(self.stats)))

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncLogEntry":
        return cls(
            organization_id=result.organization_id,
            provider=result.provider,
            sync_type=result.sync_type,
            trigger_method=result.trigger,
            status=result.status,
            stats=result.stats.as_dict(),
            errors=result.errors,
            started_at=result.started_at,
            completed_at=result.completed_at,
            error_message=result.error_message,
        )
