"""Port interfaces for the flocksync ChMS integration layer.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - ChmsProviderPort: Read and write one external church management system
   - IdentityStorePort: Local profiles, memberships, links, relationships
   - ConnectionStorePort: Per-organization connection config and sync logs

2. **Driving Ports** (adapters/external systems call into core)
   - SyncPort: Entry point for sync runs and connection tests
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime

from .models import (
    ActivityWriteBack,
    ChmsProvider,
    ConnectionConfig,
    ConnectionTestResult,
    EngagementSummary,
    LocalProfile,
    NormalizedFamily,
    NormalizedGroup,
    NormalizedPerson,
    OrgRole,
    PersonQuery,
    PersonUpdate,
    ProfileLink,
    ProfileMapping,
    ProviderCapabilities,
    Relationship,
    SyncLogEntry,
    SyncResult,
    SyncStatus,
    TriggerMethod,
    WriteResult,
)

logger = logging.getLogger(__name__)


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class ChmsProviderPort(ABC):
    """Port for reading from and writing to one external ChMS.

    Adapters implementing this port translate a provider's wire format
    (Rock OData REST, Planning Center JSON:API, CCB XML) into the core's
    normalized models, so the sync engine never sees provider structure.

    Implementations must handle:
    - Pagination, returning complete result sets
    - Phone normalization to E.164 before anything leaves the adapter
    - Discarding person records with no first and no last name
    - Lazy authentication: any data call authenticates first if needed
    """

    @property
    @abstractmethod
    def provider(self) -> ChmsProvider:
        """The provider this adapter talks to."""

    @abstractmethod
    async def authenticate(self) -> None:
        """Verify credentials against the provider.

        Idempotent; safe to call more than once.

        Raises:
            AuthenticationError: Credentials rejected or response shape
                unexpected.
            ChmsApiError: Provider returned a non-success status.
        """

    async def test_connection(self) -> ConnectionTestResult:
        """Run authenticate and report the outcome without raising.

        Returns:
            ConnectionTestResult with ok=True, or ok=False and the error
            message from the failed authentication.
        """
        try:
            await self.authenticate()
        except Exception as e:
            logger.warning(f"{self.provider.value} connection test failed: {e}")
            return ConnectionTestResult(ok=False, error=str(e))
        return ConnectionTestResult(ok=True)

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Return static feature flags for this provider. Synchronous and cheap."""

    @abstractmethod
    async def list_people(
        self, modified_since: datetime | None = None
    ) -> list[NormalizedPerson]:
        """Return every person record, following pagination to the end.

        Args:
            modified_since: If given, only people modified at or after this
                instant.

        Returns:
            Normalized people; nameless records are omitted.

        Raises:
            ChmsApiError: Any page request failed.
        """

    @abstractmethod
    async def search_person(self, query: PersonQuery) -> list[NormalizedPerson]:
        """Best-effort lookup: email first, then phone, then exact name.

        Candidates are for identity matching only, not authoritative linking.

        Returns:
            Zero or more candidates from the first criterion that matched.
            Never raises for "not found".
        """

    @abstractmethod
    async def list_families(
        self, person_ids: Iterable[str] | None = None
    ) -> list[NormalizedFamily]:
        """Return households containing the given external people.

        Each household appears at most once even when several requested
        people belong to it. Providers with no bulk household listing
        return an empty list when person_ids is None.
        """

    @abstractmethod
    async def list_groups(
        self, group_type_ids: Iterable[str] | None = None
    ) -> list[NormalizedGroup]:
        """Return active groups with their members (family groups excluded)."""

    @abstractmethod
    async def create_person(self, person: NormalizedPerson) -> str:
        """Create a person in the provider.

        Returns:
            The provider-assigned external ID.
        """

    @abstractmethod
    async def update_person(self, external_id: str, update: PersonUpdate) -> None:
        """Apply a partial update to an existing person."""

    @abstractmethod
    async def write_activity(self, items: list[ActivityWriteBack]) -> WriteResult:
        """Push engagement data back to the provider.

        Best-effort per item: a failure for one person is recorded in the
        returned WriteResult and does not stop the others.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying HTTP client."""


class IdentityStorePort(ABC):
    """Port for the local identity store.

    Profiles are global; organization membership scopes which profiles a
    sync run may match. Links are unique per
    (organization, provider, external person id).
    """

    @abstractmethod
    async def get_links(
        self, organization_id: str, provider: str
    ) -> list[ProfileLink]:
        """Return all links for one organization and provider."""

    @abstractmethod
    async def get_link(
        self, organization_id: str, provider: str, external_person_id: str
    ) -> ProfileLink | None:
        """Return the link for one external person, or None."""

    @abstractmethod
    async def get_link_for_profile(
        self, organization_id: str, provider: str, profile_id: str
    ) -> ProfileLink | None:
        """Return the link that already points at a local profile, or None."""

    @abstractmethod
    async def find_profile_by_email(
        self, organization_id: str, email: str
    ) -> LocalProfile | None:
        """Find a profile that is a member of the organization by exact email.

        Args:
            organization_id: Scope of the search.
            email: Already lowercased and trimmed.
        """

    @abstractmethod
    async def find_profile_by_phone(
        self, organization_id: str, phone: str
    ) -> LocalProfile | None:
        """Find an organization member whose phone has the same canonical digits.

        Args:
            organization_id: Scope of the search.
            phone: Canonical match form (digits, leading 1 stripped).
        """

    @abstractmethod
    async def create_link(self, link: ProfileLink) -> None:
        """Persist a link between an external person and an existing profile.

        Raises:
            ValueError: A link for this external person already exists.
        """

    @abstractmethod
    async def create_linked_profile(
        self,
        organization_id: str,
        provider: str,
        person: NormalizedPerson,
        mapping: ProfileMapping,
        org_role: OrgRole,
    ) -> str:
        """Atomically create profile, membership, student profile and link.

        The student profile row is created only when org_role is
        "student". Either every row is written or none is.

        Returns:
            The new local profile ID.
        """

    @abstractmethod
    async def update_profile(self, profile_id: str, mapping: ProfileMapping) -> None:
        """Overwrite profile columns with fresh provider data.

        Empty values in the mapping do not clear existing columns.
        """

    @abstractmethod
    async def touch_link(
        self,
        organization_id: str,
        provider: str,
        external_person_id: str,
        synced_at: datetime,
        external_alias_id: str | None = None,
        external_guid: str | None = None,
    ) -> None:
        """Stamp last_synced_at and refresh the provider's alias/guid."""

    @abstractmethod
    async def set_link_family(
        self,
        organization_id: str,
        provider: str,
        external_person_id: str,
        external_family_id: str,
    ) -> None:
        """Record which external household a linked person belongs to."""

    @abstractmethod
    async def relationship_exists(
        self, parent_profile_id: str, student_profile_id: str
    ) -> bool:
        """True when the parent/student pair is already linked."""

    @abstractmethod
    async def create_relationship(
        self,
        parent_profile_id: str,
        student_profile_id: str,
        relationship: Relationship,
    ) -> None:
        """Link a parent or guardian profile to a student profile."""

    @abstractmethod
    async def get_engagement_summary(
        self, organization_id: str, profile_id: str
    ) -> EngagementSummary | None:
        """Return locally computed engagement for a profile, or None."""

    @abstractmethod
    async def mark_written_back(
        self,
        organization_id: str,
        provider: str,
        external_person_ids: Iterable[str],
        written_at: datetime,
    ) -> None:
        """Stamp last_write_back_at on the given links."""


class ConnectionStorePort(ABC):
    """Port for per-organization ChMS connection records and sync logs."""

    @abstractmethod
    async def get_connection(self, organization_id: str) -> ConnectionConfig | None:
        """Return the active connection for an organization, or None."""

    @abstractmethod
    async def list_active_connections(self) -> list[ConnectionConfig]:
        """Return every active connection."""

    @abstractmethod
    async def save_connection(self, connection: ConnectionConfig) -> str:
        """Insert or replace an organization's connection.

        Returns:
            The connection ID.
        """

    @abstractmethod
    async def update_sync_status(
        self,
        organization_id: str,
        status: SyncStatus,
        synced_at: datetime,
        error: str | None,
        stats: dict[str, int],
    ) -> None:
        """Record the outcome of the latest run on the connection."""

    @abstractmethod
    async def save_sync_cursor(self, organization_id: str, cursor: datetime) -> None:
        """Persist the incremental-sync cursor into the connection's sync config."""

    @abstractmethod
    async def mark_verified(self, organization_id: str, verified_at: datetime) -> None:
        """Record a successful connection test."""

    @abstractmethod
    async def record_sync_log(self, entry: SyncLogEntry) -> None:
        """Append one row to the sync log."""


# ============================================================================
# DRIVING PORTS (External systems call into core)
# ============================================================================


class SyncPort(ABC):
    """Port for executing sync runs.

    Driving port: the daemon scheduler, webhook receiver and the one-shot
    entry point invoke these methods.

    Implementations of this port live in the core (sync_service.py).
    """

    @abstractmethod
    async def run_sync(
        self,
        connection: ConnectionConfig,
        trigger: TriggerMethod = TriggerMethod.MANUAL,
    ) -> SyncResult:
        """Run the full pipeline for one connection.

        Never raises for provider or per-record failures; a fatal
        connection-level failure is reported as a SyncResult whose
        final_state is FAILED.
        """

    @abstractmethod
    async def sync_organization(
        self,
        organization_id: str,
        trigger: TriggerMethod = TriggerMethod.MANUAL,
    ) -> SyncResult:
        """Look up the organization's active connection and run it.

        Raises:
            ConnectionNotFoundError: The organization has no active connection.
        """

    @abstractmethod
    async def sync_all_active(
        self, trigger: TriggerMethod = TriggerMethod.SCHEDULED
    ) -> list[SyncResult]:
        """Run every active connection concurrently."""

    @abstractmethod
    async def test_connection(self, organization_id: str) -> ConnectionTestResult:
        """Authenticate against the organization's provider without syncing.

        Raises:
            ConnectionNotFoundError: The organization has no active connection.
        """
