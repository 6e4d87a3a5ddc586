"""Tests for the sync engine.

Drives SyncService with an in-memory provider and store and asserts on
the resulting links, relationships, write-backs and sync-log rows.
"""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from flocksync.adapters.store.sqlite import SQLiteChmsStore
from flocksync.core.errors import (
    AuthenticationError,
    ChmsApiError,
    ConfigurationError,
    ConnectionNotFoundError,
)
from flocksync.core.models import (
    ConnectionConfig,
    EngagementSummary,
    NormalizedFamily,
    NormalizedFamilyMember,
    NormalizedPerson,
    ProfileLink,
    ProviderCapabilities,
    SyncConfig,
    SyncState,
    TriggerMethod,
)
from flocksync.core.sync_service import SyncService
from flocksync.tests.fakes import FakeChmsProvider, FakeChmsStore

ORG = "org-1"

# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def connection() -> ConnectionConfig:
    return ConnectionConfig(
        organization_id=ORG,
        provider="rock",
        credentials={"api_key": "secret"},
        base_url="https://rock.example.org",
    )


@pytest.fixture
def store(connection: ConnectionConfig) -> FakeChmsStore:
    store = FakeChmsStore()
    store.add_connection(connection)
    return store


@pytest.fixture
def provider() -> FakeChmsProvider:
    provider = FakeChmsProvider()
    provider.people = [
        NormalizedPerson(
            external_id="1",
            first_name="Pat",
            last_name="Ray",
            email="pat@example.org",
            family_id="f1",
            family_role="adult",
        ),
        NormalizedPerson(
            external_id="2",
            first_name="Sam",
            last_name="Ray",
            email="sam@example.org",
            phone="+15551234567",
            family_id="f1",
            family_role="child",
            graduation_year=2027,
        ),
        NormalizedPerson(external_id="3", first_name="Jo", last_name="Lee"),
    ]
    provider.families = [
        NormalizedFamily(
            external_id="f1",
            name="Ray Family",
            members=(
                NormalizedFamilyMember(external_person_id="1", role="head"),
                NormalizedFamilyMember(external_person_id="2", role="child"),
            ),
        )
    ]
    return provider


@pytest.fixture
def service(store: FakeChmsStore, provider: FakeChmsProvider) -> SyncService:
    return SyncService(
        identity_store=store,
        connection_store=store,
        adapter_factory=lambda connection: provider,
    )


def _profile_for(store: FakeChmsStore, external_id: str) -> str:
    return store.links[(ORG, "rock", external_id)].profile_id


def _capabilities(**overrides) -> ProviderCapabilities:
    values = dict(
        can_write_attendance=True,
        can_write_interactions=True,
        can_write_custom_fields=True,
        custom_field_slots=None,
        has_webhooks=False,
        has_incremental_sync=True,
        max_page_size=100,
    )
    values.update(overrides)
    return ProviderCapabilities(**values)


def _seed_linked_member(
    store: FakeChmsStore, external_id: str, email: str, **engagement
) -> str:
    """Seed a local member the provider person will link to by email."""
    profile_id = store.add_member(ORG, "Local", external_id, email=email)
    if engagement:
        store.set_engagement(ORG, EngagementSummary(profile_id=profile_id, **engagement))
    return profile_id


# ============================================================================
# Import, match and link
# ============================================================================


class TestImportAndLink:
    @pytest.mark.asyncio
    async def test_new_people_are_created_and_linked(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        result = await service.run_sync(connection)

        assert result.final_state == SyncState.DONE
        assert result.status == "success"
        assert result.stats.processed == 3
        assert result.stats.created == 3
        assert len(store.links) == 3
        assert all(link.link_method == "auto_created" for link in store.links.values())
        assert provider.authenticate_call_count == 1
        assert provider.closed

    @pytest.mark.asyncio
    async def test_roles_and_student_profiles(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        await service.run_sync(connection)

        pat, sam = _profile_for(store, "1"), _profile_for(store, "2")
        assert store.memberships[(ORG, pat)] == "guardian"
        assert store.memberships[(ORG, sam)] == "student"
        assert sam in store.student_profiles
        assert pat not in store.student_profiles

    @pytest.mark.asyncio
    async def test_email_match_links_existing_profile(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        existing = store.add_member(ORG, "Sam", "Ray", email="  SAM@Example.org")

        result = await service.run_sync(connection)

        assert result.stats.linked == 1
        assert result.stats.created == 2
        link = store.links[(ORG, "rock", "2")]
        assert link.profile_id == existing
        assert link.link_method == "email_match"

    @pytest.mark.asyncio
    async def test_phone_match_when_email_misses(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        existing = store.add_member(ORG, "Sammy", "Ray", phone_number="(555) 123-4567")

        await service.run_sync(connection)

        link = store.links[(ORG, "rock", "2")]
        assert link.profile_id == existing
        assert link.link_method == "phone_match"

    @pytest.mark.asyncio
    async def test_matching_is_scoped_to_organization(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        other_org_profile = store.add_member("org-2", "Sam", "Ray", email="sam@example.org")

        result = await service.run_sync(connection)

        assert result.stats.linked == 0
        assert _profile_for(store, "2") != other_org_profile

    @pytest.mark.asyncio
    async def test_profile_linked_to_another_person_is_skipped(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        existing = store.add_member(ORG, "Sam", "Ray", email="sam@example.org")
        await store.create_link(
            ProfileLink(
                organization_id=ORG,
                provider="rock",
                external_person_id="99",
                profile_id=existing,
                link_method="manual",
            )
        )

        result = await service.run_sync(connection)

        assert result.stats.skipped == 1
        assert (ORG, "rock", "2") not in store.links

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        await service.run_sync(connection)
        profiles = dict(store.profiles)
        links = {key: link.profile_id for key, link in store.links.items()}
        relationships = dict(store.relationships)

        second = await service.run_sync(connection)

        assert second.stats.updated == 3
        assert second.stats.created == 0
        assert second.stats.linked == 0
        assert store.profiles.keys() == profiles.keys()
        assert {key: link.profile_id for key, link in store.links.items()} == links
        assert store.relationships == relationships
        assert len(provider.list_families_calls) == 1

    @pytest.mark.asyncio
    async def test_person_failure_does_not_stop_the_run(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        store.fail_create_for = {"2"}

        result = await service.run_sync(connection)

        assert result.final_state == SyncState.DONE
        assert result.status == "partial"
        assert result.stats.created == 2
        assert result.stats.failed == 1
        assert result.failing_external_ids == ("2",)
        assert store.sync_status[ORG]["status"] == "partial"


# ============================================================================
# Family sync
# ============================================================================


class TestFamilySync:
    @pytest.mark.asyncio
    async def test_families_fetched_once_for_new_links(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        provider: FakeChmsProvider,
    ) -> None:
        await service.run_sync(connection)

        assert provider.list_families_calls == [["1", "2", "3"]]

    @pytest.mark.asyncio
    async def test_household_adults_become_parents(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        result = await service.run_sync(connection)

        pat, sam = _profile_for(store, "1"), _profile_for(store, "2")
        assert store.relationships == {(pat, sam): "parent"}
        assert result.stats.families_synced == 1
        assert result.stats.relationships_created == 1
        assert store.links[(ORG, "rock", "1")].external_family_id == "f1"
        assert store.links[(ORG, "rock", "2")].external_family_id == "f1"

    @pytest.mark.asyncio
    async def test_other_adults_become_guardians(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        provider.families = [
            NormalizedFamily(
                external_id="f1",
                name="Ray Family",
                members=(
                    NormalizedFamilyMember(external_person_id="3", role="other"),
                    NormalizedFamilyMember(external_person_id="2", role="child"),
                ),
            )
        ]

        await service.run_sync(connection)

        jo, sam = _profile_for(store, "3"), _profile_for(store, "2")
        assert store.relationships == {(jo, sam): "guardian"}

    @pytest.mark.asyncio
    async def test_family_fetch_failure_is_recorded(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        provider.list_families_error = ChmsApiError("Rock RMS", 500)

        result = await service.run_sync(connection)

        assert result.final_state == SyncState.DONE
        assert result.status == "partial"
        assert result.stats.created == 3
        assert result.failing_external_ids == ("families",)
        assert store.relationships == {}

    @pytest.mark.asyncio
    async def test_no_family_call_without_new_links(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        provider: FakeChmsProvider,
    ) -> None:
        provider.people = []

        await service.run_sync(connection)

        assert provider.list_families_calls == []


# ============================================================================
# Fatal failures
# ============================================================================


class TestFatalFailures:
    @pytest.mark.asyncio
    async def test_authentication_failure(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        provider.auth_error = AuthenticationError(
            "CCB authentication failed: unexpected response"
        )

        result = await service.run_sync(connection)

        assert result.final_state == SyncState.FAILED
        assert result.status == "error"
        assert result.error_message == "CCB authentication failed: unexpected response"
        assert provider.list_people_calls == []
        assert provider.closed
        assert store.sync_logs[-1].status == "error"
        assert store.sync_status[ORG]["error"] == result.error_message
        assert ORG not in store.cursors

    @pytest.mark.asyncio
    async def test_roster_failure(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        provider.list_people_error = ChmsApiError("Rock RMS", 503)

        result = await service.run_sync(connection)

        assert result.final_state == SyncState.FAILED
        assert "503" in (result.error_message or "")
        assert store.links == {}
        assert store.sync_logs[-1].status == "error"

    @pytest.mark.asyncio
    async def test_adapter_construction_failure(
        self, store: FakeChmsStore, connection: ConnectionConfig
    ) -> None:
        def factory(_: ConnectionConfig):
            raise ConfigurationError("Rock RMS requires an API key")

        service = SyncService(store, store, factory)

        result = await service.run_sync(connection)

        assert result.final_state == SyncState.FAILED
        assert result.error_message == "Rock RMS requires an API key"

    @pytest.mark.asyncio
    async def test_sync_log_failure_does_not_raise(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        store.fail_sync_log = True

        result = await service.run_sync(connection)

        assert result.status == "success"
        assert store.sync_status[ORG]["status"] == "success"


# ============================================================================
# Activity write-back
# ============================================================================

CHECK_IN = datetime(2024, 9, 8, 18, 30, tzinfo=UTC)


class TestWriteBack:
    @pytest.mark.asyncio
    async def test_engagement_written_once_per_change(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        _seed_linked_member(
            store, "2", "sam@example.org", last_check_in=CHECK_IN, total_check_ins=4
        )

        first = await service.run_sync(connection)
        second = await service.run_sync(connection)

        assert len(provider.write_activity_calls) == 1
        [item] = provider.write_activity_calls[0]
        assert item.external_person_id == "2"
        assert item.last_check_in == "2024-09-08"
        assert item.total_check_ins == 4
        assert item.interaction is not None
        assert first.stats.activity_written == 1
        assert second.stats.activity_written == 0
        assert store.links[(ORG, "rock", "2")].last_write_back_at is not None

    @pytest.mark.asyncio
    async def test_newer_engagement_is_written_again(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        profile_id = _seed_linked_member(
            store, "2", "sam@example.org", last_check_in=CHECK_IN
        )
        await service.run_sync(connection)

        store.set_engagement(
            ORG,
            EngagementSummary(
                profile_id=profile_id,
                last_check_in=datetime.now(UTC) + timedelta(minutes=5),
            ),
        )
        await service.run_sync(connection)

        assert len(provider.write_activity_calls) == 2

    @pytest.mark.asyncio
    async def test_nothing_written_when_provider_cannot_accept_activity(
        self, store: FakeChmsStore, connection: ConnectionConfig
    ) -> None:
        provider = FakeChmsProvider(
            capabilities=_capabilities(
                can_write_attendance=False,
                can_write_interactions=False,
                can_write_custom_fields=False,
            )
        )
        provider.people = [
            NormalizedPerson(external_id="2", first_name="Sam", last_name="Ray", email="sam@example.org")
        ]
        _seed_linked_member(store, "2", "sam@example.org", belonging_status="Connected")

        await SyncService(store, store, lambda c: provider).run_sync(connection)

        assert provider.write_activity_calls == []

    @pytest.mark.asyncio
    async def test_attendance_stripped_for_providers_without_attendance(
        self, store: FakeChmsStore, connection: ConnectionConfig
    ) -> None:
        provider = FakeChmsProvider(
            capabilities=_capabilities(
                can_write_attendance=False, can_write_interactions=False
            )
        )
        provider.people = [
            NormalizedPerson(external_id="2", first_name="Sam", last_name="Ray", email="sam@example.org")
        ]
        _seed_linked_member(
            store,
            "2",
            "sam@example.org",
            last_check_in=CHECK_IN,
            total_check_ins=4,
            belonging_status="Connected",
        )

        await SyncService(store, store, lambda c: provider).run_sync(connection)

        [item] = provider.write_activity_calls[0]
        assert item.last_check_in is None
        assert item.total_check_ins is None
        assert item.interaction is None
        assert item.belonging_status == "Connected"

    @pytest.mark.asyncio
    async def test_check_in_only_activity_skipped_without_attendance(
        self, store: FakeChmsStore, connection: ConnectionConfig
    ) -> None:
        provider = FakeChmsProvider(
            capabilities=_capabilities(
                can_write_attendance=False, can_write_interactions=False
            )
        )
        provider.people = [
            NormalizedPerson(external_id="2", first_name="Sam", last_name="Ray", email="sam@example.org")
        ]
        _seed_linked_member(store, "2", "sam@example.org", last_check_in=CHECK_IN)

        await SyncService(store, store, lambda c: provider).run_sync(connection)

        assert provider.write_activity_calls == []

    @pytest.mark.asyncio
    async def test_limited_slots_keep_priority_fields(
        self, store: FakeChmsStore, connection: ConnectionConfig
    ) -> None:
        provider = FakeChmsProvider(
            capabilities=_capabilities(custom_field_slots=2, can_write_interactions=False)
        )
        provider.people = [
            NormalizedPerson(external_id="2", first_name="Sam", last_name="Ray", email="sam@example.org")
        ]
        _seed_linked_member(
            store,
            "2",
            "sam@example.org",
            last_check_in=CHECK_IN,
            last_text=CHECK_IN - timedelta(days=1),
            belonging_status="Connected",
            total_points=40,
            total_check_ins=4,
        )

        await SyncService(store, store, lambda c: provider).run_sync(connection)

        [item] = provider.write_activity_calls[0]
        assert item.last_check_in == "2024-09-08"
        assert item.belonging_status == "Connected"
        assert item.last_text is None
        assert item.total_points is None
        assert item.total_check_ins is None

    @pytest.mark.asyncio
    async def test_interaction_only_when_custom_fields_unsupported(
        self, store: FakeChmsStore, connection: ConnectionConfig
    ) -> None:
        provider = FakeChmsProvider(capabilities=_capabilities(can_write_custom_fields=False))
        provider.people = [
            NormalizedPerson(external_id="2", first_name="Sam", last_name="Ray", email="sam@example.org")
        ]
        _seed_linked_member(
            store, "2", "sam@example.org", last_check_in=CHECK_IN, belonging_status="Connected"
        )

        await SyncService(store, store, lambda c: provider).run_sync(connection)

        [item] = provider.write_activity_calls[0]
        assert item.interaction is not None
        assert item.belonging_status is None
        assert item.last_check_in is None

    @pytest.mark.asyncio
    async def test_partial_write_failure(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        _seed_linked_member(store, "1", "pat@example.org", belonging_status="Core")
        _seed_linked_member(store, "2", "sam@example.org", belonging_status="Connected")
        provider.failing_write_ids = {"2"}

        result = await service.run_sync(connection)

        assert result.stats.activity_written == 1
        assert result.stats.activity_failed == 1
        assert store.links[(ORG, "rock", "1")].last_write_back_at is not None
        assert store.links[(ORG, "rock", "2")].last_write_back_at is None

    @pytest.mark.asyncio
    async def test_write_error_counts_every_item_failed(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        provider: FakeChmsProvider,
    ) -> None:
        _seed_linked_member(store, "1", "pat@example.org", belonging_status="Core")
        _seed_linked_member(store, "2", "sam@example.org", belonging_status="Connected")
        provider.write_error = ChmsApiError("Rock RMS", None, "connection reset")

        result = await service.run_sync(connection)

        assert result.final_state == SyncState.DONE
        assert result.stats.activity_failed == 2
        assert all(link.last_write_back_at is None for link in store.links.values())

    @pytest.mark.asyncio
    async def test_write_back_disabled(
        self,
        store: FakeChmsStore,
        connection: ConnectionConfig,
        provider: FakeChmsProvider,
    ) -> None:
        _seed_linked_member(store, "2", "sam@example.org", belonging_status="Connected")
        service = SyncService(store, store, lambda c: provider, write_back_enabled=False)

        await service.run_sync(connection)

        assert provider.write_activity_calls == []


# ============================================================================
# Incremental cursor
# ============================================================================


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_scheduled_run_passes_stored_cursor(
        self, service: SyncService, store: FakeChmsStore, provider: FakeChmsProvider
    ) -> None:
        connection = ConnectionConfig(
            organization_id=ORG,
            provider="rock",
            credentials={"api_key": "k"},
            sync_config=SyncConfig(last_incremental_sync_at="2024-09-01T00:00:00Z"),
        )

        result = await service.run_sync(connection, TriggerMethod.SCHEDULED)

        assert provider.list_people_calls == [datetime(2024, 9, 1, tzinfo=UTC)]
        assert result.sync_type == "incremental"
        assert store.cursors[ORG] == result.started_at
        assert store.sync_logs[-1].trigger_method == TriggerMethod.SCHEDULED

    @pytest.mark.asyncio
    async def test_cursor_falls_back_to_last_sync(
        self, service: SyncService, provider: FakeChmsProvider
    ) -> None:
        last_sync = datetime(2024, 8, 30, 6, 0, tzinfo=UTC)
        connection = ConnectionConfig(
            organization_id=ORG,
            provider="rock",
            credentials={"api_key": "k"},
            last_sync_at=last_sync,
            last_sync_status="success",
        )

        await service.run_sync(connection, TriggerMethod.WEBHOOK)

        assert provider.list_people_calls == [last_sync]

    @pytest.mark.asyncio
    async def test_manual_run_is_full_import(
        self, service: SyncService, provider: FakeChmsProvider
    ) -> None:
        connection = ConnectionConfig(
            organization_id=ORG,
            provider="rock",
            credentials={"api_key": "k"},
            sync_config=SyncConfig(last_incremental_sync_at="2024-09-01T00:00:00Z"),
        )

        result = await service.run_sync(connection, TriggerMethod.MANUAL)

        assert provider.list_people_calls == [None]
        assert result.sync_type == "import_people"

    @pytest.mark.asyncio
    async def test_first_scheduled_run_is_full_import(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        provider: FakeChmsProvider,
    ) -> None:
        result = await service.run_sync(connection, TriggerMethod.SCHEDULED)

        assert provider.list_people_calls == [None]
        assert result.sync_type == "import_people"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["partial", "error"])
    async def test_unclean_last_sync_is_not_a_cursor(
        self, service: SyncService, provider: FakeChmsProvider, status: str
    ) -> None:
        connection = ConnectionConfig(
            organization_id=ORG,
            provider="rock",
            credentials={"api_key": "k"},
            last_sync_at=datetime(2024, 8, 30, 6, 0, tzinfo=UTC),
            last_sync_status=status,
        )

        await service.run_sync(connection, TriggerMethod.SCHEDULED)

        assert provider.list_people_calls == [None]

    @pytest.mark.asyncio
    async def test_cursor_held_when_run_stops_early(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken_get_links(organization_id: str, provider: str):
            raise RuntimeError("links table locked")

        monkeypatch.setattr(store, "get_links", broken_get_links)

        result = await service.run_sync(connection, TriggerMethod.SCHEDULED)

        assert result.final_state == SyncState.DONE
        assert result.status == "partial"
        assert ORG not in store.cursors
        assert store.sync_status[ORG]["status"] == "partial"

    @pytest.mark.asyncio
    async def test_cursor_held_when_records_fail(
        self,
        service: SyncService,
        connection: ConnectionConfig,
        store: FakeChmsStore,
    ) -> None:
        store.fail_create_for = {"3"}

        result = await service.run_sync(connection, TriggerMethod.SCHEDULED)

        assert result.stats.failed == 1
        assert ORG not in store.cursors

    @pytest.mark.asyncio
    async def test_failed_first_run_keeps_next_run_full(
        self, tmp_path: Path, provider: FakeChmsProvider
    ) -> None:
        sqlite_store = SQLiteChmsStore(str(tmp_path / "flocksync.db"))
        service = SyncService(
            identity_store=sqlite_store,
            connection_store=sqlite_store,
            adapter_factory=lambda connection: provider,
        )
        await sqlite_store.save_connection(
            ConnectionConfig(organization_id=ORG, provider="rock", credentials={"api_key": "k"})
        )
        try:
            provider.auth_error = AuthenticationError("Rock API authentication failed")
            first = await service.run_sync(
                await sqlite_store.get_connection(ORG), TriggerMethod.SCHEDULED
            )
            assert first.status == "error"

            stored = await sqlite_store.get_connection(ORG)
            assert stored.last_sync_at is None
            assert stored.last_sync_status == "error"

            provider.auth_error = None
            second = await service.run_sync(stored, TriggerMethod.SCHEDULED)
        finally:
            await sqlite_store.close_pool()

        assert provider.list_people_calls == [None]
        assert second.sync_type == "import_people"


# ============================================================================
# Driving port
# ============================================================================


class TestDrivingPort:
    @pytest.mark.asyncio
    async def test_sync_organization_requires_connection(self, service: SyncService) -> None:
        with pytest.raises(ConnectionNotFoundError):
            await service.sync_organization("org-missing")

    @pytest.mark.asyncio
    async def test_sync_organization_skips_inactive_connection(
        self, service: SyncService, store: FakeChmsStore
    ) -> None:
        store.add_connection(
            ConnectionConfig(
                organization_id="org-2", provider="ccb", credentials={}, is_active=False
            )
        )
        with pytest.raises(ConnectionNotFoundError):
            await service.sync_organization("org-2")

    @pytest.mark.asyncio
    async def test_sync_all_active_runs_each_connection(self, store: FakeChmsStore) -> None:
        store.add_connection(
            ConnectionConfig(organization_id="org-2", provider="ccb", credentials={})
        )
        providers = {ORG: FakeChmsProvider(), "org-2": FakeChmsProvider()}
        service = SyncService(store, store, lambda c: providers[c.organization_id])

        results = await service.sync_all_active()

        assert sorted(r.organization_id for r in results) == [ORG, "org-2"]
        assert all(r.trigger == TriggerMethod.SCHEDULED for r in results)
        assert all(p.authenticate_call_count == 1 for p in providers.values())

    @pytest.mark.asyncio
    async def test_test_connection_success(
        self, service: SyncService, store: FakeChmsStore, provider: FakeChmsProvider
    ) -> None:
        outcome = await service.test_connection(ORG)

        assert outcome.ok
        assert ORG in store.verified
        assert store.sync_logs[-1].sync_type == "test_connection"
        assert store.sync_logs[-1].status == "success"
        assert provider.list_people_calls == []
        assert provider.closed

    @pytest.mark.asyncio
    async def test_test_connection_failure(
        self, service: SyncService, store: FakeChmsStore, provider: FakeChmsProvider
    ) -> None:
        provider.auth_error = AuthenticationError("Rock API authentication failed: 401")

        outcome = await service.test_connection(ORG)

        assert not outcome.ok
        assert outcome.error == "Rock API authentication failed: 401"
        assert ORG not in store.verified
        assert store.sync_logs[-1].status == "error"
