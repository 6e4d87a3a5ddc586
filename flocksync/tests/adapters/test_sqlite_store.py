"""Integration tests for the SQLite identity and connection store."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from flocksync.adapters.store.sqlite import SQLiteChmsStore
from flocksync.core.field_mapping import map_person_to_profile
from flocksync.core.models import (
    ConnectionConfig,
    NormalizedAddress,
    NormalizedPerson,
    ProfileLink,
    SyncConfig,
    SyncError,
    SyncLogEntry,
    TriggerMethod,
)

SYNCED_AT = datetime(2024, 9, 8, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
async def store(tmp_path: Path) -> SQLiteChmsStore:
    """Create a store on a temporary database file."""
    store = SQLiteChmsStore(str(tmp_path / "data" / "flocksync.db"))
    await store._init_schema()
    yield store
    await store.close_pool()


def _student() -> NormalizedPerson:
    return NormalizedPerson(
        external_id="42",
        first_name=" Sam ",
        last_name="Ray",
        email="Sam@Example.org",
        phone="+15551234567",
        grade="9",
        gender="female",
        family_id="12",
        addresses=(
            NormalizedAddress(street1="1 Main St", city="Springfield", state="IL", postal_code="62701"),
        ),
    )


# ============================================================================
# Profiles and links
# ============================================================================


@pytest.mark.asyncio
async def test_create_linked_profile_writes_all_rows(store: SQLiteChmsStore) -> None:
    person = _student()
    profile_id = await store.create_linked_profile(
        "org-1", "ccb", person, map_person_to_profile(person), "student"
    )

    assert await store.count_profiles("org-1") == 1
    assert await store.has_student_profile(profile_id)
    link = await store.get_link("org-1", "ccb", "42")
    assert link is not None
    assert link.profile_id == profile_id
    assert link.link_method == "auto_created"
    assert link.external_family_id == "12"
    assert await store.get_link_for_profile("org-1", "ccb", profile_id) == link


@pytest.mark.asyncio
async def test_guardian_profile_has_no_student_row(store: SQLiteChmsStore) -> None:
    person = NormalizedPerson(external_id="1", first_name="Pat", last_name="Ray")
    profile_id = await store.create_linked_profile(
        "org-1", "rock", person, map_person_to_profile(person), "guardian"
    )

    assert not await store.has_student_profile(profile_id)


@pytest.mark.asyncio
async def test_matching_is_scoped_to_organization(store: SQLiteChmsStore) -> None:
    profile_id = await store.add_member(
        "org-1", "Sam", "Ray", email=" Sam@Example.org", phone_number="(555) 123-4567"
    )

    by_email = await store.find_profile_by_email("org-1", "sam@example.org")
    by_phone = await store.find_profile_by_phone("org-1", "5551234567")

    assert by_email is not None and by_email.id == profile_id
    assert by_phone is not None and by_phone.id == profile_id
    assert await store.find_profile_by_email("org-2", "sam@example.org") is None
    assert await store.find_profile_by_phone("org-2", "5551234567") is None


@pytest.mark.asyncio
async def test_duplicate_link_is_rejected(store: SQLiteChmsStore) -> None:
    profile_id = await store.add_member("org-1", "Sam", "Ray")
    link = ProfileLink(
        organization_id="org-1",
        provider="rock",
        external_person_id="7",
        profile_id=profile_id,
        link_method="email_match",
    )
    await store.create_link(link)

    with pytest.raises(ValueError, match="already linked"):
        await store.create_link(link)
    assert len(await store.get_links("org-1", "rock")) == 1


@pytest.mark.asyncio
async def test_update_profile_keeps_existing_optional_fields(store: SQLiteChmsStore) -> None:
    person = _student()
    profile_id = await store.create_linked_profile(
        "org-1", "ccb", person, map_person_to_profile(person), "student"
    )
    renamed = NormalizedPerson(external_id="42", first_name="Samantha", last_name="Ray")

    await store.update_profile(profile_id, map_person_to_profile(renamed))

    profile = await store.find_profile_by_email("org-1", "sam@example.org")
    assert profile is not None
    assert profile.first_name == "Samantha"
    assert profile.phone_number == "+15551234567"


@pytest.mark.asyncio
async def test_touch_link_and_family(store: SQLiteChmsStore) -> None:
    profile_id = await store.add_member("org-1", "Sam", "Ray")
    await store.create_link(
        ProfileLink(
            organization_id="org-1",
            provider="rock",
            external_person_id="7",
            profile_id=profile_id,
            link_method="manual",
            external_alias_id="900",
        )
    )

    await store.touch_link("org-1", "rock", "7", SYNCED_AT, external_guid="guid-7")
    await store.set_link_family("org-1", "rock", "7", "300")

    link = await store.get_link("org-1", "rock", "7")
    assert link is not None
    assert link.last_synced_at == SYNCED_AT
    assert link.external_alias_id == "900"
    assert link.external_guid == "guid-7"
    assert link.external_family_id == "300"


@pytest.mark.asyncio
async def test_relationship_is_created_once(store: SQLiteChmsStore) -> None:
    parent = await store.add_member("org-1", "Pat", "Ray", role="guardian")
    student = await store.add_member("org-1", "Sam", "Ray")

    await store.create_relationship(parent, student, "parent")
    await store.create_relationship(parent, student, "guardian")

    assert await store.relationship_exists(parent, student)
    assert not await store.relationship_exists(student, parent)


# ============================================================================
# Engagement and write-back
# ============================================================================


@pytest.mark.asyncio
async def test_engagement_summary(store: SQLiteChmsStore) -> None:
    profile_id = await store.add_member("org-1", "Sam", "Ray")
    idle = await store.add_member("org-1", "Jo", "Lee")
    await store.record_check_in("org-1", profile_id, datetime(2024, 9, 1, tzinfo=timezone.utc))
    await store.record_check_in("org-1", profile_id, SYNCED_AT)
    await store.record_check_in("org-2", profile_id, datetime(2024, 10, 1, tzinfo=timezone.utc))
    await store.record_text("org-1", profile_id, datetime(2024, 9, 5, tzinfo=timezone.utc))
    await store.set_engagement_stats("org-1", profile_id, "Connected", 40)

    summary = await store.get_engagement_summary("org-1", profile_id)

    assert summary is not None
    assert summary.last_check_in == SYNCED_AT
    assert summary.total_check_ins == 2
    assert summary.last_text == datetime(2024, 9, 5, tzinfo=timezone.utc)
    assert (summary.belonging_status, summary.total_points) == ("Connected", 40)
    assert await store.get_engagement_summary("org-1", idle) is None


@pytest.mark.asyncio
async def test_mark_written_back(store: SQLiteChmsStore) -> None:
    for external_id in ("1", "2"):
        profile_id = await store.add_member("org-1", "P", external_id)
        await store.create_link(
            ProfileLink(
                organization_id="org-1",
                provider="rock",
                external_person_id=external_id,
                profile_id=profile_id,
                link_method="manual",
            )
        )

    await store.mark_written_back("org-1", "rock", ["2"], SYNCED_AT)

    links = {link.external_person_id: link for link in await store.get_links("org-1", "rock")}
    assert links["1"].last_write_back_at is None
    assert links["2"].last_write_back_at == SYNCED_AT


# ============================================================================
# Connections and sync log
# ============================================================================


@pytest.mark.asyncio
async def test_connection_round_trip_and_cursor(store: SQLiteChmsStore) -> None:
    connection = ConnectionConfig(
        organization_id="org-1",
        provider="rock",
        credentials={"api_key": "secret"},
        base_url="https://rock.example.org",
        sync_config=SyncConfig(rock_group_type_ids=("25",), rock_person_attribute_key="Youth"),
    )
    connection_id = await store.save_connection(connection)

    await store.save_sync_cursor("org-1", SYNCED_AT)
    await store.update_sync_status("org-1", "success", SYNCED_AT, None, {"processed": 3})
    await store.mark_verified("org-1", SYNCED_AT)

    loaded = await store.get_connection("org-1")
    assert loaded is not None
    assert loaded.id == connection_id
    assert loaded.credential("api_key") == "secret"
    assert loaded.last_sync_at == SYNCED_AT
    assert loaded.sync_config.rock_group_type_ids == ("25",)
    assert loaded.sync_config.rock_person_attribute_key == "Youth"
    assert loaded.sync_config.last_incremental_sync_at == SYNCED_AT.isoformat()

    # Saving again updates in place and keeps the ID
    assert await store.save_connection(connection) == connection_id


@pytest.mark.asyncio
async def test_error_status_keeps_last_sync_at(store: SQLiteChmsStore) -> None:
    await store.save_connection(
        ConnectionConfig(organization_id="org-1", provider="rock", credentials={})
    )
    later = SYNCED_AT.replace(hour=20)

    await store.update_sync_status("org-1", "success", SYNCED_AT, None, {"processed": 3})
    await store.update_sync_status("org-1", "error", later, "Rock API error: 503", {})

    loaded = await store.get_connection("org-1")
    assert loaded is not None
    assert loaded.last_sync_at == SYNCED_AT
    assert loaded.last_sync_status == "error"

    await store.update_sync_status("org-1", "partial", later, "1 record(s) failed", {})

    loaded = await store.get_connection("org-1")
    assert loaded.last_sync_at == later
    assert loaded.last_sync_status == "partial"


@pytest.mark.asyncio
async def test_inactive_connections_are_hidden(store: SQLiteChmsStore) -> None:
    await store.save_connection(
        ConnectionConfig(organization_id="org-1", provider="ccb", credentials={})
    )
    await store.save_connection(
        ConnectionConfig(
            organization_id="org-2", provider="rock", credentials={}, is_active=False
        )
    )

    assert [c.organization_id for c in await store.list_active_connections()] == ["org-1"]
    assert await store.get_connection("org-2") is None


@pytest.mark.asyncio
async def test_sync_log_round_trip(store: SQLiteChmsStore) -> None:
    entry = SyncLogEntry(
        organization_id="org-1",
        provider="rock",
        sync_type="incremental",
        trigger_method=TriggerMethod.SCHEDULED,
        status="partial",
        stats={"processed": 3, "failed": 1},
        errors=(SyncError(external_id="9", error="boom"),),
        started_at=SYNCED_AT,
        completed_at=SYNCED_AT,
    )

    await store.record_sync_log(entry)

    [loaded] = await store.get_sync_logs("org-1")
    assert loaded == entry
