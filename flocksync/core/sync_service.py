"""Sync engine for the ChMS integration layer.

This module implements one sync run per connection:

    authenticate → import → match → link → family sync → write back → log

Authentication and the roster fetch are fatal: without a complete roster
nothing downstream can be trusted. Everything after that is isolated per
record, so one bad person, family or write-back item is recorded as an
error and the run continues.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from .errors import ConnectionNotFoundError
from .field_mapping import (
    activity_from_engagement,
    limit_activity_fields,
    map_normalized_role_to_org_role,
    map_person_to_profile,
    normalize_email,
    normalize_phone_for_match,
    relationship_for_family_role,
    strip_attendance,
)
from .models import (
    ActivityWriteBack,
    ConnectionConfig,
    ConnectionTestResult,
    NormalizedFamily,
    NormalizedPerson,
    ProfileLink,
    ProviderCapabilities,
    SyncLogEntry,
    SyncResult,
    SyncRun,
    SyncState,
    SyncType,
    TriggerMethod,
)
from .ports import (
    ChmsProviderPort,
    ConnectionStorePort,
    IdentityStorePort,
    SyncPort,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ConnectionConfig], ChmsProviderPort]

# Shorter canonical phones match too many unrelated numbers.
MIN_PHONE_MATCH_DIGITS = 7


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring malformed sync cursor {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SyncService(SyncPort):
    """Implements the sync pipeline.

    This service orchestrates:
    - Authenticating and importing the provider roster
    - Matching people to local profiles and linking them
    - Synthesizing parent/guardian relationships from households
    - Writing engagement data back to the provider
    - Recording the run in the sync log and on the connection
    """

    def __init__(
        self,
        identity_store: IdentityStorePort,
        connection_store: ConnectionStorePort,
        adapter_factory: AdapterFactory,
        write_back_enabled: bool = True,
        incremental_sync: bool = True,
    ):
        """Initialize the service.

        Args:
            identity_store: Local profiles, links and relationships.
            connection_store: Connection rows and the sync log.
            adapter_factory: Builds an unauthenticated adapter for a connection.
            write_back_enabled: When False, the write-back step is skipped.
            incremental_sync: When True, scheduled and webhook runs only
                fetch people changed since the stored cursor.
        """
        self.identity_store = identity_store
        self.connection_store = connection_store
        self.adapter_factory = adapter_factory
        self.write_back_enabled = write_back_enabled
        self.incremental_sync = incremental_sync

    # ------------------------------------------------------------------
    # Driving port
    # ------------------------------------------------------------------

    async def sync_organization(
        self,
        organization_id: str,
        trigger: TriggerMethod = TriggerMethod.MANUAL,
    ) -> SyncResult:
        connection = await self.connection_store.get_connection(organization_id)
        if connection is None or not connection.is_active:
            raise ConnectionNotFoundError(organization_id)
        return await self.run_sync(connection, trigger)

    async def sync_all_active(
        self, trigger: TriggerMethod = TriggerMethod.SCHEDULED
    ) -> list[SyncResult]:
        """Run every active connection concurrently.

        Connections share no mutable state; each run is scoped to its own
        organization.
        """
        connections = await self.connection_store.list_active_connections()
        if not connections:
            logger.debug("No active ChMS connections to sync")
            return []

        outcomes = await asyncio.gather(
            *(self.run_sync(connection, trigger) for connection in connections),
            return_exceptions=True,
        )
        results: list[SyncResult] = []
        for connection, outcome in zip(connections, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Sync for organization {connection.organization_id} crashed: "
                    f"{outcome}",
                    exc_info=outcome,
                )
                continue
            results.append(outcome)
        return results

    async def test_connection(self, organization_id: str) -> ConnectionTestResult:
        connection = await self.connection_store.get_connection(organization_id)
        if connection is None:
            raise ConnectionNotFoundError(organization_id)

        started_at = _now()
        try:
            adapter = self.adapter_factory(connection)
        except ValueError as e:
            result = ConnectionTestResult(ok=False, error=str(e))
        else:
            try:
                result = await adapter.test_connection()
            finally:
                await adapter.close()

        completed_at = _now()
        if result.ok:
            await self.connection_store.mark_verified(organization_id, completed_at)
        await self._record_log(
            SyncLogEntry(
                organization_id=organization_id,
                provider=connection.provider,
                sync_type="test_connection",
                trigger_method=TriggerMethod.MANUAL,
                status="success" if result.ok else "error",
                stats={},
                errors=(),
                started_at=started_at,
                completed_at=completed_at,
                error_message=result.error,
            )
        )
        return result

    async def run_sync(
        self,
        connection: ConnectionConfig,
        trigger: TriggerMethod = TriggerMethod.MANUAL,
    ) -> SyncResult:
        run = SyncRun(
            organization_id=connection.organization_id,
            provider=connection.provider,
            trigger=trigger,
            started_at=_now(),
        )
        modified_since = self._cursor_for(connection, trigger)
        sync_type: SyncType = "incremental" if modified_since else "import_people"
        logger.info(
            f"Starting {sync_type} sync for organization {run.organization_id} "
            f"({run.provider}, trigger={trigger.value})"
        )

        adapter: ChmsProviderPort | None = None
        imported_cleanly = False
        try:
            try:
                adapter = self.adapter_factory(connection)
                await adapter.authenticate()
            except Exception as e:
                logger.error(
                    f"Authentication failed for organization {run.organization_id}: {e}",
                    exc_info=True,
                )
                run.fail(str(e))
            else:
                try:
                    await self._run_pipeline(run, adapter, modified_since)
                except Exception as e:
                    logger.error(
                        f"Sync for organization {run.organization_id} stopped early: {e}",
                        exc_info=True,
                    )
                    run.record_error("sync", str(e))
                else:
                    imported_cleanly = (
                        run.state != SyncState.FAILED and run.stats.failed == 0
                    )
            if run.state != SyncState.FAILED:
                self._advance(run, SyncState.DONE)
        finally:
            if adapter is not None:
                await adapter.close()

        result = SyncResult(
            organization_id=run.organization_id,
            provider=run.provider,
            trigger=trigger,
            sync_type=sync_type,
            final_state=run.state,
            stats=run.stats,
            errors=tuple(run.errors),
            started_at=run.started_at,
            completed_at=_now(),
            error_message=run.error_message,
        )
        await self._persist_outcome(connection, result, advance_cursor=imported_cleanly)
        logger.info(
            f"Sync for organization {result.organization_id} finished with "
            f"status={result.status}: {result.stats.as_dict()}"
        )
        return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_pipeline(
        self,
        run: SyncRun,
        adapter: ChmsProviderPort,
        modified_since: datetime | None,
    ) -> None:
        self._advance(run, SyncState.IMPORTING)
        try:
            people = await adapter.list_people(modified_since)
        except Exception as e:
            logger.error(
                f"Failed to fetch roster for organization {run.organization_id}: {e}",
                exc_info=True,
            )
            run.fail(str(e))
            return
        run.stats.processed = len(people)

        self._advance(run, SyncState.MATCHING)
        links = {
            link.external_person_id: link
            for link in await self.identity_store.get_links(
                run.organization_id, run.provider
            )
        }

        self._advance(run, SyncState.LINKING)
        newly_linked: list[str] = []
        for person in people:
            try:
                outcome = await self._process_person(run, person, links)
            except Exception as e:
                logger.error(
                    f"Failed to process external person {person.external_id}: {e}",
                    exc_info=True,
                )
                run.stats.failed += 1
                run.record_error(person.external_id, str(e))
                continue
            setattr(run.stats, outcome, getattr(run.stats, outcome) + 1)
            if outcome in ("created", "linked"):
                newly_linked.append(person.external_id)

        self._advance(run, SyncState.FAMILY_SYNC)
        if newly_linked:
            await self._sync_families(run, adapter, newly_linked)

        self._advance(run, SyncState.WRITING_BACK)
        if self.write_back_enabled:
            await self._write_back(run, adapter)

        self._advance(run, SyncState.LOGGING)

    async def _process_person(
        self,
        run: SyncRun,
        person: NormalizedPerson,
        links: dict[str, ProfileLink],
    ) -> str:
        """Reconcile one person and return the stats counter to bump."""
        org_id, provider = run.organization_id, run.provider
        synced_at = _now()
        mapping = map_person_to_profile(person)

        existing = links.get(person.external_id)
        if existing is not None:
            await self.identity_store.update_profile(existing.profile_id, mapping)
            await self.identity_store.touch_link(
                org_id,
                provider,
                person.external_id,
                synced_at,
                external_alias_id=person.external_alias_id,
                external_guid=person.external_guid,
            )
            return "updated"

        profile = None
        method = "email_match"
        if person.email:
            profile = await self.identity_store.find_profile_by_email(
                org_id, normalize_email(person.email)
            )
        if profile is None and person.phone:
            canonical = normalize_phone_for_match(person.phone)
            if len(canonical) >= MIN_PHONE_MATCH_DIGITS:
                profile = await self.identity_store.find_profile_by_phone(
                    org_id, canonical
                )
                method = "phone_match"

        if profile is not None:
            taken = await self.identity_store.get_link_for_profile(
                org_id, provider, profile.id
            )
            if taken is not None:
                logger.debug(
                    f"Profile {profile.id} already linked to external person "
                    f"{taken.external_person_id}; skipping {person.external_id}"
                )
                return "skipped"
            link = ProfileLink(
                organization_id=org_id,
                provider=provider,
                external_person_id=person.external_id,
                profile_id=profile.id,
                link_method=method,
                external_alias_id=person.external_alias_id,
                external_guid=person.external_guid,
                external_family_id=person.family_id,
                last_synced_at=synced_at,
            )
            await self.identity_store.create_link(link)
            links[person.external_id] = link
            return "linked"

        org_role = map_normalized_role_to_org_role(person.family_role, person.birth_date)
        profile_id = await self.identity_store.create_linked_profile(
            org_id, provider, person, mapping, org_role
        )
        links[person.external_id] = ProfileLink(
            organization_id=org_id,
            provider=provider,
            external_person_id=person.external_id,
            profile_id=profile_id,
            link_method="auto_created",
            external_alias_id=person.external_alias_id,
            external_guid=person.external_guid,
            external_family_id=person.family_id,
            last_synced_at=synced_at,
        )
        return "created"

    async def _sync_families(
        self,
        run: SyncRun,
        adapter: ChmsProviderPort,
        person_ids: list[str],
    ) -> None:
        """Fetch households for newly linked people in one call and link parents."""
        try:
            families = await adapter.list_families(person_ids)
        except Exception as e:
            logger.error(f"Failed to fetch families: {e}", exc_info=True)
            run.record_error("families", str(e))
            return

        profiles = {
            link.external_person_id: link.profile_id
            for link in await self.identity_store.get_links(
                run.organization_id, run.provider
            )
        }
        for family in families:
            try:
                await self._sync_family(run, family, profiles)
                run.stats.families_synced += 1
            except Exception as e:
                logger.error(
                    f"Failed to sync family {family.external_id}: {e}", exc_info=True
                )
                run.record_error(family.external_id, str(e))

    async def _sync_family(
        self,
        run: SyncRun,
        family: NormalizedFamily,
        profiles: dict[str, str],
    ) -> None:
        children = [
            profiles[m.external_person_id]
            for m in family.children
            if m.external_person_id in profiles
        ]
        guardians = [
            (profiles[m.external_person_id], relationship)
            for m in family.members
            if m.external_person_id in profiles
            and (relationship := relationship_for_family_role(m.role)) is not None
        ]
        for child_profile in children:
            for parent_profile, relationship in guardians:
                if parent_profile == child_profile:
                    continue
                if await self.identity_store.relationship_exists(
                    parent_profile, child_profile
                ):
                    continue
                await self.identity_store.create_relationship(
                    parent_profile, child_profile, relationship
                )
                run.stats.relationships_created += 1

        for member in family.members:
            if member.external_person_id in profiles:
                await self.identity_store.set_link_family(
                    run.organization_id,
                    run.provider,
                    member.external_person_id,
                    family.external_id,
                )

    async def _write_back(self, run: SyncRun, adapter: ChmsProviderPort) -> None:
        """Push engagement for links with activity newer than their last write-back."""
        capabilities = adapter.capabilities()
        if not capabilities.can_write_activity:
            return

        items: list[ActivityWriteBack] = []
        for link in await self.identity_store.get_links(
            run.organization_id, run.provider
        ):
            try:
                item = await self._build_activity(run, link, capabilities)
            except Exception as e:
                logger.error(
                    f"Failed to build write-back for {link.external_person_id}: {e}",
                    exc_info=True,
                )
                run.record_error(link.external_person_id, str(e))
                continue
            if item is not None:
                items.append(item)

        if not items:
            logger.debug("No activity to write back")
            return

        try:
            result = await adapter.write_activity(items)
        except Exception as e:
            logger.error(f"Activity write-back failed: {e}", exc_info=True)
            run.stats.activity_failed += len(items)
            return

        run.stats.activity_written += result.succeeded
        run.stats.activity_failed += result.failed
        failed_ids = result.failed_ids
        written = [
            item.external_person_id
            for item in items
            if item.external_person_id not in failed_ids
        ]
        if written:
            await self.identity_store.mark_written_back(
                run.organization_id, run.provider, written, _now()
            )

    async def _build_activity(
        self,
        run: SyncRun,
        link: ProfileLink,
        capabilities: ProviderCapabilities,
    ) -> ActivityWriteBack | None:
        engagement = await self.identity_store.get_engagement_summary(
            run.organization_id, link.profile_id
        )
        if engagement is None:
            return None
        last_written = _aware(link.last_write_back_at)
        latest = _aware(engagement.latest_activity())
        if last_written is not None and (latest is None or latest <= last_written):
            return None

        item = activity_from_engagement(
            link.external_person_id, engagement, link.external_alias_id
        )
        if not capabilities.can_write_attendance:
            item = strip_attendance(item)
        if not capabilities.can_write_interactions and item.interaction is not None:
            item = replace(item, interaction=None)
        if not capabilities.can_write_custom_fields:
            item = ActivityWriteBack(
                external_person_id=item.external_person_id,
                external_alias_id=item.external_alias_id,
                local_profile_id=item.local_profile_id,
                interaction=item.interaction,
            )
        item = limit_activity_fields(item, capabilities.custom_field_slots)
        return item if item.has_data() else None

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _cursor_for(
        self, connection: ConnectionConfig, trigger: TriggerMethod
    ) -> datetime | None:
        if not self.incremental_sync or trigger == TriggerMethod.MANUAL:
            return None
        cursor = _parse_timestamp(connection.sync_config.last_incremental_sync_at)
        if cursor is None and connection.last_sync_status == "success":
            cursor = _aware(connection.last_sync_at)
        return cursor

    def _advance(self, run: SyncRun, state: SyncState) -> None:
        logger.debug(f"Organization {run.organization_id}: {run.state.value} -> {state.value}")
        run.advance(state)

    async def _persist_outcome(
        self,
        connection: ConnectionConfig,
        result: SyncResult,
        advance_cursor: bool = False,
    ) -> None:
        """Write the log row, connection status and cursor; never raises.

        The cursor only moves when every fetched person was processed, so a
        run that stopped early or dropped records re-reads them next time.
        """
        org_id = result.organization_id
        await self._record_log(SyncLogEntry.from_result(result))
        try:
            error = result.error_message
            if error is None and result.errors:
                error = f"{result.failed} record(s) failed"
            await self.connection_store.update_sync_status(
                org_id,
                result.status,
                result.completed_at,
                error,
                result.stats.as_dict(),
            )
            if advance_cursor and result.final_state == SyncState.DONE:
                await self.connection_store.save_sync_cursor(org_id, result.started_at)
        except Exception as e:
            logger.error(
                f"Failed to record sync status for organization {org_id}: {e}",
                exc_info=True,
            )

    async def _record_log(self, entry: SyncLogEntry) -> None:
        try:
            await self.connection_store.record_sync_log(entry)
        except Exception as e:
            logger.error(
                f"Failed to write sync log for organization {entry.organization_id}: {e}",
                exc_info=True,
            )

