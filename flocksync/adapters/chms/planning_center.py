"""Planning Center Online adapter.

Implements ChmsProviderPort against the Planning Center People and
Groups APIs, which follow JSON:API (``data``, ``included``, ``links``).

Notes:
- One hosted API for every church; no per-church base URL.
- Emails, phone numbers and addresses are side-loaded through
  ``include=`` and must be joined back to their person by relationship ID.
- Check-Ins is read-only, so attendance cannot be written back.
- Custom data lives in field data records keyed by field definition, and
  the API has no upsert, so writes look up an existing datum first.
- Rate limit is 100 requests per 20 seconds (about 300 per minute).
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import httpx

from flocksync.core.errors import AuthenticationError, ChmsApiError, ConfigurationError
from flocksync.core.field_mapping import normalize_optional_phone
from flocksync.core.models import (
    ActivityWriteBack,
    ChmsProvider,
    FamilyRole,
    NormalizedAddress,
    NormalizedFamily,
    NormalizedFamilyMember,
    NormalizedGroup,
    NormalizedGroupMember,
    NormalizedPerson,
    PersonQuery,
    PersonUpdate,
    ProviderCapabilities,
    RateLimit,
    SyncConfig,
    WriteFailure,
    WriteResult,
)

from .base import DEFAULT_TIMEOUT_SECONDS, HttpChmsAdapter

logger = logging.getLogger(__name__)

PCO_BASE_URL = "https://api.planningcenteronline.com"
PAGE_SIZE = 100
PERSON_INCLUDES = "emails,phone_numbers,addresses"

_HOUSEHOLD_POSITIONS: dict[str, FamilyRole] = {
    "primary_contact": "head",
    "head": "head",
    "spouse": "spouse",
    "child": "child",
}


class PlanningCenterAdapter(HttpChmsAdapter):
    """Planning Center adapter authenticated with an app ID and secret."""

    def __init__(
        self,
        app_id: str,
        secret: str,
        sync_config: SyncConfig | None = None,
        base_url: str = PCO_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Planning Center adapter.

        Args:
            app_id: Personal access token application ID
            secret: Personal access token secret
            sync_config: Per-connection knobs (field slug prefix)
            base_url: API root, overridable for tests
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport override
        """
        if not app_id or not secret:
            raise ConfigurationError(
                "Planning Center requires an Application ID and Secret"
            )
        super().__init__(
            base_url,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            auth=httpx.BasicAuth(app_id, secret),
            timeout=timeout,
            transport=transport,
        )
        self.sync_config = sync_config or SyncConfig()

    @property
    def provider(self) -> ChmsProvider:
        return ChmsProvider.PLANNING_CENTER

    async def authenticate(self) -> None:
        """Verify credentials with a one-row people request."""
        try:
            body = await self._get_document(
                "/people/v2/people",
                {"per_page": 1, "fields[person]": "first_name"},
            )
        except ChmsApiError as e:
            raise AuthenticationError(
                f"Planning Center authentication failed: {e}"
            ) from e
        if not isinstance(body, dict) or "data" not in body:
            raise AuthenticationError(
                "Planning Center authentication failed: unexpected response"
            )
        self._authenticated = True

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            can_write_attendance=False,
            can_write_interactions=False,
            can_write_custom_fields=True,
            custom_field_slots=None,
            has_webhooks=True,
            has_incremental_sync=True,
            max_page_size=PAGE_SIZE,
            rate_limit=RateLimit(per_minute=300),
        )

    # ------------------------------------------------------------------
    # JSON:API plumbing
    # ------------------------------------------------------------------

    async def _get_document(
        self, url: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        response = await self._send("GET", url, params=params)
        body = self._json(response)
        return body if isinstance(body, dict) else {}

    async def _get_all(
        self, path: str, params: dict[str, Any]
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Follow links.next to the end, returning (data, included)."""
        data: list[dict[str, Any]] = []
        included: list[dict[str, Any]] = []
        url: str | None = path
        page_params: dict[str, Any] | None = params
        while url:
            body = await self._get_document(url, page_params)
            data.extend(_as_list(body.get("data")))
            included.extend(body.get("included") or [])
            # links.next is a full URL that already carries the query string
            url = (body.get("links") or {}).get("next")
            page_params = None
        return data, included

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def list_people(
        self, modified_since: datetime | None = None
    ) -> list[NormalizedPerson]:
        """Return every person with side-loaded contact data joined in."""
        await self._ensure_authenticated()
        params: dict[str, Any] = {
            "per_page": PAGE_SIZE,
            "include": PERSON_INCLUDES,
            "order": "created_at",
        }
        if modified_since is not None:
            params["where[updated_at][gte]"] = _iso(modified_since)

        data, included = await self._get_all("/people/v2/people", params)
        people = self._normalize_people(data, included)
        logger.info(f"Planning Center returned {len(people)} people")
        return people

    async def search_person(self, query: PersonQuery) -> list[NormalizedPerson]:
        """Use the combined name/email/phone search, most specific term first."""
        await self._ensure_authenticated()
        term = query.email or query.phone or f"{query.first_name} {query.last_name}"
        body = await self._get_document(
            "/people/v2/people",
            {
                "where[search_name_or_email_or_phone_number]": term,
                "include": "emails,phone_numbers",
                "per_page": 10,
            },
        )
        return self._normalize_people(
            _as_list(body.get("data")), body.get("included") or []
        )

    def _normalize_people(
        self, data: list[dict[str, Any]], included: list[dict[str, Any]]
    ) -> list[NormalizedPerson]:
        index = _IncludedIndex(included)
        people = []
        for resource in data:
            person = self._normalize_person(resource, index)
            if person is None:
                logger.debug(f"Skipping Planning Center person {resource.get('id')}: no name")
                continue
            people.append(person)
        return people

    def _normalize_person(
        self, resource: dict[str, Any], index: "_IncludedIndex"
    ) -> NormalizedPerson | None:
        attrs = resource.get("attributes") or {}
        first_name = str(attrs.get("first_name") or "")
        last_name = str(attrs.get("last_name") or "")
        if not resource.get("id") or not (first_name.strip() or last_name.strip()):
            return None

        email_row = _primary(index.related(resource, "emails", "Email"))
        phone_row = _primary(index.related(resource, "phone_numbers", "PhoneNumber"))
        addresses = tuple(
            NormalizedAddress(
                street1=str(a.get("street") or a.get("street_line_1") or ""),
                street2=a.get("street_line_2") or None,
                city=str(a.get("city") or ""),
                state=str(a.get("state") or ""),
                postal_code=str(a.get("zip") or ""),
                type=_address_type(a.get("location")),
            )
            for a in (
                row.get("attributes") or {}
                for row in index.related(resource, "addresses", "Address")
            )
        )
        nickname = attrs.get("nickname")
        graduation_year = attrs.get("graduation_year")

        return NormalizedPerson(
            external_id=str(resource["id"]),
            first_name=first_name,
            last_name=last_name,
            nickname=nickname if nickname and nickname != first_name else None,
            email=(
                str((email_row.get("attributes") or {}).get("address") or "") or None
                if email_row
                else None
            ),
            phone=(
                normalize_optional_phone(
                    str((phone_row.get("attributes") or {}).get("number") or "")
                )
                if phone_row
                else None
            ),
            gender={"M": "male", "F": "female"}.get(attrs.get("gender") or ""),
            birth_date=attrs.get("birthdate") or None,
            grade=str(attrs["grade"]) if attrs.get("grade") not in (None, "") else None,
            graduation_year=(
                int(graduation_year)
                if graduation_year is not None and str(graduation_year).isdigit()
                else None
            ),
            family_role=_person_family_role(attrs.get("child")),
            addresses=addresses,
            external_created_at=attrs.get("created_at") or None,
            external_updated_at=attrs.get("updated_at") or None,
        )

    # ------------------------------------------------------------------
    # Households and groups
    # ------------------------------------------------------------------

    async def list_families(
        self, person_ids: Iterable[str] | None = None
    ) -> list[NormalizedFamily]:
        """Return households of the given people, each household once.

        People already seen as a member of a fetched household are not
        looked up again.
        """
        if person_ids is None:
            return []
        await self._ensure_authenticated()
        households: dict[str, NormalizedFamily] = {}
        covered: set[str] = set()

        for person_id in person_ids:
            if person_id in covered:
                continue
            try:
                body = await self._get_document(
                    f"/people/v2/people/{person_id}/households"
                )
            except ChmsApiError as e:
                logger.debug(f"Household lookup for person {person_id} failed: {e}")
                continue
            for household in _as_list(body.get("data")):
                household_id = str(household.get("id") or "")
                if not household_id or household_id in households:
                    continue
                family = await self._load_household(household)
                households[household_id] = family
                covered.update(family.member_ids())

        return list(households.values())

    async def _load_household(self, household: dict[str, Any]) -> NormalizedFamily:
        attrs = household.get("attributes") or {}
        primary_contact_id = str(attrs.get("primary_contact_id") or "")
        memberships, included = await self._get_all(
            f"/people/v2/households/{household['id']}/household_memberships",
            {"include": "person", "per_page": PAGE_SIZE},
        )
        people = {
            str(row.get("id")): row.get("attributes") or {}
            for row in included
            if row.get("type") == "Person"
        }

        members = []
        for membership in memberships:
            person_ref = _relationship_ids(membership, "person")
            if not person_ref:
                continue
            person_id = person_ref[0]
            person = people.get(person_id, {})
            position = str(
                (membership.get("attributes") or {}).get("person_position") or ""
            ).lower()
            role = _HOUSEHOLD_POSITIONS.get(position)
            if role is None:
                if person_id == primary_contact_id:
                    role = "head"
                elif person.get("child"):
                    role = "child"
                else:
                    role = "other"
            members.append(
                NormalizedFamilyMember(
                    external_person_id=person_id,
                    role=role,
                    first_name=str(person.get("first_name") or ""),
                    last_name=str(person.get("last_name") or ""),
                )
            )

        return NormalizedFamily(
            external_id=str(household["id"]),
            name=str(attrs.get("name") or "Household"),
            members=tuple(members),
        )

    async def list_groups(
        self, group_type_ids: Iterable[str] | None = None
    ) -> list[NormalizedGroup]:
        """Return open groups with memberships, optionally per group type."""
        await self._ensure_authenticated()
        type_ids = list(group_type_ids or [])
        queries: list[dict[str, Any]] = (
            [{"where[group_type_id]": type_id} for type_id in type_ids] or [{}]
        )

        groups: list[NormalizedGroup] = []
        for query in queries:
            data, _ = await self._get_all(
                "/groups/v2/groups",
                {"per_page": PAGE_SIZE, "filter": "open", **query},
            )
            for group in data:
                groups.append(await self._load_group(group))
        return groups

    async def _load_group(self, group: dict[str, Any]) -> NormalizedGroup:
        attrs = group.get("attributes") or {}
        members: tuple[NormalizedGroupMember, ...] = ()
        try:
            memberships, _ = await self._get_all(
                f"/groups/v2/groups/{group['id']}/memberships",
                {"per_page": PAGE_SIZE},
            )
            members = tuple(
                NormalizedGroupMember(
                    external_person_id=ids[0],
                    role="leader"
                    if (m.get("attributes") or {}).get("role") == "leader"
                    else "member",
                )
                for m in memberships
                if (ids := _relationship_ids(m, "person"))
            )
        except ChmsApiError as e:
            logger.debug(f"Memberships for group {group.get('id')} unavailable: {e}")
        return NormalizedGroup(
            external_id=str(group["id"]),
            name=str(attrs.get("name") or ""),
            description=attrs.get("description") or None,
            group_type=attrs.get("group_type") or None,
            members=members,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_person(self, person: NormalizedPerson) -> str:
        """Create a person, then attach email and phone as best-effort calls."""
        await self._ensure_authenticated()
        attributes: dict[str, Any] = {
            "first_name": person.first_name,
            "last_name": person.last_name,
        }
        gender = {"male": "M", "female": "F"}.get(person.gender or "")
        if gender:
            attributes["gender"] = gender
        if person.birth_date:
            attributes["birthdate"] = person.birth_date

        response = await self._send(
            "POST",
            "/people/v2/people",
            json={"data": {"type": "Person", "attributes": attributes}},
        )
        new_id = str((self._json(response) or {}).get("data", {}).get("id") or "")
        if not new_id:
            raise ChmsApiError("Planning Center", response.status_code, "no ID returned")

        if person.email:
            await self._create_contact(
                new_id,
                "emails",
                {"type": "Email", "attributes": {
                    "address": person.email, "location": "Home", "primary": True,
                }},
            )
        if person.phone:
            await self._create_contact(
                new_id,
                "phone_numbers",
                {"type": "PhoneNumber", "attributes": {
                    "number": person.phone, "location": "Mobile", "primary": True,
                }},
            )
        return new_id

    async def _create_contact(
        self, person_id: str, collection: str, resource: dict[str, Any]
    ) -> None:
        try:
            await self._send(
                "POST",
                f"/people/v2/people/{person_id}/{collection}",
                json={"data": resource},
            )
        except ChmsApiError as e:
            logger.warning(
                f"Planning Center person {person_id} created but {collection} failed: {e}"
            )

    async def update_person(self, external_id: str, update: PersonUpdate) -> None:
        """PATCH person attributes present in the update."""
        attributes: dict[str, Any] = {}
        if update.first_name:
            attributes["first_name"] = update.first_name
        if update.last_name:
            attributes["last_name"] = update.last_name
        if update.nickname:
            attributes["nickname"] = update.nickname
        if update.birth_date:
            attributes["birthdate"] = update.birth_date
        if update.gender is not None:
            attributes["gender"] = {"male": "M", "female": "F"}[update.gender]
        if not attributes:
            return
        await self._ensure_authenticated()
        await self._send(
            "PATCH",
            f"/people/v2/people/{external_id}",
            json={"data": {"type": "Person", "id": external_id, "attributes": attributes}},
        )

    async def write_activity(self, items: list[ActivityWriteBack]) -> WriteResult:
        """Upsert one field datum per engagement value.

        A person counts as failed when any of their fields fails.
        """
        await self._ensure_authenticated()
        prefix = self.sync_config.pco_field_prefix
        succeeded = 0
        failures: list[WriteFailure] = []

        for item in items:
            try:
                for slug, value in _field_values(prefix, item):
                    await self._upsert_field_datum(item.external_person_id, slug, value)
                succeeded += 1
            except ChmsApiError as e:
                logger.warning(
                    f"Planning Center write-back failed for person "
                    f"{item.external_person_id}: {e}"
                )
                failures.append(
                    WriteFailure(external_person_id=item.external_person_id, error=str(e))
                )

        return WriteResult(succeeded=succeeded, failures=tuple(failures))

    async def _upsert_field_datum(self, person_id: str, slug: str, value: str) -> None:
        base = f"/people/v2/people/{person_id}/field_data"
        body = await self._get_document(base, {"where[field_definition_id]": slug})
        existing = _as_list(body.get("data"))
        if existing and existing[0].get("id"):
            datum_id = existing[0]["id"]
            await self._send(
                "PATCH",
                f"{base}/{datum_id}",
                json={"data": {
                    "type": "FieldDatum", "id": datum_id, "attributes": {"value": value},
                }},
            )
            return
        await self._send(
            "POST",
            base,
            json={"data": {
                "type": "FieldDatum",
                "attributes": {"value": value},
                "relationships": {
                    "field_definition": {"data": {"type": "FieldDefinition", "id": slug}}
                },
            }},
        )


class _IncludedIndex:
    """Lookup of side-loaded JSON:API resources by (type, id) and by owner."""

    def __init__(self, included: list[dict[str, Any]]):
        self.by_key: dict[tuple[str, str], dict[str, Any]] = {}
        self.by_owner: dict[tuple[str, str], list[dict[str, Any]]] = {}
        for row in included:
            row_type = str(row.get("type") or "")
            self.by_key[(row_type, str(row.get("id")))] = row
            owner = _relationship_ids(row, "person")
            if owner:
                self.by_owner.setdefault((row_type, owner[0]), []).append(row)

    def related(
        self, resource: dict[str, Any], relationship: str, row_type: str
    ) -> list[dict[str, Any]]:
        """Rows the resource references, or rows that point back at it."""
        ids = _relationship_ids(resource, relationship)
        if ids:
            return [
                self.by_key[(row_type, rid)]
                for rid in ids
                if (row_type, rid) in self.by_key
            ]
        return self.by_owner.get((row_type, str(resource.get("id"))), [])


def _relationship_ids(resource: dict[str, Any], name: str) -> list[str]:
    data = ((resource.get("relationships") or {}).get(name) or {}).get("data")
    return [str(ref["id"]) for ref in _as_list(data) if ref.get("id")]


def _as_list(data: Any) -> list[dict[str, Any]]:
    if data is None:
        return []
    if isinstance(data, list):
        return [row for row in data if isinstance(row, dict)]
    return [data] if isinstance(data, dict) else []


def _primary(rows: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not rows:
        return None
    return next((r for r in rows if (r.get("attributes") or {}).get("primary")), rows[0])


def _address_type(location: Any):
    value = str(location or "").lower()
    if value in ("home", "work"):
        return value
    return "other" if value else None


def _person_family_role(child: Any):
    if child is True:
        return "child"
    if child is False:
        return "adult"
    return None


def _field_values(prefix: str, item: ActivityWriteBack) -> list[tuple[str, str]]:
    values = []
    if item.last_check_in:
        values.append((f"{prefix}_last_checkin", item.last_check_in))
    if item.last_text:
        values.append((f"{prefix}_last_text", item.last_text))
    if item.belonging_status:
        values.append((f"{prefix}_belonging", item.belonging_status))
    if item.total_points is not None:
        values.append((f"{prefix}_points", str(item.total_points)))
    if item.total_check_ins is not None:
        values.append((f"{prefix}_checkins", str(item.total_check_ins)))
    return values


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
