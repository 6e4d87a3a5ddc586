"""Rock RMS adapter.

Implements ChmsProviderPort for Rock RMS, the self-hosted .NET ChMS,
through its OData-flavored REST API.

Rock concepts this adapter relies on:
- Families are Groups of the Family group type (id 10 by default).
- Family members carry GroupRoleId 3 (Adult) or 4 (Child).
- Person attributes are custom key/value fields; ``loadAttributes=simple``
  inlines them on person reads.
- Pagination is ``$top``/``$skip``; a short page ends the listing.
"""

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import httpx

from flocksync.core.errors import AuthenticationError, ChmsApiError, ConfigurationError
from flocksync.core.field_mapping import normalize_optional_phone
from flocksync.core.models import (
    ActivityWriteBack,
    Campus,
    ChmsProvider,
    FamilyRole,
    Interaction,
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

PAGE_SIZE = 100
FAMILY_GROUP_TYPE_ID = 10
ADULT_ROLE_ID = 3
CHILD_ROLE_ID = 4
MOBILE_PHONE_TYPE_IDS = (12, 136)
PERSON_EXPAND = "PhoneNumbers"


class RockAdapter(HttpChmsAdapter):
    """Rock RMS adapter via the REST API with an Authorization-Token key."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        sync_config: SyncConfig | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Rock adapter.

        Args:
            base_url: Rock server root (e.g., https://rock.example.org)
            api_key: REST key sent as the Authorization-Token header
            sync_config: Per-connection knobs (attribute key prefix, group types)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport override
        """
        if not base_url:
            raise ConfigurationError("Rock RMS requires a server URL")
        if not api_key:
            raise ConfigurationError("Rock RMS requires an API key")
        super().__init__(
            base_url,
            headers={
                "Authorization-Token": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self.sync_config = sync_config or SyncConfig()

    @property
    def provider(self) -> ChmsProvider:
        return ChmsProvider.ROCK

    async def authenticate(self) -> None:
        """Verify the key by fetching a single person ID."""
        try:
            response = await self._send(
                "GET", "/api/People", params={"$top": 1, "$select": "Id"}
            )
            body = self._json(response)
        except ChmsApiError as e:
            raise AuthenticationError(f"Rock API authentication failed: {e}") from e
        if not isinstance(body, list):
            raise AuthenticationError(
                "Rock API authentication failed: unexpected response"
            )
        self._authenticated = True

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            can_write_attendance=True,
            can_write_interactions=True,
            can_write_custom_fields=True,
            custom_field_slots=None,
            has_webhooks=False,
            has_incremental_sync=True,
            max_page_size=PAGE_SIZE,
            rate_limit=RateLimit(),
        )

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def _get_list(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        response = await self._send("GET", path, params=params)
        data = self._json(response)
        return data if isinstance(data, list) else []

    async def _paginate(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch every page of an OData listing."""
        rows: list[dict[str, Any]] = []
        skip = 0
        while True:
            page = await self._get_list(
                path, {**params, "$top": PAGE_SIZE, "$skip": skip}
            )
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                break
            skip += PAGE_SIZE
        return rows

    async def list_people(
        self, modified_since: datetime | None = None
    ) -> list[NormalizedPerson]:
        """Return every person, optionally only those modified since a timestamp."""
        await self._ensure_authenticated()
        params: dict[str, Any] = {
            "$expand": PERSON_EXPAND,
            "loadAttributes": "simple",
            "$orderby": "Id",
        }
        if modified_since is not None:
            stamp = modified_since.strftime("%Y-%m-%dT%H:%M:%S")
            params["$filter"] = f"ModifiedDateTime ge datetime'{stamp}'"

        rows = await self._paginate("/api/People", params)
        people = self._normalize_people(rows)
        logger.info(f"Rock returned {len(people)} people ({len(rows)} rows)")
        return people

    async def search_person(self, query: PersonQuery) -> list[NormalizedPerson]:
        """Look up by email, then phone, then exact first and last name."""
        await self._ensure_authenticated()
        params = {"loadAttributes": "simple", "$expand": PERSON_EXPAND}

        if query.email:
            rows = await self._lookup(f"/api/People/GetByEmail/{query.email}", params)
            if rows:
                return self._normalize_people(rows)

        if query.phone:
            digits = "".join(ch for ch in query.phone if ch.isdigit())
            rows = await self._lookup(f"/api/People/GetByPhoneNumber/{digits}", params)
            if rows:
                return self._normalize_people(rows)

        if query.first_name and query.last_name:
            name_filter = (
                f"FirstName eq '{_escape_odata(query.first_name)}' and "
                f"LastName eq '{_escape_odata(query.last_name)}'"
            )
            rows = await self._get_list(
                "/api/People", {**params, "$filter": name_filter, "$top": 10}
            )
            return self._normalize_people(rows)

        return []

    async def _lookup(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """GET a lookup endpoint where 404 means no match."""
        try:
            return await self._get_list(path, params)
        except ChmsApiError as e:
            if e.status_code == 404:
                return []
            raise

    # ------------------------------------------------------------------
    # Families and groups
    # ------------------------------------------------------------------

    async def list_families(
        self, person_ids: Iterable[str] | None = None
    ) -> list[NormalizedFamily]:
        """Return the family groups of the given people, each family once.

        Rock has no cheap bulk family listing, so one call is made per
        person; a person whose family lookup fails is skipped.
        """
        if person_ids is None:
            return []
        await self._ensure_authenticated()
        families: dict[str, NormalizedFamily] = {}
        for person_id in person_ids:
            try:
                rows = await self._get_list(
                    f"/api/Groups/GetFamilies/{person_id}", {"$expand": "Members"}
                )
            except ChmsApiError as e:
                logger.debug(f"Rock family lookup for person {person_id} failed: {e}")
                continue
            for row in rows:
                family_id = str(row.get("Id", ""))
                if not family_id or family_id in families:
                    continue
                families[family_id] = NormalizedFamily(
                    external_id=family_id,
                    name=row.get("Name") or "Family",
                    members=tuple(
                        self._normalize_family_member(m)
                        for m in row.get("Members") or []
                        if m.get("PersonId") is not None
                    ),
                )
        return list(families.values())

    def _normalize_family_member(self, raw: dict[str, Any]) -> NormalizedFamilyMember:
        person = raw.get("Person") or {}
        return NormalizedFamilyMember(
            external_person_id=str(raw["PersonId"]),
            role=_family_role(raw.get("GroupRoleId")),
            first_name=person.get("NickName") or person.get("FirstName") or "",
            last_name=person.get("LastName") or "",
        )

    async def list_groups(
        self, group_type_ids: Iterable[str] | None = None
    ) -> list[NormalizedGroup]:
        """Return active non-family groups, optionally limited to group types."""
        await self._ensure_authenticated()
        type_ids = list(group_type_ids or self.sync_config.rock_group_type_ids)
        group_filter = f"IsActive eq true and GroupTypeId ne {FAMILY_GROUP_TYPE_ID}"
        if type_ids:
            clauses = " or ".join(f"GroupTypeId eq {type_id}" for type_id in type_ids)
            group_filter += f" and ({clauses})"

        rows = await self._paginate(
            "/api/Groups",
            {"$filter": group_filter, "$expand": "Members", "$orderby": "Id"},
        )
        groups = []
        for row in rows:
            campus = None
            if row.get("CampusId"):
                campus = Campus(
                    id=str(row["CampusId"]),
                    name=(row.get("Campus") or {}).get("Name") or "",
                )
            groups.append(
                NormalizedGroup(
                    external_id=str(row["Id"]),
                    name=row.get("Name") or "",
                    description=row.get("Description") or None,
                    group_type=(row.get("GroupType") or {}).get("Name") or None,
                    campus=campus,
                    members=tuple(
                        NormalizedGroupMember(
                            external_person_id=str(m["PersonId"]),
                            role=(
                                "leader"
                                if (m.get("GroupRole") or {}).get("IsLeader")
                                else "member"
                            ),
                        )
                        for m in row.get("Members") or []
                        if m.get("PersonId") is not None
                    ),
                )
            )
        return groups

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_person(self, person: NormalizedPerson) -> str:
        """Create a person, then attach a mobile number when one is known."""
        await self._ensure_authenticated()
        body: dict[str, Any] = {
            "FirstName": person.first_name,
            "LastName": person.last_name,
            "NickName": person.nickname or person.first_name,
            "Gender": _gender_code(person.gender),
            "IsSystem": False,
            "RecordTypeValueId": 1,
            "RecordStatusValueId": 5,
            "ConnectionStatusValueId": 146,
        }
        if person.email:
            body["Email"] = person.email
        if person.birth_date:
            body["BirthDate"] = person.birth_date

        response = await self._send("POST", "/api/People", json=body)
        new_id = _parse_created_id(response)
        if not new_id:
            raise ChmsApiError("Rock RMS", response.status_code, "no ID returned")

        if person.phone:
            try:
                await self._send(
                    "POST",
                    "/api/PhoneNumbers",
                    json={
                        "PersonId": int(new_id),
                        "Number": "".join(ch for ch in person.phone if ch.isdigit()),
                        "NumberTypeValueId": MOBILE_PHONE_TYPE_IDS[0],
                        "IsMessagingEnabled": True,
                    },
                )
            except ChmsApiError as e:
                logger.warning(f"Rock person {new_id} created but phone failed: {e}")
        return new_id

    async def update_person(self, external_id: str, update: PersonUpdate) -> None:
        """PATCH only the fields present in the update."""
        body: dict[str, Any] = {}
        if update.first_name:
            body["FirstName"] = update.first_name
        if update.last_name:
            body["LastName"] = update.last_name
        if update.nickname:
            body["NickName"] = update.nickname
        if update.email:
            body["Email"] = update.email
        if update.birth_date:
            body["BirthDate"] = update.birth_date
        if update.gender is not None:
            body["Gender"] = _gender_code(update.gender)
        if not body:
            return
        await self._ensure_authenticated()
        await self._send("PATCH", f"/api/People/{external_id}", json=body)

    async def write_activity(self, items: list[ActivityWriteBack]) -> WriteResult:
        """Write engagement as person attributes, one call per attribute.

        Rock has no batch attribute endpoint, so cost grows with
        ``len(items) * attributes_per_item``.
        """
        await self._ensure_authenticated()
        prefix = self.sync_config.rock_person_attribute_key
        succeeded = 0
        failures: list[WriteFailure] = []

        for item in items:
            try:
                for key, value in _attribute_values(prefix, item):
                    await self._send(
                        "POST",
                        f"/api/People/AttributeValue/{item.external_person_id}",
                        json={"Key": key, "Value": value},
                    )
                if item.interaction is not None:
                    await self._write_interaction(item, item.interaction)
                succeeded += 1
            except ChmsApiError as e:
                logger.warning(
                    f"Rock write-back failed for person {item.external_person_id}: {e}"
                )
                failures.append(
                    WriteFailure(external_person_id=item.external_person_id, error=str(e))
                )

        return WriteResult(succeeded=succeeded, failures=tuple(failures))

    async def _write_interaction(
        self, item: ActivityWriteBack, interaction: Interaction
    ) -> None:
        """Log an interaction; failures here do not fail the item."""
        alias_id = item.external_alias_id or item.external_person_id
        try:
            await self._send(
                "POST",
                "/api/Interactions",
                json={
                    "PersonAliasId": int(alias_id),
                    "InteractionDateTime": interaction.date,
                    "Operation": interaction.component_name,
                    "InteractionSummary": interaction.summary,
                    "InteractionData": json.dumps(
                        {
                            "source": interaction.channel_name.lower(),
                            "component": interaction.component_name,
                        }
                    ),
                },
            )
        except (ChmsApiError, ValueError) as e:
            logger.warning(
                f"Rock interaction write failed for person {item.external_person_id}: {e}"
            )

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _normalize_people(self, rows: list[dict[str, Any]]) -> list[NormalizedPerson]:
        people = []
        for row in rows:
            person = self._normalize_person(row)
            if person is None:
                logger.debug(f"Skipping Rock person {row.get('Id')}: no name")
                continue
            people.append(person)
        return people

    def _normalize_person(self, raw: dict[str, Any]) -> NormalizedPerson | None:
        first_name = str(raw.get("FirstName") or "")
        last_name = str(raw.get("LastName") or "")
        if raw.get("Id") is None or not (first_name.strip() or last_name.strip()):
            return None

        attributes = raw.get("AttributeValues") or {}
        graduation_year = _attribute(attributes, "GraduationYear")
        grade = _attribute(attributes, "Grade")
        nickname = raw.get("NickName")

        campus = None
        if raw.get("PrimaryCampusId"):
            campus = Campus(
                id=str(raw["PrimaryCampusId"]),
                name=(raw.get("PrimaryCampus") or {}).get("Name") or "",
            )

        return NormalizedPerson(
            external_id=str(raw["Id"]),
            external_alias_id=_optional_str(raw.get("PrimaryAliasId")),
            external_guid=_optional_str(raw.get("Guid")),
            first_name=first_name,
            last_name=last_name,
            nickname=nickname if nickname and nickname != first_name else None,
            email=raw.get("Email") or None,
            phone=_primary_phone(raw.get("PhoneNumbers")),
            gender=_gender_from_code(raw.get("Gender")),
            birth_date=str(raw["BirthDate"]).split("T")[0] if raw.get("BirthDate") else None,
            grade=grade,
            graduation_year=_to_int(graduation_year),
            campus=campus,
            custom_fields={
                key: str(value["Value"])
                for key, value in attributes.items()
                if isinstance(value, dict) and value.get("Value") not in (None, "")
            },
            external_created_at=_optional_str(raw.get("CreatedDateTime")),
            external_updated_at=_optional_str(raw.get("ModifiedDateTime")),
        )


def _family_role(group_role_id: Any) -> FamilyRole:
    # Adults are all exposed as head; Rock's role ids cannot tell head from spouse.
    if group_role_id == CHILD_ROLE_ID:
        return "child"
    if group_role_id == ADULT_ROLE_ID:
        return "head"
    return "other"


def _primary_phone(numbers: Any) -> str | None:
    if not isinstance(numbers, list) or not numbers:
        return None
    mobile = next(
        (n for n in numbers if n.get("NumberTypeValueId") in MOBILE_PHONE_TYPE_IDS),
        None,
    )
    primary = mobile or numbers[0]
    return normalize_optional_phone(str(primary.get("Number") or ""))


def _attribute(attributes: dict[str, Any], key: str) -> str | None:
    value = (attributes.get(key) or {}).get("Value")
    return str(value) if value not in (None, "") else None


def _attribute_values(prefix: str, item: ActivityWriteBack) -> list[tuple[str, str]]:
    values = []
    if item.last_check_in:
        values.append((f"{prefix}LastCheckIn", item.last_check_in))
    if item.last_text:
        values.append((f"{prefix}LastText", item.last_text))
    if item.belonging_status:
        values.append((f"{prefix}Belonging", item.belonging_status))
    if item.total_points is not None:
        values.append((f"{prefix}Points", str(item.total_points)))
    if item.total_check_ins is not None:
        values.append((f"{prefix}CheckIns", str(item.total_check_ins)))
    return values


def _parse_created_id(response: httpx.Response) -> str | None:
    """Rock returns the new ID as a bare number or as a JSON object."""
    text = response.text.strip()
    if text.isdigit():
        return text
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, int):
        return str(data)
    if isinstance(data, dict) and data.get("Id"):
        return str(data["Id"])
    return None


def _gender_code(gender: str | None) -> int:
    return {"male": 1, "female": 2}.get(gender or "", 0)


def _gender_from_code(code: Any):
    return {1: "male", 2: "female"}.get(code)


def _to_int(value: str | None) -> int | None:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _optional_str(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _escape_odata(value: str) -> str:
    return value.replace("'", "''")
