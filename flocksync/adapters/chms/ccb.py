"""Church Community Builder (CCB) adapter.

Implements ChmsProviderPort against CCB's single-endpoint XML API:
``GET https://{church}.ccbchurch.com/api.php?srv=<service>&...`` with
HTTP Basic credentials.

Responses are parsed with targeted regular expressions instead of a
general XML parser. That is only sound because the handful of services
used here return narrow, stable shapes; richer endpoints should move to
a streaming XML parser rather than grow this pattern set.

Call budget. CCB allows 10,000 calls per day, the tightest limit of any
provider. The expected profile for a ministry of about 500 students is:

- full import: about 500 to 600 calls, once (20 roster pages plus one
  family lookup per person)
- write-back: about 1 call per active person per day (about 50)
- incremental poll: 1 call every 6 hours (4 per day)

which is roughly 54 calls per day at steady state. The adapter counts
calls in ``calls_made`` but does not enforce the budget.
"""

import html
import logging
import re
from collections.abc import Iterable
from datetime import datetime
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

PAGE_SIZE = 25
DAILY_CALL_LIMIT = 10_000
CUSTOM_FIELD_SLOTS = 6

_FAMILY_POSITIONS: dict[str, FamilyRole] = {
    "h": "head",
    "p": "head",  # "Primary Contact"
    "s": "spouse",
    "c": "child",
}


def _block_pattern(tag: str) -> re.Pattern[str]:
    # (?:\s[^>]*)? keeps <individual> from matching <individuals>
    return re.compile(rf"<{tag}(\s[^>]*)?>(.*?)</{tag}>", re.DOTALL)


_INDIVIDUAL = _block_pattern("individual")
_GROUP = _block_pattern("group")
_PARTICIPANT = _block_pattern("participant")
_ID_ATTR = re.compile(r'\bid="([^"]*)"')
_MOBILE_PHONE = re.compile(
    r'<phone(?:\s[^>]*)?\stype="mobile"[^>]*>(.*?)</phone>', re.DOTALL
)
_FAMILY_ID = re.compile(r'<family(?:\s[^>]*)?\sid="([^"]*)"')


def _text(xml: str, tag: str) -> str | None:
    """Text of the first <tag> element, unescaped and trimmed, or None."""
    match = re.search(rf"<{tag}(?:\s[^>]*)?>(.*?)</{tag}>", xml, re.DOTALL)
    if not match:
        return None
    value = html.unescape(match.group(1)).strip()
    return value or None


def _blocks(pattern: re.Pattern[str], xml: str) -> list[tuple[str | None, str]]:
    """Return (id attribute, inner xml) for each matching element."""
    blocks = []
    for match in pattern.finditer(xml):
        attrs = match.group(1) or ""
        id_match = _ID_ATTR.search(attrs)
        blocks.append((id_match.group(1) if id_match else None, match.group(2)))
    return blocks


class CcbAdapter(HttpChmsAdapter):
    """CCB adapter over the XML api.php endpoint."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        sync_config: SyncConfig | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize CCB adapter.

        Args:
            base_url: Church URL, e.g. mychurch.ccbchurch.com; https:// is
                added when no scheme is given
            username: API user name
            password: API password
            sync_config: Per-connection knobs (group allow-list)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport override
        """
        if not base_url:
            raise ConfigurationError(
                "CCB requires a church URL (e.g., mychurch.ccbchurch.com)"
            )
        if not username or not password:
            raise ConfigurationError("CCB requires an API username and password")
        if not base_url.startswith("http"):
            base_url = f"https://{base_url}"
        super().__init__(
            base_url,
            headers={"Accept": "text/xml"},
            auth=httpx.BasicAuth(username, password),
            timeout=timeout,
            transport=transport,
        )
        self.sync_config = sync_config or SyncConfig()

    @property
    def provider(self) -> ChmsProvider:
        return ChmsProvider.CCB

    async def _call(
        self,
        service: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> str:
        """Invoke one CCB service. Writes send their fields as a form body."""
        query = {"srv": service, **(params or {})}
        if data is None:
            response = await self._send("GET", "/api.php", params=query)
        else:
            response = await self._send("POST", "/api.php", params=query, data=data)
        return response.text

    async def authenticate(self) -> None:
        """Verify credentials with the api_status service."""
        try:
            xml = await self._call("api_status")
        except ChmsApiError as e:
            raise AuthenticationError(f"CCB authentication failed: {e}") from e
        if "<response" not in xml:
            raise AuthenticationError("CCB authentication failed: unexpected response")
        self._authenticated = True

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            can_write_attendance=True,
            can_write_interactions=False,
            can_write_custom_fields=True,
            custom_field_slots=CUSTOM_FIELD_SLOTS,
            has_webhooks=False,
            has_incremental_sync=True,
            max_page_size=PAGE_SIZE,
            rate_limit=RateLimit(per_day=DAILY_CALL_LIMIT),
        )

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def list_people(
        self, modified_since: datetime | None = None
    ) -> list[NormalizedPerson]:
        """Page through individual_profiles until a short page."""
        await self._ensure_authenticated()
        people: list[NormalizedPerson] = []
        page = 1
        while True:
            params: dict[str, Any] = {"page": page, "per_page": PAGE_SIZE}
            if modified_since is not None:
                params["modified_since"] = modified_since.strftime("%Y-%m-%d")
            xml = await self._call("individual_profiles", params)
            blocks = _blocks(_INDIVIDUAL, xml)
            people.extend(self._parse_individuals(blocks))
            # Count raw rows, so nameless records do not end paging early
            if len(blocks) < PAGE_SIZE:
                break
            page += 1
        logger.info(f"CCB returned {len(people)} people in {page} pages")
        return people

    async def search_person(self, query: PersonQuery) -> list[NormalizedPerson]:
        """Run individual_search with whatever criteria are present."""
        await self._ensure_authenticated()
        params = {
            key: value
            for key, value in (
                ("email", query.email),
                ("phone", query.phone),
                ("first_name", query.first_name),
                ("last_name", query.last_name),
            )
            if value
        }
        xml = await self._call("individual_search", params)
        return self._parse_individuals(_blocks(_INDIVIDUAL, xml))

    def _parse_individuals(
        self, blocks: list[tuple[str | None, str]]
    ) -> list[NormalizedPerson]:
        people = []
        for individual_id, body in blocks:
            first_name = _text(body, "first_name") or ""
            last_name = _text(body, "last_name") or ""
            if not individual_id or not (first_name or last_name):
                logger.debug(f"Skipping CCB individual {individual_id}: no id or name")
                continue

            mobile = _MOBILE_PHONE.search(body)
            addresses: tuple[NormalizedAddress, ...] = ()
            street = _text(body, "street_address")
            if street:
                addresses = (
                    NormalizedAddress(
                        street1=street,
                        city=_text(body, "city") or "",
                        state=_text(body, "state") or "",
                        postal_code=_text(body, "zip") or "",
                        type="home",
                    ),
                )
            position = (_text(body, "family_position") or "").lower()
            graduation_year = _text(body, "graduation_year")

            people.append(
                NormalizedPerson(
                    external_id=individual_id,
                    first_name=first_name,
                    last_name=last_name,
                    email=_text(body, "email"),
                    phone=(
                        normalize_optional_phone(html.unescape(mobile.group(1)))
                        if mobile
                        else None
                    ),
                    gender={"M": "male", "F": "female"}.get(_text(body, "gender") or ""),
                    birth_date=_text(body, "birthday"),
                    grade=_text(body, "grade"),
                    graduation_year=(
                        int(graduation_year)
                        if graduation_year and graduation_year.isdigit()
                        else None
                    ),
                    family_id=_text(body, "family_id"),
                    family_role=(
                        "child" if position.startswith("c") else "adult"
                    ) if position else None,
                    addresses=addresses,
                    external_updated_at=_text(body, "modified_date"),
                )
            )
        return people

    # ------------------------------------------------------------------
    # Families and groups
    # ------------------------------------------------------------------

    async def list_families(
        self, person_ids: Iterable[str] | None = None
    ) -> list[NormalizedFamily]:
        """One family_detail call per person not already covered by a family."""
        if person_ids is None:
            return []
        await self._ensure_authenticated()
        families: dict[str, NormalizedFamily] = {}
        covered: set[str] = set()
        for person_id in person_ids:
            if person_id in covered:
                continue
            try:
                xml = await self._call("family_detail", {"individual_id": person_id})
            except ChmsApiError as e:
                logger.debug(f"CCB family lookup for {person_id} failed: {e}")
                continue
            family = _parse_family(xml)
            if family is None or family.external_id in families:
                continue
            families[family.external_id] = family
            covered.update(family.member_ids())
        return list(families.values())

    async def list_groups(
        self, group_type_ids: Iterable[str] | None = None
    ) -> list[NormalizedGroup]:
        """List group profiles, then fetch participants for each kept group.

        CCB has no group-type filter on group_profiles, so the allow-list
        (argument or the connection's ccb_group_ids) is matched on group ID.
        """
        await self._ensure_authenticated()
        allowed = set(group_type_ids or self.sync_config.ccb_group_ids)
        xml = await self._call("group_profiles")

        groups = []
        for group_id, body in _blocks(_GROUP, xml):
            if not group_id or (allowed and group_id not in allowed):
                continue
            members: tuple[NormalizedGroupMember, ...] = ()
            try:
                participants = await self._call("group_participants", {"id": group_id})
                members = tuple(
                    NormalizedGroupMember(
                        external_person_id=participant_id,
                        role="leader"
                        if "true" in (
                            _text(p_body, "group_leader"),
                            _text(p_body, "leader"),
                        )
                        else "member",
                    )
                    for participant_id, p_body in _blocks(_PARTICIPANT, participants)
                    if participant_id
                )
            except ChmsApiError as e:
                logger.debug(f"CCB participants for group {group_id} unavailable: {e}")
            groups.append(
                NormalizedGroup(
                    external_id=group_id,
                    name=_text(body, "name") or "",
                    description=_text(body, "description"),
                    group_type=_text(body, "group_type"),
                    members=members,
                )
            )
        return groups

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_person(self, person: NormalizedPerson) -> str:
        await self._ensure_authenticated()
        fields: dict[str, Any] = {
            "first_name": person.first_name,
            "last_name": person.last_name,
        }
        if person.email:
            fields["email"] = person.email
        if person.phone:
            fields["mobile_phone"] = person.phone
        if person.gender:
            fields["gender"] = "M" if person.gender == "male" else "F"
        if person.birth_date:
            fields["birthday"] = person.birth_date

        xml = await self._call("create_individual", data=fields)
        match = re.search(r'<individual(?:\s[^>]*)?\sid="(\d+)"', xml)
        if not match:
            raise ChmsApiError("CCB", None, "no individual ID in create response")
        return match.group(1)

    async def update_person(self, external_id: str, update: PersonUpdate) -> None:
        fields: dict[str, Any] = {}
        if update.first_name:
            fields["first_name"] = update.first_name
        if update.last_name:
            fields["last_name"] = update.last_name
        if update.email:
            fields["email"] = update.email
        if update.phone:
            fields["mobile_phone"] = update.phone
        if not fields:
            return
        await self._ensure_authenticated()
        await self._call(
            "update_individual", {"individual_id": external_id}, data=fields
        )

    async def write_activity(self, items: list[ActivityWriteBack]) -> WriteResult:
        """One update_individual call per person, using the udf_text slots.

        Slot layout: 1 last check-in, 2 last text, 3 belonging status,
        4 points, 5 check-in count, 6 local profile ID for reverse linking.
        """
        await self._ensure_authenticated()
        succeeded = 0
        failures: list[WriteFailure] = []

        for item in items:
            fields = _udf_fields(item)
            if not fields:
                continue
            try:
                await self._call(
                    "update_individual",
                    {"individual_id": item.external_person_id},
                    data=fields,
                )
                succeeded += 1
            except ChmsApiError as e:
                logger.warning(
                    f"CCB write-back failed for individual {item.external_person_id}: {e}"
                )
                failures.append(
                    WriteFailure(external_person_id=item.external_person_id, error=str(e))
                )

        return WriteResult(succeeded=succeeded, failures=tuple(failures))


def _parse_family(xml: str) -> NormalizedFamily | None:
    id_match = _FAMILY_ID.search(xml)
    if not id_match or not id_match.group(1):
        return None
    members = []
    seen: set[str] = set()
    for individual_id, body in _blocks(_INDIVIDUAL, xml):
        if not individual_id or individual_id in seen:
            continue
        seen.add(individual_id)
        position = (_text(body, "family_position") or "o").lower()
        members.append(
            NormalizedFamilyMember(
                external_person_id=individual_id,
                role=_FAMILY_POSITIONS.get(position[:1], "other"),
                first_name=_text(body, "first_name") or "",
                last_name=_text(body, "last_name") or "",
            )
        )
    name = _text(xml, "family_name")
    if not name:
        name = f"{members[0].last_name} Family" if members and members[0].last_name else "Family"
    return NormalizedFamily(
        external_id=id_match.group(1), name=name, members=tuple(members)
    )


def _udf_fields(item: ActivityWriteBack) -> dict[str, str]:
    fields: dict[str, str] = {}
    if item.last_check_in:
        fields["udf_text_1"] = item.last_check_in
    if item.last_text:
        fields["udf_text_2"] = item.last_text
    if item.belonging_status:
        fields["udf_text_3"] = item.belonging_status
    if item.total_points is not None:
        fields["udf_text_4"] = str(item.total_points)
    if item.total_check_ins is not None:
        fields["udf_text_5"] = str(item.total_check_ins)
    if fields and item.local_profile_id:
        fields["udf_text_6"] = item.local_profile_id
    return fields
