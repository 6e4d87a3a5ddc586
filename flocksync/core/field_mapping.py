"""Field mapping between normalized ChMS entities and local identity fields.

Every function here is pure and never raises on malformed provider data:
bad values are discarded or defaulted, since provider data quality is
inconsistent. Every adapter funnels phones through normalize_phone, and
the sync engine funnels every person through map_person_to_profile.
"""

import re
from dataclasses import replace
from datetime import date, datetime

from .models import (
    ActivityWriteBack,
    EngagementSummary,
    FamilyRole,
    Interaction,
    NormalizedPerson,
    OrgRole,
    PersonFamilyRole,
    ProfileFields,
    ProfileMapping,
    Relationship,
    StudentProfileFields,
)

_NON_DIGITS = re.compile(r"[^0-9]")

# Age below which an unclassified person is treated as a student.
STUDENT_AGE_CUTOFF = 20

# School years roll over in July (month index 6 when zero-based).
SCHOOL_YEAR_START_MONTH = 7

# Write-back fields in descending priority. Providers with a finite number
# of custom-field slots keep only the first N populated fields.
ACTIVITY_FIELD_PRIORITY: tuple[str, ...] = (
    "last_check_in",
    "belonging_status",
    "last_text",
    "total_check_ins",
    "total_points",
)

ATTENDANCE_FIELDS: frozenset[str] = frozenset({"last_check_in", "total_check_ins"})


# ============================================================================
# PHONE AND EMAIL
# ============================================================================


def normalize_phone(phone: str) -> str:
    """Canonicalize a phone number to E.164.

    10 digits become ``+1XXXXXXXXXX``; 11 digits starting with 1 become
    ``+1XXXXXXXXXX``; anything else becomes ``+<digits>``.

    Args:
        phone: Raw provider phone string in any format.

    Returns:
        E.164-style string. Never raises.
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def normalize_optional_phone(phone: str | None) -> str | None:
    """Like normalize_phone, but returns None when there are no digits at all."""
    if not phone or not _NON_DIGITS.sub("", phone):
        return None
    return normalize_phone(phone)


def normalize_phone_for_match(phone: str) -> str:
    """Reduce a phone to digits for comparison, stripping a US country code."""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def normalize_email(email: str) -> str:
    """Lowercase and trim an email for comparison."""
    return (email or "").strip().lower()


# ============================================================================
# GRADE AND AGE
# ============================================================================


def _school_reference_year(today: date) -> int:
    return today.year + 1 if today.month >= SCHOOL_YEAR_START_MONTH else today.year


def grade_from_graduation_year(
    graduation_year: int | None, today: date | None = None
) -> str | None:
    """Calculate a US school grade from an expected graduation year.

    Seniors graduate in spring, so from July onward the next school year's
    graduating class is the reference.

    Args:
        graduation_year: e.g. 2028.
        today: Reference date; defaults to the current date.

    Returns:
        Grade "1" through "12", or None when out of range or unknown.
    """
    if not graduation_year:
        return None
    reference = _school_reference_year(today or date.today())
    grade = 12 - (graduation_year - reference)
    if grade < 1 or grade > 12:
        return None
    return str(grade)


def graduation_year_from_grade(grade: str | int | None, today: date | None = None) -> int | None:
    """Inverse of grade_from_graduation_year for numeric grades 1..12."""
    try:
        value = int(str(grade).strip())
    except (TypeError, ValueError):
        return None
    if value < 1 or value > 12:
        return None
    return _school_reference_year(today or date.today()) + (12 - value)


def resolve_grade(person: NormalizedPerson, today: date | None = None) -> str | None:
    """Prefer the explicit grade, falling back to the graduation year."""
    if person.grade and person.grade.strip():
        return person.grade.strip()
    return grade_from_graduation_year(person.graduation_year, today)


def parse_birth_date(value: str | None) -> date | None:
    """Parse an ISO date (or datetime) string, returning None when malformed."""
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def calculate_age(birth_date: str | None, today: date | None = None) -> int | None:
    """Whole years between birth_date and today, or None when unparseable."""
    born = parse_birth_date(birth_date)
    if born is None:
        return None
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


# ============================================================================
# PROFILE MAPPING
# ============================================================================


def map_person_to_profile(
    person: NormalizedPerson, today: date | None = None
) -> ProfileMapping:
    """Translate a NormalizedPerson into profile and student-profile fields."""
    primary = person.addresses[0] if person.addresses else None
    email = person.email.strip() if person.email else ""
    return ProfileMapping(
        profile=ProfileFields(
            first_name=person.first_name.strip(),
            last_name=person.last_name.strip(),
            email=email or None,
            phone_number=person.phone or None,
            date_of_birth=person.birth_date or None,
        ),
        student=StudentProfileFields(
            grade=resolve_grade(person, today),
            address=(primary.street1 or None) if primary else None,
            city=(primary.city or None) if primary else None,
            state=(primary.state or None) if primary else None,
            zip=(primary.postal_code or None) if primary else None,
            gender=person.gender or None,
        ),
    )


# ============================================================================
# ROLE MAPPING
# ============================================================================


def map_family_role_to_org_role(
    role: FamilyRole, birth_date: str | None = None, today: date | None = None
) -> OrgRole:
    """Map a household role to an organization membership role.

    head and spouse are guardians, child is a student. "other" is a student
    when the birth date shows someone under 20, otherwise a guardian.
    """
    if role == "child":
        return "student"
    if role in ("head", "spouse"):
        return "guardian"
    age = calculate_age(birth_date, today)
    if age is not None and age < STUDENT_AGE_CUTOFF:
        return "student"
    return "guardian"


def map_normalized_role_to_org_role(
    family_role: PersonFamilyRole | None,
    birth_date: str | None = None,
    today: date | None = None,
) -> OrgRole:
    """Map NormalizedPerson.family_role to an organization membership role.

    Unknown roles fall back to age, and default to student.
    """
    if family_role == "child":
        return "student"
    if family_role == "adult":
        return "guardian"
    age = calculate_age(birth_date, today)
    if age is not None:
        return "student" if age < STUDENT_AGE_CUTOFF else "guardian"
    return "student"


def relationship_for_family_role(role: FamilyRole) -> Relationship | None:
    """Relationship a household adult holds to a child in the same household.

    Returns None for children, who are never the parent side.
    """
    if role in ("head", "spouse"):
        return "parent"
    if role == "other":
        return "guardian"
    return None


# ============================================================================
# ACTIVITY WRITE-BACK
# ============================================================================


def _iso_date(value: datetime | None) -> str | None:
    return value.date().isoformat() if value else None


def activity_from_engagement(
    external_person_id: str,
    engagement: EngagementSummary,
    external_alias_id: str | None = None,
) -> ActivityWriteBack:
    """Build the write-back payload for one linked person.

    The structured interaction describes the most recent activity, so
    providers with an activity log get one entry per run.
    """
    interaction = None
    latest = engagement.latest_activity()
    if latest is not None:
        if latest == engagement.last_check_in:
            interaction = Interaction(
                date=latest.isoformat(),
                component_name="Check-In",
                summary="Checked in",
            )
        else:
            interaction = Interaction(
                date=latest.isoformat(),
                component_name="SMS",
                summary="Texted with ministry team",
            )
    return ActivityWriteBack(
        external_person_id=external_person_id,
        external_alias_id=external_alias_id,
        local_profile_id=engagement.profile_id,
        last_check_in=_iso_date(engagement.last_check_in),
        last_text=_iso_date(engagement.last_text),
        belonging_status=engagement.belonging_status,
        total_points=engagement.total_points,
        total_check_ins=engagement.total_check_ins,
        interaction=interaction,
    )


def strip_attendance(activity: ActivityWriteBack) -> ActivityWriteBack:
    """Remove attendance-shaped data for providers that cannot accept it."""
    interaction = activity.interaction
    if interaction is not None and interaction.component_name == "Check-In":
        interaction = None
    return replace(
        activity, last_check_in=None, total_check_ins=None, interaction=interaction
    )


def limit_activity_fields(
    activity: ActivityWriteBack, slots: int | None
) -> ActivityWriteBack:
    """Keep only the highest-priority populated fields that fit in ``slots``.

    None means unbounded and returns the activity unchanged.
    """
    if slots is None:
        return activity
    kept: set[str] = set()
    for name in ACTIVITY_FIELD_PRIORITY:
        if len(kept) >= slots:
            break
        if getattr(activity, name) is not None:
            kept.add(name)
    dropped = {name: None for name in ACTIVITY_FIELD_PRIORITY if name not in kept}
    return replace(activity, **dropped)
