"""Enumerations for the vaccination schedule and notification engine."""

import math
from enum import Enum


class _LookupEnum(Enum):
    """Enum with case-insensitive string lookup shared by the engine enums."""

    @classmethod
    def from_string(cls, value: str | None):
        """Convert a string to the enum member with that value.

        Parameters
        ----------
        value : str | None
            Member value (case-insensitive). None selects the class default,
            when the class defines one.

        Returns
        -------
        Enum
            Matching member.

        Raises
        ------
        ValueError
            If value is not a valid member value. The message lists all
            available options.
        """
        if value is None:
            default = cls._default()
            if default is None:
                raise ValueError(
                    f"{cls.__name__} value is required. "
                    f"Valid options: {', '.join(m.value for m in cls)}"
                )
            return default

        if isinstance(value, cls):
            return value

        value_lower = str(value).strip().lower()
        for member in cls:
            if member.value == value_lower:
                return member

        raise ValueError(
            f"Unknown {cls.__name__}: {value}. "
            f"Valid options: {', '.join(m.value for m in cls)}"
        )

    @classmethod
    def _default(cls):
        return None

    @classmethod
    def all_values(cls) -> set[str]:
        """Get set of all member values."""
        return {member.value for member in cls}


class RecordStatus(_LookupEnum):
    """Stored status of a vaccination record.

    ``OVERDUE`` is a cache of the derived overdue view kept in sync by the
    reconciliation sweep. For transition purposes it behaves like
    ``SCHEDULED``.
    """

    SCHEDULED = "scheduled"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordStatus.COMPLETED, RecordStatus.MISSED, RecordStatus.CANCELLED)

    @property
    def is_open(self) -> bool:
        """True for statuses that still await administration."""
        return self in (RecordStatus.SCHEDULED, RecordStatus.OVERDUE)

    @classmethod
    def _default(cls):
        return cls.SCHEDULED


class RecordAction(_LookupEnum):
    """Lifecycle actions accepted by ``transition_record``."""

    COMPLETE = "complete"
    MISS = "miss"
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    REPORT_SIDE_EFFECT = "report_side_effect"


class NotificationType(_LookupEnum):
    """Kinds of notification the engine creates."""

    REMINDER = "reminder"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    GENERAL = "general"


class NotificationStatus(_LookupEnum):
    """Delivery status of a notification.

    ``SUPERSEDED`` closes a notification whose record changed state; the
    sweep never picks it up again.
    """

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    READ = "read"
    SUPERSEDED = "superseded"

    @classmethod
    def open_statuses(cls) -> frozenset["NotificationStatus"]:
        """Statuses that count towards the one-open-per-type rule."""
        return frozenset({cls.PENDING, cls.SENT, cls.DELIVERED})

    @classmethod
    def _default(cls):
        return cls.PENDING


class Priority(_LookupEnum):
    """Priority levels for records and notifications, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(Priority).index(self)

    @classmethod
    def _default(cls):
        return cls.MEDIUM


class Channel(_LookupEnum):
    """Delivery media a notification can be sent through."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class Language(_LookupEnum):
    """Supported languages for notification content.

    Each language corresponds to a message table in ``vaxtrack.content`` and a
    Babel locale for date formatting.
    """

    ENGLISH = "en"
    FRENCH = "fr"

    @property
    def locale(self) -> str:
        return {"en": "en_US", "fr": "fr_FR"}[self.value]

    @classmethod
    def _default(cls):
        return cls.ENGLISH

    @classmethod
    def all_codes(cls) -> set[str]:
        """Get set of all supported language codes.

        Examples
        --------
        >>> Language.all_codes()
        {'en', 'fr'}
        """
        return {lang.value for lang in cls}


class AgeUnit(_LookupEnum):
    """Unit of a vaccine eligibility age bound."""

    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"

    @property
    def days(self) -> float:
        """Average length of one unit in days."""
        return {"days": 1, "weeks": 7, "months": 30.44, "years": 365.25}[self.value]

    def to_days(self, value: int) -> int:
        """Whole days in ``value`` units, rounded down."""
        return math.floor(value * self.days)

    @classmethod
    def _default(cls):
        return cls.YEARS
