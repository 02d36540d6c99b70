"""
Domain records for verifications, votes and acceptance answers.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DataSource(str, Enum):
    OFFICIAL_REGISTRY = "official_registry"
    CARRIER_DATA = "carrier_data"
    PROVIDER_CONFIRMED = "provider_confirmed"
    COMMUNITY_SUBMITTED = "community_submitted"
    AUTOMATED = "automated"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "DataSource":
        """Map a stored or submitted tag (either spelling) onto the enum; anything unrecognised is UNKNOWN."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            return cls.UNKNOWN


class VerificationStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


class AcceptanceStatus(str, Enum):
    ACCEPTED = "accepted"
    NOT_ACCEPTED = "not_accepted"
    PENDING = "pending"
    UNKNOWN = "unknown"


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class AcceptanceKey:
    """Composite key of an acceptance answer. Location is optional."""
    provider_key: str
    plan_key: str
    location_key: Optional[str] = None

    @property
    def storage_location(self) -> str:
        """Location column value; missing locations are stored as ''."""
        return self.location_key or ""

    def as_params(self):
        return (self.provider_key, self.plan_key, self.storage_location)

    def to_dict(self) -> Dict:
        return {
            "provider_key": self.provider_key,
            "plan_key": self.plan_key,
            "location_key": self.location_key,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class VerificationEntry:
    id: str
    provider_key: str
    plan_key: str
    location_key: Optional[str]
    accepts_insurance: bool
    accepts_new_patients: Optional[bool]
    note: Optional[str]
    evidence_url: Optional[str]
    submitted_by: Optional[str]
    origin_fingerprint: str
    data_source: DataSource
    created_at: datetime
    expires_at: datetime
    upvotes: int = 0
    downvotes: int = 0
    status: VerificationStatus = VerificationStatus.ACTIVE
    phone_reached: Optional[bool] = None
    phone_correct: Optional[bool] = None
    scheduled_appointment: Optional[bool] = None

    @property
    def key(self) -> AcceptanceKey:
        return AcceptanceKey(self.provider_key, self.plan_key, self.location_key)

    def is_live(self, now: datetime) -> bool:
        """Active and not yet past its expiry."""
        return self.status == VerificationStatus.ACTIVE and self.expires_at > now

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["data_source"] = self.data_source.value
        data["status"] = self.status.value
        data["created_at"] = _iso(self.created_at)
        data["expires_at"] = _iso(self.expires_at)
        return data

    def public_dict(self) -> Dict:
        """Dictionary without the submitter identity and origin fingerprint."""
        data = self.to_dict()
        data.pop("origin_fingerprint", None)
        data.pop("submitted_by", None)
        return data


@dataclass
class AcceptanceRecord:
    provider_key: str
    plan_key: str
    location_key: Optional[str]
    status: AcceptanceStatus
    confidence_score: int
    last_verified_at: Optional[datetime]
    verification_count: int
    expires_at: Optional[datetime]
    updated_at: datetime
    version: int = 1

    @property
    def key(self) -> AcceptanceKey:
        return AcceptanceKey(self.provider_key, self.plan_key, self.location_key)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def display_status(self, now: datetime) -> AcceptanceStatus:
        """Publicly shown verdict; a stale record is never shown as a verdict."""
        if self.is_expired(now):
            return AcceptanceStatus.UNKNOWN
        return self.status

    def same_content(self, other: "AcceptanceRecord") -> bool:
        """Compare the derived fields, ignoring bookkeeping (updated_at, version)."""
        return (
            self.status == other.status
            and self.confidence_score == other.confidence_score
            and self.last_verified_at == other.last_verified_at
            and self.verification_count == other.verification_count
            and self.expires_at == other.expires_at
        )

    def to_dict(self) -> Dict:
        return {
            "provider_key": self.provider_key,
            "plan_key": self.plan_key,
            "location_key": self.location_key,
            "status": self.status.value,
            "confidence_score": self.confidence_score,
            "last_verified_at": _iso(self.last_verified_at),
            "verification_count": self.verification_count,
            "expires_at": _iso(self.expires_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }


class VerificationClaim(BaseModel):
    """One user's claim that a provider does or does not accept a plan."""
    model_config = ConfigDict(extra='ignore')

    provider_key: str
    plan_key: str
    location_key: Optional[str] = None
    accepts_insurance: bool
    accepts_new_patients: Optional[bool] = None
    phone_reached: Optional[bool] = None
    phone_correct: Optional[bool] = None
    scheduled_appointment: Optional[bool] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    evidence_url: Optional[str] = Field(default=None, max_length=500)
    submitted_by: Optional[str] = None
    origin_fingerprint: str
    data_source: DataSource = DataSource.COMMUNITY_SUBMITTED

    @field_validator('provider_key', 'plan_key', 'origin_fingerprint')
    @classmethod
    def must_not_be_blank(cls, v):
        if not v.strip():
            raise ValueError('must not be blank')
        return v.strip()

    @field_validator('location_key', 'submitted_by')
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator('evidence_url')
    @classmethod
    def evidence_url_must_be_http(cls, v):
        if v is None:
            return None
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError('evidence_url must be an http(s) URL')
        return v

    @field_validator('data_source', mode='before')
    @classmethod
    def normalize_data_source(cls, v):
        # 'community-submitted' and 'COMMUNITY_SUBMITTED' both name the same tag
        if isinstance(v, str):
            return v.strip().lower().replace('-', '_')
        return v
