"""Models for stored Dexcom OAuth credentials."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TokenRecord(BaseModel):
    """The single OAuth credential record kept per user."""

    user_id: str = Field(..., description="Unique identifier for the user")
    access_token: SecretStr = Field(..., description="Bearer token for Dexcom API calls")
    refresh_token: SecretStr = Field(..., description="Single-use refresh token, rotated on every refresh")
    expires_at: datetime = Field(..., description="Instant the access token expires")
    scope: str = Field("offline_access", description="OAuth scope granted")
    created_at: datetime = Field(default_factory=utcnow, description="When the user first connected")
    updated_at: datetime = Field(default_factory=utcnow, description="When the token pair was last written")

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        """Store every timestamp as aware UTC."""
        return _as_utc(value)

    def is_stale(self, skew: timedelta = timedelta(minutes=5), now: Optional[datetime] = None) -> bool:
        """True if the access token expires within *skew* of *now*."""
        now = now or utcnow()
        return self.expires_at < now + skew

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the access token has already expired."""
        return self.is_stale(timedelta(0), now)

    def to_dynamodb_item(self) -> dict:
        """Convert the model to a DynamoDB item."""
        return {
            "user_id": self.user_id,
            "access_token": self.access_token.get_secret_value(),
            "refresh_token": self.refresh_token.get_secret_value(),
            "expires_at": self.expires_at.isoformat(),
            "scope": self.scope,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dynamodb_item(cls, item: dict) -> "TokenRecord":
        """Create a TokenRecord instance from a DynamoDB item."""
        now = utcnow()
        return cls(
            user_id=item["user_id"],
            access_token=SecretStr(item["access_token"]),
            refresh_token=SecretStr(item["refresh_token"]),
            expires_at=datetime.fromisoformat(item["expires_at"]),
            scope=item.get("scope", "offline_access"),
            created_at=datetime.fromisoformat(item["created_at"]) if "created_at" in item else now,
            updated_at=datetime.fromisoformat(item["updated_at"]) if "updated_at" in item else now,
        )
