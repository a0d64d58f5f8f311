"""Admission decision schema."""

from datetime import datetime

from pydantic import BaseModel


class AdmissionResult(BaseModel):
    allowed: bool
    reason: str | None = None
    requests_today: int
    limit: int | None = None  # None = unbounded (admins)
    reset_at: datetime | None = None

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.requests_today)

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers for this decision."""
        if self.limit is None:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.reset_at is not None:
            headers["X-RateLimit-Reset"] = self.reset_at.isoformat()
        return headers
