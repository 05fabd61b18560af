from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StatusResponse(BaseModel):
    status: str
    raw_response: dict
    elapsed_time: float


FetchStatus = Callable[[str], Awaitable[StatusResponse]]


class OutcomeKind(str, Enum):
    success = "success"
    failure = "failure"
    timeout = "timeout"
    transient_error = "transient_error"
    rate_limited = "rate_limited"
    cancelled = "cancelled"


class StatusPollingConfig(BaseModel):
    interval: float = Field(default=1.0, gt=0)
    timeout: Optional[float] = Field(default=300.0, gt=0)  # None disables the wall-clock budget
    max_consecutive_errors: Optional[int] = Field(default=10, ge=1)


# Neynar signer approval: bounded consecutive errors, no wall-clock budget
SIGNER_APPROVAL = StatusPollingConfig(interval=1.0, timeout=None, max_consecutive_errors=10)

# Vercel deployment readiness: 5s cadence for up to 5 minutes
DEPLOYMENT_READINESS = StatusPollingConfig(
    interval=5.0, timeout=300.0, max_consecutive_errors=None
)


class PollRequest(BaseModel):
    """Everything one poll invocation needs. Frozen once built."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    resource_id: str
    fetch_status: FetchStatus
    interval: float = Field(gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    terminal_success: FrozenSet[str]
    terminal_failure: FrozenSet[str] = frozenset()
    max_consecutive_errors: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_terminal_sets(self) -> "PollRequest":
        overlap = self.terminal_success & self.terminal_failure
        if overlap:
            raise ValueError(
                f"Statuses cannot be both success and failure: {sorted(overlap)}"
            )
        return self

    @model_validator(mode="after")
    def _check_timeout_allows_a_fetch(self) -> "PollRequest":
        # The first fetch happens one interval in, so it must land before the deadline
        if self.timeout is not None and self.interval >= self.timeout:
            raise ValueError(
                f"interval ({self.interval}s) must be shorter than timeout ({self.timeout}s)"
            )
        return self

    @classmethod
    def from_config(
        cls,
        resource_id: str,
        fetch_status: FetchStatus,
        config: StatusPollingConfig,
        terminal_success: FrozenSet[str],
        terminal_failure: FrozenSet[str] = frozenset(),
    ) -> "PollRequest":
        return cls(
            resource_id=resource_id,
            fetch_status=fetch_status,
            interval=config.interval,
            timeout=config.timeout,
            terminal_success=frozenset(terminal_success),
            terminal_failure=frozenset(terminal_failure),
            max_consecutive_errors=config.max_consecutive_errors,
        )


class PollOutcome(BaseModel):
    kind: OutcomeKind
    resource_id: str
    status: Optional[str] = None
    response: Optional[StatusResponse] = None
    error: Optional[str] = None
    attempts: int = 0
    elapsed_time: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.success


class Signer(BaseModel):
    signer_uuid: str
    public_key: str = ""
    status: str
    signer_approval_url: Optional[str] = None
    fid: Optional[int] = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Signer":
        return cls(
            signer_uuid=data["signer_uuid"],
            public_key=data.get("public_key", ""),
            status=data["status"],
            signer_approval_url=data.get("signer_approval_url"),
            fid=data.get("fid"),
        )
