from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class RunMode(str, Enum):
    SAFE = "safe"
    AGGRESSIVE = "aggressive"


class Mergeable(str, Enum):
    MERGEABLE = "MERGEABLE"
    CONFLICTING = "CONFLICTING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Mergeable":
        try:
            return cls((raw or "").upper())
        except ValueError:
            return cls.UNKNOWN


class CheckStatus(str, Enum):
    CLEAN = "CLEAN"
    BLOCKED = "BLOCKED"
    PENDING = "PENDING"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "CheckStatus":
        # mergeStateStatus: BEHIND, BLOCKED, CLEAN, DIRTY, DRAFT, HAS_HOOKS, UNKNOWN, UNSTABLE
        value = (raw or "").upper()
        if value == "CLEAN":
            return cls.CLEAN
        if value in ("", "UNKNOWN"):
            return cls.PENDING
        return cls.BLOCKED


class MergeStrategy(str, Enum):
    SQUASH_AUTO = "squash_auto"
    NO_FF = "no_ff"
    THEIRS = "theirs"
    OURS = "ours"
    STRIP_MARKERS = "strip_markers"


class MergeState(str, Enum):
    DISCOVERED = "DISCOVERED"
    RECHECKED = "RECHECKED"
    MERGE_ATTEMPTED = "MERGE_ATTEMPTED"
    PUSHED = "PUSHED"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class CredentialSource(str, Enum):
    STATIC = "static"
    APP_INSTALLATION = "app-installation"


class RepositoryRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    name: str
    clone_url: str
    default_branch: str = "main"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class PullRequestRef(BaseModel):
    number: int
    head_branch: str
    base_branch: str
    mergeable: Mergeable = Mergeable.UNKNOWN
    status: CheckStatus = CheckStatus.PENDING
    state: str = "OPEN"
    node_id: Optional[str] = None
    title: Optional[str] = None

    @property
    def is_safely_mergeable(self) -> bool:
        return self.mergeable is Mergeable.MERGEABLE and self.status is CheckStatus.CLEAN

    @property
    def is_open(self) -> bool:
        return self.state.upper() == "OPEN"


class BranchRef(BaseModel):
    name: str
    has_open_pr: bool = False


class Credential(BaseModel):
    token: str = Field(repr=False)
    source: CredentialSource = CredentialSource.STATIC
    expires_at: Optional[datetime] = None
    installation_id: Optional[int] = None

    @field_serializer("token")
    def _mask_token(self, token: str) -> str:
        return "***"


class MergeOutcome(BaseModel):
    ref: str
    strategy: Optional[MergeStrategy] = None
    success: bool = False
    pushed: bool = False
    detail: str = ""


class RepositoryReport(BaseModel):
    repository: str
    outcomes: List[MergeOutcome] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def merged(self) -> int:
        return sum(1 for o in self.outcomes if o.success)


class RunSummary(BaseModel):
    mode: RunMode
    reports: List[RepositoryReport] = Field(default_factory=list)

    @property
    def merged(self) -> int:
        return sum(r.merged for r in self.reports)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.reports for o in r.outcomes if not o.success)

    @property
    def errors(self) -> List[str]:
        return [f"{r.repository}: {r.error}" for r in self.reports if r.error]

    @property
    def ok(self) -> bool:
        return not self.errors
