"""
impact_pool/ingestion/schemas.py — Strict models for upstream payloads.

Every JSON document that crosses the collector boundary is validated here
before it is turned into ActivityRecord events. Unknown fields are ignored;
missing or mistyped fields that the engine relies on raise
UpstreamFetchError, so malformed upstream data excludes one library instead
of flowing untyped into the normalizer.
"""

from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from impact_pool.errors import UpstreamFetchError

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ── GitHub ────────────────────────────────────────────────────────────────────

class GitHubUser(_Payload):
    login: str


class RepoPayload(_Payload):
    full_name: str
    stargazers_count: int = Field(ge=0)
    forks_count: int = Field(ge=0)
    archived: bool = False
    pushed_at: Optional[datetime] = None


class CommunityProfilePayload(_Payload):
    health_percentage: int = Field(ge=0, le=100)


class PullRequestPayload(_Payload):
    id: int
    number: int
    user: Optional[GitHubUser] = None
    created_at: Optional[datetime] = None
    updated_at: datetime
    merged_at: Optional[datetime] = None


class PullRequestDetailPayload(_Payload):
    id: int
    additions: int = Field(ge=0)
    deletions: int = Field(ge=0)


class IssuePayload(_Payload):
    id: int
    number: int
    user: Optional[GitHubUser] = None
    created_at: datetime
    closed_at: Optional[datetime] = None
    comments: int = Field(default=0, ge=0)
    pull_request: Optional[dict] = None

    @property
    def is_pull_request(self) -> bool:
        return self.pull_request is not None


class IssueCommentPayload(_Payload):
    user: Optional[GitHubUser] = None
    created_at: datetime

    @property
    def is_bot(self) -> bool:
        return self.user is None or self.user.login.endswith("[bot]")


class CommitSignature(_Payload):
    name: Optional[str] = None
    email: Optional[str] = None
    date: datetime


class CommitDetail(_Payload):
    author: CommitSignature


class CommitPayload(_Payload):
    sha: str
    commit: CommitDetail
    author: Optional[GitHubUser] = None

    @property
    def author_identity(self) -> str:
        """GitHub login when linked, else the git author name/email."""
        if self.author is not None:
            return self.author.login
        return self.commit.author.name or self.commit.author.email or "unknown"


class ReleasePayload(_Payload):
    id: int
    created_at: datetime
    published_at: Optional[datetime] = None
    prerelease: bool = False
    draft: bool = False


# ── npm registry ──────────────────────────────────────────────────────────────

class NpmDownloadsPayload(_Payload):
    downloads: int = Field(ge=0)
    package: str


class NpmManifestPayload(_Payload):
    name: str
    types: Optional[str] = None
    typings: Optional[str] = None

    @property
    def ships_types(self) -> bool:
        return bool(self.types or self.typings)


# ── jsDelivr ──────────────────────────────────────────────────────────────────

class JsDelivrHits(_Payload):
    total: int = Field(ge=0)


class JsDelivrStatsPayload(_Payload):
    hits: JsDelivrHits


# ── deps.dev ──────────────────────────────────────────────────────────────────

class DepsDevVersionKey(_Payload):
    version: str


class DepsDevVersion(_Payload):
    versionKey: DepsDevVersionKey
    isDefault: bool = False


class DepsDevPackagePayload(_Payload):
    versions: list[DepsDevVersion] = Field(default_factory=list)


class DepsDevDependentsPayload(_Payload):
    dependentCount: int = Field(ge=0)


class DepsDevScorecard(_Payload):
    overallScore: float = Field(ge=0.0, le=10.0)


class DepsDevProjectPayload(_Payload):
    scorecard: Optional[DepsDevScorecard] = None


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def parse_payload(model: type[ModelT], data: Any, source: str, url: str = "") -> ModelT:
    """Validate *data* against *model*; raise UpstreamFetchError on mismatch."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise UpstreamFetchError(
            f"Malformed {source} payload ({exc.error_count()} errors): {exc.errors()[0]['msg']}",
            source=source,
            url=url,
        ) from exc


def parse_payload_list(model: type[ModelT], data: Any, source: str, url: str = "") -> list[ModelT]:
    """Validate a JSON array of *model* items."""
    if not isinstance(data, list):
        raise UpstreamFetchError(
            f"Malformed {source} payload: expected a list, got {type(data).__name__}",
            source=source,
            url=url,
        )
    return [parse_payload(model, item, source, url) for item in data]
