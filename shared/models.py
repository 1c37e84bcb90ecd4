"""Shared data models for the FromCafe sync engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


SENTINEL_UNKNOWN = -1


@dataclass
class Resource:
    """Embedded media attached to an Evernote note."""
    id: str
    content_hash: str
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None
    filename: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        return cls(
            id=data["id"],
            content_hash=data["content_hash"],
            mime_type=data.get("mime_type", "image/jpeg"),
            width=data.get("width"),
            height=data.get("height"),
            filename=data.get("filename"),
        )


@dataclass
class Note:
    """A note fetched from the note source. Immutable per fetch."""
    id: str
    title: str
    raw_content: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    resources: List[Resource] = field(default_factory=list)
    published_at: Optional[datetime] = None

    def has_tag(self, tag: str) -> bool:
        """Case-insensitive tag check."""
        wanted = tag.lower()
        return any(t.lower() == wanted for t in self.tags)

    def find_resource(self, content_hash: str) -> Optional[Resource]:
        wanted = content_hash.lower()
        for resource in self.resources:
            if resource.content_hash.lower() == wanted:
                return resource
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        """Build a Note from the gateway's JSON payload."""
        published_at = data.get("published_at")
        return cls(
            id=data["id"],
            title=data.get("title") or "Untitled",
            raw_content=data.get("content", ""),
            tags=list(data.get("tags", [])),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
            resources=[Resource.from_dict(r) for r in data.get("resources", [])],
            published_at=_parse_datetime(published_at) if published_at else None,
        )


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # Evernote timestamps are milliseconds since the epoch
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class SyncAction(str, Enum):
    """What a sync pass should fetch."""
    SKIP = "skip"
    INCREMENTAL = "incremental"
    FULL = "full"


@dataclass
class SyncDecision:
    """Outcome of change detection for one blog."""
    action: SyncAction
    reason: str
    modified_since: Optional[datetime] = None
    clear_stale_baseline: bool = False


class PostTransition(str, Enum):
    """How a single post changes during a pass."""
    CREATE = "create"
    NO_OP = "no_op"
    CONTENT_UPDATE = "content_update"
    REPUBLISH = "republish"
    REPUBLISH_AND_UPDATE = "republish_and_update"
    UNPUBLISH = "unpublish"


@dataclass
class PostFields:
    """Column values written by a single post mutation."""
    title: Optional[str] = None
    content: Optional[str] = None
    excerpt: Optional[str] = None
    is_published: Optional[bool] = None
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def as_update(self) -> Dict[str, Any]:
        """Return only the fields this mutation sets."""
        values = {
            "title": self.title,
            "content": self.content,
            "excerpt": self.excerpt,
            "is_published": self.is_published,
            "published_at": self.published_at,
            "updated_at": self.updated_at,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass
class PostMutation:
    """A planned write against the post store.

    A mutation with ``error`` set records a per-note failure and is never
    applied.
    """
    transition: PostTransition
    title: str
    external_note_id: Optional[str] = None
    post_id: Optional[str] = None
    fields: PostFields = field(default_factory=PostFields)
    slug: Optional[str] = None
    created_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class PostOutcome:
    """Per-post descriptor reported back to the caller."""
    title: str
    is_new: bool = False
    is_updated: bool = False
    is_unpublished: bool = False
    is_republished: bool = False
    is_republished_updated: bool = False
    error: Optional[str] = None

    @classmethod
    def for_transition(cls, transition: PostTransition, title: str) -> "PostOutcome":
        return cls(
            title=title,
            is_new=transition == PostTransition.CREATE,
            is_updated=transition == PostTransition.CONTENT_UPDATE,
            is_unpublished=transition == PostTransition.UNPUBLISH,
            is_republished=transition in (
                PostTransition.REPUBLISH, PostTransition.REPUBLISH_AND_UPDATE
            ),
            is_republished_updated=transition == PostTransition.REPUBLISH_AND_UPDATE,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "title": self.title,
            "isNew": self.is_new,
            "isUpdated": self.is_updated,
            "isUnpublished": self.is_unpublished,
        }
        if self.is_republished:
            data["isRepublished"] = True
        if self.is_republished_updated:
            data["isRepublishedUpdated"] = True
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SyncResult:
    """Result of syncing one blog."""
    blog_id: str
    blog_title: str
    notes_found: int = 0
    new_posts: int = 0
    updated_posts: int = 0
    unpublished_posts: int = 0
    republished_posts: int = 0
    republished_updated_posts: int = 0
    total_published_posts: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    posts: List[PostOutcome] = field(default_factory=list)

    def record(self, transition: PostTransition, title: str) -> None:
        """Count a transition and append its descriptor."""
        if transition == PostTransition.NO_OP:
            return
        if transition == PostTransition.CREATE:
            self.new_posts += 1
        elif transition == PostTransition.CONTENT_UPDATE:
            self.updated_posts += 1
        elif transition == PostTransition.UNPUBLISH:
            self.unpublished_posts += 1
        elif transition == PostTransition.REPUBLISH:
            self.republished_posts += 1
        elif transition == PostTransition.REPUBLISH_AND_UPDATE:
            self.republished_updated_posts += 1
        self.posts.append(PostOutcome.for_transition(transition, title))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "blogId": self.blog_id,
            "blogTitle": self.blog_title,
            "notesFound": self.notes_found,
            "newPosts": self.new_posts,
            "updatedPosts": self.updated_posts,
            "unpublishedPosts": self.unpublished_posts,
            "republishedPosts": self.republished_posts,
            "republishedUpdatedPosts": self.republished_updated_posts,
            "totalPublishedPosts": self.total_published_posts,
            "posts": [post.to_dict() for post in self.posts],
        }
        if self.error:
            data["error"] = self.error
            data["errorCode"] = self.error_code
        return data


@dataclass
class UserSyncResult:
    """Aggregate of SyncResult across all of a user's blogs."""
    success: bool
    results: List[SyncResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_new_posts(self) -> int:
        return sum(r.new_posts for r in self.results)

    @property
    def total_updated_posts(self) -> int:
        return sum(r.updated_posts for r in self.results)

    @property
    def total_unpublished_posts(self) -> int:
        return sum(r.unpublished_posts for r in self.results)

    @property
    def total_republished_posts(self) -> int:
        return sum(r.republished_posts for r in self.results)

    @property
    def total_republished_updated_posts(self) -> int:
        return sum(r.republished_updated_posts for r in self.results)

    @property
    def rate_limited(self) -> bool:
        return any(r.error_code == "rate_limited" for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "totalNewPosts": self.total_new_posts,
            "totalUpdatedPosts": self.total_updated_posts,
            "totalUnpublishedPosts": self.total_unpublished_posts,
            "totalRepublishedPosts": self.total_republished_posts,
            "totalRepublishedUpdatedPosts": self.total_republished_updated_posts,
        }
        if self.error:
            data["error"] = self.error
        return data
