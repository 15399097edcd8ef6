"""
Pydantic schemas for content records flowing through the pipeline
"""

import re
from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any, Union, ClassVar
from models.base import SourceType, ContentKind

# Reddit fullname prefixes: t1_ comment, t3_ link, etc.
_FULLNAME_PREFIX = re.compile(r"^t\d_", re.IGNORECASE)


class ContentIdentifier(BaseModel):
    """
    Canonical identity of a piece of content.

    Two records are the same content iff their normalized keys match,
    regardless of which source delivered them.
    """

    id: str = Field(..., min_length=1)
    kind: ContentKind

    class Config:
        frozen = True

    @classmethod
    def from_raw(cls, raw_id: Any, kind: ContentKind) -> "ContentIdentifier":
        """Strip any 't<digit>_' prefix and lower-case the platform ID."""
        if raw_id is None:
            raise ValueError("Content identifier is missing")
        normalized = _FULLNAME_PREFIX.sub("", str(raw_id).strip()).lower()
        if not normalized:
            raise ValueError(f"Content identifier is empty: {raw_id!r}")
        return cls(id=normalized, kind=kind)

    @property
    def normalized_key(self) -> str:
        return f"{self.kind.value}:{self.id}"


class SourceRecord(BaseModel):
    """A single post or comment tagged with where and when it came from"""

    identifier: ContentIdentifier
    source_type: SourceType
    timestamp_sec: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    batch_id: Optional[str] = None

    class Config:
        frozen = True

    @property
    def normalized_key(self) -> str:
        return self.identifier.normalized_key

    @property
    def kind(self) -> ContentKind:
        return self.identifier.kind


# ============================================================================
# Reddit record variants
# ============================================================================

def _coerce_count(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        # ValueError so pydantic reports it as a field error
        raise ValueError(f"count must be a finite number, got {value!r}")


class RedditSubmission(BaseModel):
    """Reddit link/self post as found in archive dumps and listing APIs"""

    content_kind: ClassVar[ContentKind] = ContentKind.POST

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    title: str
    author: Optional[str] = None
    subreddit: Optional[str] = None
    created_utc: Union[int, float, str]
    score: Optional[int] = 0
    url: Optional[str] = None
    num_comments: Optional[int] = 0
    selftext: Optional[str] = ""
    permalink: Optional[str] = None

    class Config:
        extra = "allow"

    @validator("score", "num_comments", pre=True)
    def coerce_counts(cls, v):
        """Archives occasionally store counts as floats or strings"""
        return _coerce_count(v)


class RedditComment(BaseModel):
    """Reddit comment as found in archive dumps and listing APIs"""

    content_kind: ClassVar[ContentKind] = ContentKind.COMMENT

    id: str = Field(..., min_length=1)
    body: str
    author: Optional[str] = None
    subreddit: Optional[str] = None
    created_utc: Union[int, float, str]
    score: Optional[int] = 0
    link_id: Optional[str] = None
    parent_id: Optional[str] = None
    permalink: Optional[str] = None

    class Config:
        extra = "allow"

    @validator("score", pre=True)
    def coerce_score(cls, v):
        return _coerce_count(v)


RedditRecord = Union[RedditSubmission, RedditComment]


def detect_kind(raw: Dict[str, Any]) -> Optional[ContentKind]:
    """
    Decide whether a raw payload is a post or a comment.

    Looks at an explicit 'kind' field first (listing API wrappers use
    't1'/'t3'), then the fullname prefix, then the presence of a title
    or body.
    """
    explicit = raw.get("kind")
    if explicit in ("t3", "post", ContentKind.POST):
        return ContentKind.POST
    if explicit in ("t1", "comment", ContentKind.COMMENT):
        return ContentKind.COMMENT

    name = str(raw.get("name") or "")
    if name.startswith("t3_"):
        return ContentKind.POST
    if name.startswith("t1_"):
        return ContentKind.COMMENT

    if "title" in raw:
        return ContentKind.POST
    if "body" in raw:
        return ContentKind.COMMENT
    return None
