"""
Pluggable record validators for the archive decompressor
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Generic, Optional, TypeVar
from pydantic import ValidationError
from models.base import ContentKind
from schemas.records import RedditSubmission, RedditComment, RedditRecord, detect_kind
from core.exceptions import ValidationRejected

T = TypeVar("T")

DELETED_MARKERS = ("[deleted]",)
REMOVED_MARKERS = ("[removed]",)


class RecordValidator(ABC, Generic[T]):
    """
    Turns a parsed JSON object into a typed record or rejects it.

    Implementations raise ValidationRejected; the decompressor counts the
    line as an error and moves on.
    """

    @abstractmethod
    def validate(self, raw: Dict[str, Any]) -> T:
        pass


class RedditRecordValidator(RecordValidator[RedditRecord]):
    """
    Validate Reddit posts/comments into RedditSubmission | RedditComment.

    Quality filters:
        exclude_deleted: reject content whose author or text is "[deleted]"
        exclude_removed: reject content whose text is "[removed]"
        min_score: reject content scoring below this value
    """

    def __init__(
        self,
        exclude_deleted: bool = False,
        exclude_removed: bool = False,
        min_score: Optional[int] = None
    ):
        self.exclude_deleted = exclude_deleted
        self.exclude_removed = exclude_removed
        self.min_score = min_score

    def validate(self, raw: Dict[str, Any]) -> RedditRecord:
        kind = detect_kind(raw)
        if kind is None:
            raise ValidationRejected(
                "Record is neither a post nor a comment",
                context={"record_id": raw.get("id")}
            )

        model = RedditSubmission if kind == ContentKind.POST else RedditComment
        try:
            record = model.model_validate(raw)
        except ValidationError as e:
            raise ValidationRejected(
                f"Invalid {kind.value} record",
                context={"record_id": raw.get("id"), "errors": e.error_count()},
                original_exception=e
            )

        text = record.selftext if kind == ContentKind.POST else record.body
        if self.exclude_deleted and (record.author in DELETED_MARKERS or text in DELETED_MARKERS):
            raise ValidationRejected("Deleted content", context={"record_id": record.id})
        if self.exclude_removed and text in REMOVED_MARKERS:
            raise ValidationRejected("Removed content", context={"record_id": record.id})
        if self.min_score is not None and (record.score or 0) < self.min_score:
            raise ValidationRejected(
                f"Score below {self.min_score}",
                context={"record_id": record.id, "score": record.score}
            )

        return record
