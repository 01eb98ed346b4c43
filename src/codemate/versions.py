"""Bounded per-file revision history with diff-derived change statistics."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .diff import ChangeStats, DiffLine, change_stats, compare_lines, initial_stats
from .errors import NotFoundError, ValidationError
from .storage import InMemoryKeyValueStore, Repository
from .telemetry import CodemateTracer, trace_version_save

logger = logging.getLogger(__name__)

DEFAULT_MAX_VERSIONS = 50


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class Revision(BaseModel):
    """A full content snapshot of one file."""

    id: str
    file_id: str
    content: str
    timestamp: datetime
    message: str
    author: str
    change_stats: ChangeStats


class RevisionHistory(BaseModel):
    """Persisted history for one file, newest first."""

    file_id: str
    revisions: list[Revision] = Field(default_factory=list)


_REVISION_LIST = TypeAdapter(list[Revision])


class VersionStore:
    """Keeps at most ``max_versions`` revisions per file; oldest are evicted."""

    def __init__(
        self,
        repository: Repository[RevisionHistory] | None = None,
        max_versions: int = DEFAULT_MAX_VERSIONS,
        author: str = "current user",
        clock: Callable[[], datetime] = _utcnow,
        tracer: CodemateTracer | None = None,
    ) -> None:
        if max_versions < 1:
            msg = "max_versions must be at least 1"
            raise ValueError(msg)
        self._repo = repository or Repository(
            InMemoryKeyValueStore(), "revisions", RevisionHistory
        )
        self._max = max_versions
        self._author = author
        self._clock = clock
        self._tracer = tracer

    @property
    def max_versions(self) -> int:
        return self._max

    # -- core ---------------------------------------------------------------

    def save_version(self, file_id: str, content: str, message: str = "Auto-save") -> Revision:
        """Record *content* as the newest revision of *file_id*."""
        with trace_version_save(file_id, self._tracer):
            history = self._load(file_id)
            previous = history.revisions[0] if history.revisions else None
            stats = (
                change_stats(compare_lines(previous.content, content))
                if previous is not None
                else initial_stats(content)
            )
            revision = Revision(
                id=uuid.uuid4().hex[:12],
                file_id=file_id,
                content=content,
                timestamp=self._clock(),
                message=message,
                author=self._author,
                change_stats=stats,
            )
            history.revisions.insert(0, revision)
            evicted = len(history.revisions) - self._max
            if evicted > 0:
                del history.revisions[self._max:]
                logger.debug("Evicted %d old revision(s) of %s", evicted, file_id)
            self._repo.put(file_id, history)
        logger.debug("Saved revision %s of %s (%s)", revision.id, file_id, stats)
        return revision

    def get_versions(self, file_id: str) -> list[Revision]:
        """Return the history of *file_id*, newest first."""
        return list(self._load(file_id).revisions)

    def get_version(self, file_id: str, version_id: str) -> Revision | None:
        return next((r for r in self._load(file_id).revisions if r.id == version_id), None)

    def restore_version(self, file_id: str, version_id: str) -> Revision:
        """Save the content of *version_id* again as a new revision."""
        target = self.get_version(file_id, version_id)
        if target is None:
            raise NotFoundError("version", version_id)
        return self.save_version(file_id, target.content, f"Restored to version: {target.message}")

    @staticmethod
    def compare_versions(old_content: str, new_content: str) -> list[DiffLine]:
        return compare_lines(old_content, new_content)

    def diff_versions(self, file_id: str, old_id: str, new_id: str) -> list[DiffLine]:
        """Diff two stored revisions of the same file."""
        old = self.get_version(file_id, old_id)
        if old is None:
            raise NotFoundError("version", old_id)
        new = self.get_version(file_id, new_id)
        if new is None:
            raise NotFoundError("version", new_id)
        return compare_lines(old.content, new.content)

    # -- maintenance --------------------------------------------------------

    def delete_version(self, file_id: str, version_id: str) -> bool:
        history = self._load(file_id)
        remaining = [r for r in history.revisions if r.id != version_id]
        if len(remaining) == len(history.revisions):
            return False
        history.revisions = remaining
        self._repo.put(file_id, history)
        return True

    def clear_versions(self, file_id: str) -> None:
        self._repo.delete(file_id)

    def export_history(self, file_id: str) -> str:
        return _REVISION_LIST.dump_json(self._load(file_id).revisions, indent=2).decode()

    def import_history(self, file_id: str, data: str) -> int:
        """Replace the history of *file_id*; returns the number of revisions kept."""
        try:
            revisions = _REVISION_LIST.validate_json(data)
        except PydanticValidationError as exc:
            msg = f"revision history is malformed: {exc}"
            raise ValidationError(msg) from exc
        revisions = [r.model_copy(update={"file_id": file_id}) for r in revisions]
        revisions.sort(key=lambda r: r.timestamp, reverse=True)
        history = RevisionHistory(file_id=file_id, revisions=revisions[: self._max])
        self._repo.put(file_id, history)
        logger.info("Imported %d revision(s) for %s", len(history.revisions), file_id)
        return len(history.revisions)

    # ------------------------------------------------------------------

    def _load(self, file_id: str) -> RevisionHistory:
        return self._repo.get(file_id) or RevisionHistory(file_id=file_id)

