"""
Batch operation coordinator.

Applies one operation (delete, move, archive, mark read, star) to a set of
UIDs in a folder. Every UID is processed independently; a failure on one is
recorded in the BatchResult and the rest still run.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Set

from mail_core.core.synchronizer import MailboxSynchronizer
from mail_core.models import BatchResult, MailboxSession, MessageFlag
from mail_core.utils.errors import InvalidArgument, MailConnectionError, MailServiceError


logger = logging.getLogger(__name__)


class BatchOperationKind(str, Enum):
    DELETE = "delete"
    MOVE = "move"
    ARCHIVE = "archive"
    MARK_READ = "mark_read"
    STAR = "star"


@dataclass(slots=True, frozen=True)
class BatchOperation:
    """One operation to apply to every UID of a batch."""
    kind: BatchOperationKind
    target_folder: Optional[str] = None  # For MOVE
    value: bool = True                   # For MARK_READ and STAR
    permanent: bool = False              # For DELETE

    @classmethod
    def delete(cls, permanent: bool = False) -> "BatchOperation":
        return cls(BatchOperationKind.DELETE, permanent=permanent)

    @classmethod
    def move(cls, target_folder: str) -> "BatchOperation":
        return cls(BatchOperationKind.MOVE, target_folder=target_folder)

    @classmethod
    def archive(cls) -> "BatchOperation":
        return cls(BatchOperationKind.ARCHIVE)

    @classmethod
    def mark_read(cls, value: bool = True) -> "BatchOperation":
        return cls(BatchOperationKind.MARK_READ, value=value)

    @classmethod
    def star(cls, value: bool = True) -> "BatchOperation":
        return cls(BatchOperationKind.STAR, value=value)


class BatchCoordinator:
    """Runs batch operations through the synchronizer."""

    def __init__(self, synchronizer: MailboxSynchronizer):
        self.synchronizer = synchronizer

    def validate(self, operation: BatchOperation, uids: Iterable[int]) -> Set[int]:
        """
        Check a batch request without touching the store.

        Returns:
            The de-duplicated UID set.

        Raises:
            InvalidArgument: If ``uids`` is empty or holds a non-UID, or a
                move has no target.
        """
        uid_set = set(uids)
        if not uid_set:
            raise InvalidArgument("At least one message UID is required")
        bad = [uid for uid in uid_set if not isinstance(uid, int) or isinstance(uid, bool) or uid < 1]
        if bad:
            raise InvalidArgument(f"Invalid message UID(s): {bad!r}")
        if operation.kind is BatchOperationKind.MOVE and not operation.target_folder:
            raise InvalidArgument("A move needs a target folder")
        return uid_set

    def apply(
        self,
        session: MailboxSession,
        operation: BatchOperation,
        folder_name: str,
        uids: Iterable[int]
    ) -> BatchResult:
        """
        Apply an operation to each UID.

        Args:
            session: The leased owner session.
            operation: What to do to each message.
            folder_name: Folder the UIDs belong to.
            uids: Message UIDs; duplicates are collapsed.

        Returns:
            A BatchResult with every UID in either ``succeeded`` or
            ``failed``. Moves record the new UIDs in ``new_uids``.

        Raises:
            InvalidArgument: If ``uids`` is empty or holds a non-UID, or a
                move has no target. Raised before contacting the store.
        """
        uid_set = self.validate(operation, uids)
        result = BatchResult(operation=operation.kind.value, folder=folder_name, attempted=set(uid_set))
        for uid in sorted(uid_set):
            try:
                new_uid = self._apply_one(session, operation, folder_name, uid)
            except MailServiceError as e:
                result.failed[uid] = e
                logger.warning("Batch %s failed for %s:%s (%s): %s",
                               operation.kind.value, folder_name, uid, session.owner_id, e)
                continue
            result.succeeded.add(uid)
            if new_uid is not None:
                result.new_uids[uid] = new_uid

        if any(isinstance(error, MailConnectionError) for error in result.failed.values()):
            session.mark_degraded()
        logger.info("Batch %s on %s for %s: %d succeeded, %d failed",
                    operation.kind.value, folder_name, session.owner_id,
                    len(result.succeeded), len(result.failed))
        return result

    def _apply_one(self, session: MailboxSession, operation: BatchOperation, folder_name: str, uid: int) -> Optional[int]:
        sync = self.synchronizer
        kind = operation.kind
        if kind is BatchOperationKind.DELETE:
            return sync.delete(session, folder_name, uid, permanent=operation.permanent)
        if kind is BatchOperationKind.MOVE:
            return sync.move(session, folder_name, uid, operation.target_folder)
        if kind is BatchOperationKind.ARCHIVE:
            return sync.move(session, folder_name, uid, 'archive')
        if kind is BatchOperationKind.MARK_READ:
            sync.set_flag(session, folder_name, uid, MessageFlag.READ, operation.value)
        elif kind is BatchOperationKind.STAR:
            sync.set_flag(session, folder_name, uid, MessageFlag.STARRED, operation.value)
        return None
