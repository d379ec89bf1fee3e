"""Ebook status state machine.

Forward-only lifecycle with ERROR reachable from every non-terminal state.
Self-transitions on the in-progress states exist so a redelivered job can
re-enter the stage it was running when its worker died.
"""

from src.ebook.errors import InvalidTransitionError
from src.ebook.schemas import EbookStatus

_ALLOWED_TRANSITIONS: dict[EbookStatus, set[EbookStatus]] = {
    EbookStatus.CREATED: {
        EbookStatus.DESCRIPTION_GENERATED,
        EbookStatus.ERROR,
    },
    EbookStatus.DESCRIPTION_GENERATED: {
        EbookStatus.DESCRIPTION_GENERATED,
        EbookStatus.DESCRIPTION_APPROVED,
        EbookStatus.ERROR,
    },
    EbookStatus.DESCRIPTION_APPROVED: {
        EbookStatus.DESCRIPTION_APPROVED,
        EbookStatus.DESCRIPTION_GENERATED,
        EbookStatus.GENERATING,
        EbookStatus.ERROR,
    },
    EbookStatus.GENERATING: {
        EbookStatus.GENERATING,
        EbookStatus.CONTENT_READY,
        EbookStatus.ERROR,
    },
    EbookStatus.CONTENT_READY: {
        EbookStatus.GENERATING,
        EbookStatus.GENERATING_PDF,
        EbookStatus.ERROR,
    },
    EbookStatus.GENERATING_PDF: {
        EbookStatus.GENERATING_PDF,
        EbookStatus.COMPLETED,
        EbookStatus.ERROR,
    },
    # Re-render only; the ebook stays terminal for every other stage
    EbookStatus.COMPLETED: {
        EbookStatus.GENERATING_PDF,
    },
    # Restart by re-issuing a stage job
    EbookStatus.ERROR: {
        EbookStatus.DESCRIPTION_GENERATED,
        EbookStatus.DESCRIPTION_APPROVED,
        EbookStatus.GENERATING,
        EbookStatus.GENERATING_PDF,
    },
}


def can_transition(current: EbookStatus | str, target: EbookStatus | str) -> bool:
    return EbookStatus(target) in _ALLOWED_TRANSITIONS.get(EbookStatus(current), set())


def ensure_transition(current: EbookStatus | str, target: EbookStatus | str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(EbookStatus(current).value, EbookStatus(target).value)
