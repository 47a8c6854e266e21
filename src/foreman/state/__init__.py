from foreman.state.journal import IterationJournal, IterationOutcome, IterationRecord
from foreman.state.store import StateConflict, StateError, StateStore

__all__ = [
    "IterationJournal",
    "IterationOutcome",
    "IterationRecord",
    "StateConflict",
    "StateError",
    "StateStore",
]
