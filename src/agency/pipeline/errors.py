"""Stage machine error taxonomy.

Every fatal outcome of ``OpportunityStageMachine.transition`` is a
TransitionError subclass. Contact sync failures are not in this hierarchy:
they are recorded in the activity log and never abort a transition.
"""

from __future__ import annotations


class TransitionError(Exception):
    """Base class for transitions that did not complete."""

    def __init__(self, message: str, opportunity_id: str | None = None) -> None:
        self.opportunity_id = opportunity_id
        super().__init__(message)


class InvalidTransitionError(TransitionError):
    """Requested pool/stage change is not reachable from the current state."""


class OpportunityNotFoundError(TransitionError):
    """No live pool holds a record with the given id."""

    def __init__(self, opportunity_id: str) -> None:
        super().__init__(f"Opportunity not found: {opportunity_id}", opportunity_id)


class ConversionFailure(TransitionError):
    """Customer emitter failed on Closed Won; the source record is untouched."""


class PersistenceFailure(TransitionError):
    """The record store rejected or failed a write; nothing was applied."""
