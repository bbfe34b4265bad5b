"""Lead scoring -- a pure mapping from (current score, transition) to new score.

Scores only move through the deltas below. Nothing else in the pipeline
writes ``Opportunity.score``.
"""

from __future__ import annotations

from src.agency.pipeline.schemas import Stage, TransitionKind

# Stage moves inside ActiveDeal earn points for the stage entered.
STAGE_SCORE_DELTAS: dict[Stage, int] = {
    Stage.QUALIFIED: 15,
    Stage.PROPOSAL_SENT: 20,
    Stage.NEGOTIATION: 10,
}

KIND_SCORE_DELTAS: dict[TransitionKind, int] = {
    TransitionKind.OUTREACH_REPLIED: 10,
    TransitionKind.INTERESTED: 20,
}


def score_delta(kind: TransitionKind, target_stage: Stage | None = None) -> int:
    """Points earned by one transition.

    Re-activation into a scoring stage earns nothing: the delta table only
    rewards progress made inside ActiveDeal.
    """
    if kind is TransitionKind.STAGE_MOVE and target_stage is not None:
        return STAGE_SCORE_DELTAS.get(target_stage, 0)
    return KIND_SCORE_DELTAS.get(kind, 0)


def next_score(current: int, kind: TransitionKind, target_stage: Stage | None = None) -> int:
    return current + score_delta(kind, target_stage)
