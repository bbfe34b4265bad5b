"""Opportunity pipeline -- pools, stages, scoring, activity log, and the stage machine.

Provides Pydantic schemas (Opportunity, ActivityEntry, TransitionRequest),
the pure scoring and transition-planning functions, OpportunityRepository
for pool-aware store access, and OpportunityStageMachine which orchestrates
transitions and their contact-sync and conversion side effects.
"""
