"""
Tournament lifecycle engine.

This module provides:
- Bracket building for single and double elimination fields
- Match and tournament state machines serialized by Redis locks
- Moderator dispute resolution with downstream re-routing
- A periodic lifecycle driver with resumable refunds and payouts
"""

from .bracket import BracketBuilder, BracketPlan, SeedEntry
from .disputes import DisputeResolver, ScoreOverride
from .driver import LifecycleDriver, TickReport
from .engine import TournamentEngine
from .lifecycle import DecisionOutcome, TournamentDecision, TournamentStateMachine
from .matches import MatchScore, MatchStateMachine

__all__ = [
    "BracketBuilder",
    "BracketPlan",
    "DecisionOutcome",
    "DisputeResolver",
    "LifecycleDriver",
    "MatchScore",
    "MatchStateMachine",
    "ScoreOverride",
    "SeedEntry",
    "TickReport",
    "TournamentDecision",
    "TournamentEngine",
    "TournamentStateMachine",
]
