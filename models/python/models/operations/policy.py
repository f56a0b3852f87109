"""Tunable limits of the order lifecycle, matching and reputation rules.

The service installs its env-derived policy at startup with ``policy_set``;
everything in ``models.operations`` reads it through ``policy_get``.
"""

from pydantic import BaseModel, Field


class RescuePolicy(BaseModel):
    # Matching
    match_radius_m: float = Field(default=7000.0, gt=0)
    match_distance_weight: float = 70.0
    match_trust_weight: float = 0.3
    match_max_candidates: int = Field(default=10, gt=0)
    match_fallback_delay_s: int = Field(default=60, ge=0)
    fallback_when_no_candidates: bool = True
    max_courier_match_attempts: int = Field(default=3, gt=0)

    # Cancellation gates
    cancel_limit: int = Field(default=3, gt=0)
    cancel_window_hours: int = Field(default=24, gt=0)
    buyer_cancel_cutoff_minutes: int = Field(default=30, ge=0)

    # Reputation
    default_trust_score: int = 50
    on_time_grace_minutes: int = 60
    warn_below: int = 20
    lock_below: int = 10


_policy = RescuePolicy()


def policy_get() -> RescuePolicy:
    return _policy


def policy_set(policy: RescuePolicy) -> None:
    global _policy
    _policy = policy
