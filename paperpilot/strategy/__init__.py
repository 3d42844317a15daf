"""Discovery scoring, opportunity classification and the decision oracle."""

from paperpilot.strategy.opportunities import OpportunityGate
from paperpilot.strategy.oracle import DecisionOracle, build_recommendation, combine_verdicts
from paperpilot.strategy.scoring import DISCOVERY_PROFILES, DiscoveryResult, Scorer

__all__ = [
    "OpportunityGate",
    "DecisionOracle",
    "build_recommendation",
    "combine_verdicts",
    "DISCOVERY_PROFILES",
    "DiscoveryResult",
    "Scorer",
]
