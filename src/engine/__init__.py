from src.engine.set_scoring import (
    ProviderSet,
    RankedSetCandidate,
    SetScoreWeights,
    build_set_search_terms,
    rank_set_candidates,
)
from src.engine.signals import SignalScores, compute_signals
from src.engine.variant_matcher import MatchReason, MatchStatus, PrintingLookup, PrintingRef

__all__ = [
    "build_set_search_terms",
    "compute_signals",
    "MatchReason",
    "MatchStatus",
    "PrintingLookup",
    "PrintingRef",
    "ProviderSet",
    "RankedSetCandidate",
    "rank_set_candidates",
    "SetScoreWeights",
    "SignalScores",
]
