"Similarity scorers and the matching engine."

from .engine import MatchingEngine
from .scorers import SCORERS, get_scorer, score

__all__ = ["MatchingEngine", "SCORERS", "get_scorer", "score"]
