"""Risk scoring.

Price history, composite risk score, and target safety/yield splits.
"""

from .history import PriceHistory
from .scorer import RiskAssessment, RiskInputs, RiskScorer, compute_risk_score
