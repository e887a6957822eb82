"""Treasury automation: policy, ledger, activity feed, scheduler and commands.

Default must remain dry-run.
"""

from .activity import ActivityEntry, ActivityLog
from .ledger import DecisionLedger
from .policy import PolicyAction, PolicyDecision, RebalancePolicy
