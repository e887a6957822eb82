"""Treasury autopilot core.

- market_data: external feeds behind a TTL signal cache
- opportunities: yield aggregation and best-venue selection
- risk: price history and composite risk scoring
- automation: rebalance policy, decision ledger, scheduler, command dispatch
- execution: venue routing and the operations that move balances
- portfolio: safety balance and yield positions
- offline: durable queue of commands captured while disconnected
- storage: key-value persistence for the offline queue

Default must remain dry-run / paper execution.
"""
