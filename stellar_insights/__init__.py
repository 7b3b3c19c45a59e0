"""
Stellar Insights core: ledger ingestion, anchor/corridor analytics and snapshot anchoring.

Runs 24/7 to pull payments, trustline changes, account merges and fee bumps from
Horizon, aggregate anchor and corridor reliability metrics, score asset reputation,
and commit a deterministic fingerprint of the aggregate state to an on-chain
snapshot contract.
"""

__version__ = "0.1.0"
