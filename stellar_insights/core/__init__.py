"""Core shared types for Stellar Insights (error taxonomy)."""
