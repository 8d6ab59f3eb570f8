"""Reward and leaderboard aggregation engine."""

__version__ = "0.1.0"
