"""Pair coordination, retry policy and batch orchestration."""
