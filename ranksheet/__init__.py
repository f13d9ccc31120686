"""
RankSheet Engine

Turns per-ASIN click/conversion signals for a keyword into rank sheets:
1. Fetches signals and product metadata from upstream providers
2. Deduplicates variations, scores and grades each period
3. Persists one snapshot per keyword per reporting period
4. Runs refreshes as bounded-concurrency background jobs
"""

__version__ = "0.1.0"
