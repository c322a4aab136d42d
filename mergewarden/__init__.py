"""
MergeWarden: governance decision engine for pull requests.

Classifies PRs into risk tiers, enforces review periods and k-of-n
maintainer signatures, aggregates weighted economic-node vetoes, runs the
emergency-mode lifecycle and records everything in a hash-chained,
Merkle-verifiable audit log.
"""

from mergewarden.util import SCHEMA_VERSION

__version__ = "1.0.0"

__all__ = ["SCHEMA_VERSION", "__version__"]
