"""
Remittance Engine

Bucket lifecycle engine for healthcare remittance files: claims are
aggregated into buckets, thresholds decide when a bucket is ready, commit
criteria gate generation behind approval, and generated files are delivered
with bounded retry.
"""

__version__ = "1.0.0"
