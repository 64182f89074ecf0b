"""
Distributed product crawler.

Workers share one deduplicated, lease-based request queue stored in DynamoDB
and stream extracted product records back to a master process.
"""

__version__ = "0.1.0"
