"""
Job Relay

Multi-tenant coordination layer over a durable queue engine: job tracking,
signed webhook delivery, event subscriptions and HTTP scheduling.
"""

__version__ = "1.0.0"
