"""
Near-real-time insert replication between MongoDB deployments using change streams.
"""

__version__ = "0.1.0"
