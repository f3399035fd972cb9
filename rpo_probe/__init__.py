"""Replication-lag and failover validation harness for a multi-region MySQL cluster."""

__version__ = "0.1.0"
