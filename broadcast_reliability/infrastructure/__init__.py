"""
Infrastructure Module

Redis client, priority lanes, transport and Prometheus metrics.
"""
