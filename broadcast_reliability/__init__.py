"""
Broadcast Reliability Service

Priority-tiered delivery of real-time broadcasts with retries, dead-letter
capture, recovery sweeps and analytics housekeeping on Redis.
"""

__version__ = "1.0.0"
