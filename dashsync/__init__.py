"""
dashsync - offline-first transaction sync and realtime cache invalidation
for the vehicle and scrap trading dashboard.
"""

__version__ = "1.0.0"
