"""
KAOS Jira Sync
Quota-aware Jira synchronization and sprint alerting.
"""

__version__ = '1.0.0'
