"""
Alerts Module
Rule-based alert engine over sprint state.
"""

from .engine import AlertEngine
from .store import AlertPage, AlertRuleStore, AlertStore
from .digest import SyncDigest

__all__ = [
    'AlertEngine',
    'AlertPage',
    'AlertRuleStore',
    'AlertStore',
    'SyncDigest',
]
