"""
Service Wiring
Builds the shared component graph used by the web app, scheduler and scripts.
"""

from dataclasses import dataclass

from kaos_sync.alerts.digest import SyncDigest
from kaos_sync.alerts.engine import AlertEngine
from kaos_sync.alerts.store import AlertRuleStore, AlertStore
from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.load_method import LoadMethodConfig, get_load_method_config
from kaos_sync.rate_limiter import RateLimiter, get_rate_limiter
from kaos_sync.scheduler import BatchScheduler
from kaos_sync.sync_orchestrator import SyncOrchestrator
from kaos_sync.sync_queue import SyncQueue


@dataclass
class Services:
    db: DatabaseConnection
    rate_limiter: RateLimiter
    load_config: LoadMethodConfig
    queue: SyncQueue
    alert_store: AlertStore
    rule_store: AlertRuleStore
    alert_engine: AlertEngine
    orchestrator: SyncOrchestrator
    batch_scheduler: BatchScheduler


def build_services(db: DatabaseConnection = None) -> Services:
    """Wire every component against one database and the shared Jira quota."""
    db = db or get_db()
    rate_limiter = get_rate_limiter(db)
    load_config = get_load_method_config()

    queue = SyncQueue(db)
    alert_store = AlertStore(db)
    rule_store = AlertRuleStore(db)
    alert_engine = AlertEngine(db, alert_store=alert_store, rule_store=rule_store)
    digest = SyncDigest(db, alert_store=alert_store)

    orchestrator = SyncOrchestrator(
        db=db,
        queue=queue,
        rate_limiter=rate_limiter,
        load_config=load_config,
        alert_engine=alert_engine,
        digest=digest
    )
    batch_scheduler = BatchScheduler(
        orchestrator=orchestrator,
        queue=queue,
        rate_limiter=rate_limiter,
        db=db
    )

    return Services(
        db=db,
        rate_limiter=rate_limiter,
        load_config=load_config,
        queue=queue,
        alert_store=alert_store,
        rule_store=rule_store,
        alert_engine=alert_engine,
        orchestrator=orchestrator,
        batch_scheduler=batch_scheduler
    )
