import logging, time
from datetime import datetime
from sqlalchemy.orm import Session
from common.error_handling import ServiceError
from common.settings import settings
from ledger_service.db import SessionLocal
from ledger_service.ledger import reconcile
from ledger_service.nonce_guard import purge_expired_nonces
from ledger_service.redemption import expire_coupons

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def run_once(db: Session, repair: bool = False, now: datetime = None) -> dict:
    """One sweep: drop spent nonces past their validity, expire coupons, audit the cache."""
    purged = purge_expired_nonces(db, now)
    expired = expire_coupons(db, now)
    report = reconcile(db, repair=repair)
    logger.info(f"🧹 Maintenance: purged {purged} nonces, expired {expired} coupons, "
                f"{len(report.discrepancies)} cache discrepancies")
    return {"purged_nonces": purged, "expired_coupons": expired, "reconciliation": report.to_dict()}

def run():
    while True:
        try:
            with SessionLocal() as db:
                run_once(db, repair=True)
        except ServiceError as e:
            logger.error(f"Maintenance sweep failed: {e.code} - {e.message}")
        time.sleep(settings.maintenance_interval_seconds)

if __name__ == "__main__":
    run()
