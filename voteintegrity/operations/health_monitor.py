# voteintegrity/operations/health_monitor.py

# Liveness/readiness checks: database, disk, and per-election agreement
# between the admitted count, the stored leaves and the in-memory ledger.

import logging
import os
import shutil
from typing import Dict

from sqlalchemy.exc import SQLAlchemyError

from voteintegrity import db
from voteintegrity.ledger.merkle import build_root

logger = logging.getLogger(__name__)

MIN_FREE_DISK_GB = float(os.getenv("MIN_FREE_DISK_GB", "1"))


def _check_db() -> Dict:
    try:
        db.session.execute(db.text("SELECT 1"))
        return {"ok": True, "detail": "database reachable"}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"ok": False, "error": str(e)}


def _check_disk(path=".") -> Dict:
    total, used, free = shutil.disk_usage(path)
    free_gb = free / (1024**3)
    return {"ok": free_gb >= MIN_FREE_DISK_GB, "free_gb": round(free_gb, 2), "min_required_gb": MIN_FREE_DISK_GB}


def check_election_consistency(election, ledgers) -> Dict:
    from voteintegrity.database.models import VoteRecord
    leaves = db.session.execute(
        db.select(VoteRecord.leaf_hash)
        .where(VoteRecord.election_id == election.id)
        .order_by(VoteRecord.merkle_leaf_index)
    ).scalars().all()
    ledger = ledgers.get(election.id)
    expected_root = build_root(leaves)
    result = {
        "admitted_count": election.admitted_count,
        "stored_leaves": len(leaves),
        "ledger_size": ledger.size,
        "merkle_root": ledger.current_root(),
    }
    result["ok"] = (election.admitted_count == len(leaves) == ledger.size
                    and expected_root == result["merkle_root"])
    if not result["ok"]:
        logger.error("Ledger/tally disagreement in election %s: %s", election.id, result)
    return result


def _check_ledgers(ledgers) -> Dict:
    from voteintegrity.database.models import Election
    try:
        elections = db.session.execute(db.select(Election)).scalars().all()
        results = {e.id: check_election_consistency(e, ledgers) for e in elections}
    except SQLAlchemyError as e:
        db.session.rollback()
        return {"ok": False, "error": str(e), "elections": {}}
    return {"ok": all(r["ok"] for r in results.values()), "elections": results}


def check_health(ledgers) -> Dict:
    """Aggregate overall system health."""
    database = _check_db()
    disk = _check_disk()
    ledger_state = _check_ledgers(ledgers) if database["ok"] else {"ok": False, "elections": {}}
    overall = database["ok"] and disk["ok"] and ledger_state["ok"]
    return {"db": database, "disk": disk, "ledgers": ledger_state, "overall_ok": overall}
