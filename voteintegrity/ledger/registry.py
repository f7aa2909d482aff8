# voteintegrity/ledger/registry.py

import logging
import threading

from voteintegrity import db
from voteintegrity.ledger.merkle import MerkleLedger

logger = logging.getLogger(__name__)


class LedgerRegistry:
    """One in-memory MerkleLedger per election, rebuilt from persisted leaves on first use."""

    def __init__(self):
        self._ledgers = {}
        self._lock = threading.Lock()

    def _load(self, election_id):
        from voteintegrity.database.models import VoteRecord
        leaves = db.session.execute(
            db.select(VoteRecord.leaf_hash)
            .where(VoteRecord.election_id == election_id)
            .order_by(VoteRecord.merkle_leaf_index)
        ).scalars().all()
        ledger = MerkleLedger(election_id, leaves)
        logger.info("Loaded ledger for election %s with %d leaves", election_id, ledger.size)
        return ledger

    def get(self, election_id) -> MerkleLedger:
        with self._lock:
            ledger = self._ledgers.get(election_id)
            if ledger is None:
                ledger = self._load(election_id)
                self._ledgers[election_id] = ledger
            return ledger

    def reload(self, election_id) -> MerkleLedger:
        with self._lock:
            ledger = self._load(election_id)
            self._ledgers[election_id] = ledger
            return ledger

    def evict(self, election_id):
        with self._lock:
            self._ledgers.pop(election_id, None)

    def loaded(self):
        with self._lock:
            return dict(self._ledgers)
