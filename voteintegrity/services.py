# voteintegrity/services.py

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from flask import current_app

from voteintegrity.audit.audit_logger import AuditLogger
from voteintegrity.elections.manager import ElectionService
from voteintegrity.encryption.ballot_cipher import BallotCipher
from voteintegrity.encryption.ballot_signer import BallotSigner
from voteintegrity.encryption.key_custody import (
    DatabaseKeyCustody,
    ElectionKeyVault,
    KeyEnvelope,
    SigningKeyCustody,
)
from voteintegrity.ledger.registry import LedgerRegistry
from voteintegrity.ledger.verification import VoteVerifier
from voteintegrity.operations.cleanup import CleanupScheduler, prune_risk_history
from voteintegrity.pipeline.admission import VoteAdmissionPipeline
from voteintegrity.pipeline.locks import KeyedLock
from voteintegrity.security.input_validator import InputValidator
from voteintegrity.security.risk_gate import RiskGate
from voteintegrity.security.risk_history import RiskHistory, SqlRiskHistory
from voteintegrity.tally.aggregator import TallyAggregator

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'vote_integrity'


@dataclass
class Services:
    audit_logger: AuditLogger
    cipher: BallotCipher
    signer: BallotSigner
    custody: SigningKeyCustody
    vault: ElectionKeyVault
    aggregator: TallyAggregator
    ledgers: LedgerRegistry
    risk_history: RiskHistory
    risk_gate: RiskGate
    elections: ElectionService
    pipeline: VoteAdmissionPipeline
    verifier: VoteVerifier
    validator: InputValidator
    executor: ThreadPoolExecutor
    cleanup: CleanupScheduler

    def shutdown(self):
        self.cleanup.stop()
        self.executor.shutdown(wait=True)


def build_services(app, custody: SigningKeyCustody = None, risk_history: RiskHistory = None) -> Services:
    config = app.config
    audit_logger = AuditLogger(log_dir=config['AUDIT_LOG_DIR'])
    envelope = KeyEnvelope(config['ENCRYPTION_MASTER_KEY'])
    cipher = BallotCipher(key_bits=config['PAILLIER_KEY_BITS'])
    signer = BallotSigner()
    custody = custody or DatabaseKeyCustody(envelope, signer)
    vault = ElectionKeyVault(envelope)
    aggregator = TallyAggregator(cipher)
    ledgers = LedgerRegistry()
    risk_history = risk_history or SqlRiskHistory()
    risk_gate = RiskGate(risk_history, audit_logger=audit_logger, block_high_risk=config['RISK_BLOCK_HIGH'])
    election_locks = KeyedLock()
    elections = ElectionService(cipher, vault, aggregator, election_locks, audit_logger=audit_logger)
    executor = ThreadPoolExecutor(max_workers=config['PIPELINE_WORKERS'], thread_name_prefix='ballot-crypto')
    pipeline = VoteAdmissionPipeline(
        elections=elections,
        risk_gate=risk_gate,
        cipher=cipher,
        signer=signer,
        custody=custody,
        aggregator=aggregator,
        ledgers=ledgers,
        voter_locks=KeyedLock(),
        election_locks=election_locks,
        executor=executor,
        timeout_seconds=config['PIPELINE_TIMEOUT_SECONDS'],
        audit_logger=audit_logger,
    )
    cleanup = CleanupScheduler(
        {'risk_history': prune_risk_history(risk_history, config['RISK_HISTORY_RETENTION_HOURS'])},
        interval_seconds=config['CLEANUP_INTERVAL_SECONDS'],
        app=app,
    )
    return Services(
        audit_logger=audit_logger,
        cipher=cipher,
        signer=signer,
        custody=custody,
        vault=vault,
        aggregator=aggregator,
        ledgers=ledgers,
        risk_history=risk_history,
        risk_gate=risk_gate,
        elections=elections,
        pipeline=pipeline,
        verifier=VoteVerifier(ledgers, signer, custody),
        validator=InputValidator(),
        executor=executor,
        cleanup=cleanup,
    )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
