# voteintegrity/encryption/key_custody.py
"""Custody of secret key material behind a Fernet key envelope.

Two kinds of secrets are held here:
- the Paillier private key of each election (sealed at setup, unsealed once
  by the tally authority when the election closes)
- one P-256 signing key per (voter, election)

Voter key custody is a boundary: ``SigningKeyCustody`` is the interface the
pipeline depends on. ``DatabaseKeyCustody`` generates a key on first use and
keeps it sealed in the database; a hardware-backed store or a credential
service can replace it without touching the pipeline.

Exception hierarchy:
- KeyEnvelopeError: base class
  - KeyUnsealError: the envelope could not be opened (wrong master key or tampering)
"""

import base64
import json
import logging
import threading
from abc import ABC, abstractmethod

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy.exc import IntegrityError as SQLIntegrityError

from voteintegrity import db
from voteintegrity.encryption.ballot_cipher import ElectionPrivateKey
from voteintegrity.encryption.ballot_signer import BallotSigner

logger = logging.getLogger(__name__)


class KeyEnvelopeError(Exception):
    """Base exception for key envelope failures."""
    pass


class KeyUnsealError(KeyEnvelopeError):
    """Raised when sealed key material cannot be opened with the master key."""
    pass


class KeyEnvelope:
    def __init__(self, master_key: str):
        key_bytes = master_key.encode()[:32]
        if len(key_bytes) < 32:
            raise ValueError("Master key must be at least 32 bytes")
        self.master_key = key_bytes
        self._fernet = Fernet(base64.urlsafe_b64encode(self.master_key))

    def seal(self, secret: bytes) -> str:
        return self._fernet.encrypt(secret).decode()

    def unseal(self, sealed: str) -> bytes:
        try:
            return self._fernet.decrypt(sealed.encode())
        except InvalidToken as e:
            raise KeyUnsealError(f"Failed to open key envelope: {e}")


class ElectionKeyVault:
    """Seals election private keys so they never sit in plaintext next to public artifacts."""

    def __init__(self, envelope: KeyEnvelope):
        self.envelope = envelope

    def seal_private_key(self, private_key: ElectionPrivateKey) -> str:
        secret = json.dumps({
            "election_id": private_key.election_id,
            "p": str(private_key.p),
            "q": str(private_key.q),
        }, sort_keys=True).encode()
        return self.envelope.seal(secret)

    def unseal_private_key(self, election_id: str, sealed: str) -> ElectionPrivateKey:
        try:
            secret = json.loads(self.envelope.unseal(sealed).decode())
            key = ElectionPrivateKey(election_id=secret["election_id"], p=int(secret["p"]), q=int(secret["q"]))
        except KeyUnsealError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise KeyUnsealError(f"Sealed election key is malformed: {e}")
        if key.election_id != election_id:
            raise KeyUnsealError("Sealed key belongs to a different election")
        return key


class SigningKeyCustody(ABC):
    @abstractmethod
    def signing_key_for(self, voter_id: str, election_id: str) -> ec.EllipticCurvePrivateKey:
        """Return the voter's signing key for the election, creating it once."""

    @abstractmethod
    def public_key_pem_for(self, voter_id: str, election_id: str):
        """Return the registered public key PEM, or None if no key was issued."""


class InMemoryKeyCustody(SigningKeyCustody):
    def __init__(self, signer: BallotSigner = None):
        self.signer = signer or BallotSigner()
        self._keys = {}
        self._lock = threading.Lock()

    def signing_key_for(self, voter_id, election_id):
        with self._lock:
            key = self._keys.get((voter_id, election_id))
            if key is None:
                key = self.signer.generate_signing_key()
                self._keys[(voter_id, election_id)] = key
            return key

    def public_key_pem_for(self, voter_id, election_id):
        key = self._keys.get((voter_id, election_id))
        return self.signer.get_public_key_pem(key) if key else None


class DatabaseKeyCustody(SigningKeyCustody):
    def __init__(self, envelope: KeyEnvelope, signer: BallotSigner = None):
        self.envelope = envelope
        self.signer = signer or BallotSigner()

    def _lookup(self, voter_id, election_id):
        from voteintegrity.database.models import VoterSigningKey
        return db.session.execute(
            db.select(VoterSigningKey).filter_by(voter_id=voter_id, election_id=election_id)
        ).scalar_one_or_none()

    def signing_key_for(self, voter_id, election_id):
        from voteintegrity.database.models import VoterSigningKey
        record = self._lookup(voter_id, election_id)
        if record is not None:
            pem = self.envelope.unseal(record.sealed_private_key).decode()
            return self.signer.load_private_key(pem)

        key = self.signer.generate_signing_key()
        record = VoterSigningKey(
            voter_id=voter_id,
            election_id=election_id,
            sealed_private_key=self.envelope.seal(self.signer.get_private_key_pem(key).encode()),
            public_key_pem=self.signer.get_public_key_pem(key),
        )
        db.session.add(record)
        try:
            db.session.commit()
        except SQLIntegrityError:
            # Another worker issued the key first
            db.session.rollback()
            return self.signing_key_for(voter_id, election_id)
        logger.info("Issued signing key for voter %s in election %s", voter_id, election_id)
        return key

    def public_key_pem_for(self, voter_id, election_id):
        record = self._lookup(voter_id, election_id)
        return record.public_key_pem if record else None
