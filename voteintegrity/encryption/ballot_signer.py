# voteintegrity/encryption/ballot_signer.py

import base64
import hashlib
import json
import logging
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from voteintegrity.encryption.ballot_cipher import EncryptedBallot

logger = logging.getLogger(__name__)

# ECDSA over NIST P-256 binds each encrypted ballot to its voter


def canonical_ballot_bytes(ballot: EncryptedBallot) -> bytes:
    payload = {
        "ciphertext": ballot.ciphertext,
        "election_id": ballot.election_id,
        "voter_id": ballot.voter_id,
        "timestamp": ballot.timestamp,
    }
    return json.dumps(payload, sort_keys=True, separators=(',', ':')).encode()


@dataclass(frozen=True)
class SignedBallot:
    ballot: EncryptedBallot
    signature: str
    signer_public_key: str

    @property
    def election_id(self):
        return self.ballot.election_id

    @property
    def voter_id(self):
        return self.ballot.voter_id

    @property
    def timestamp(self):
        return self.ballot.timestamp

    @property
    def ciphertext(self):
        return self.ballot.ciphertext

    def canonical_bytes(self) -> bytes:
        """Encoding hashed into the Merkle ledger."""
        payload = {
            "ciphertext": self.ballot.ciphertext,
            "election_id": self.ballot.election_id,
            "voter_id": self.ballot.voter_id,
            "timestamp": self.ballot.timestamp,
            "signature": self.signature,
            "signer_public_key": self.signer_public_key,
        }
        return json.dumps(payload, sort_keys=True, separators=(',', ':')).encode()


class BallotSigner:
    curve = ec.SECP256R1

    def generate_signing_key(self) -> ec.EllipticCurvePrivateKey:
        return ec.generate_private_key(self.curve())

    def get_public_key_pem(self, signing_key: ec.EllipticCurvePrivateKey) -> str:
        pem = signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo)
        return pem.decode()

    def get_private_key_pem(self, signing_key: ec.EllipticCurvePrivateKey) -> str:
        pem = signing_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption())
        return pem.decode()

    def load_private_key(self, pem_str: str) -> ec.EllipticCurvePrivateKey:
        key = serialization.load_pem_private_key(pem_str.encode(), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, self.curve):
            raise ValueError("Signing key is not a P-256 key")
        return key

    def sign(self, encrypted_ballot: EncryptedBallot, voter_signing_key: ec.EllipticCurvePrivateKey) -> str:
        if not isinstance(voter_signing_key, ec.EllipticCurvePrivateKey):
            raise ValueError("No elliptic-curve signing key available")
        signature = voter_signing_key.sign(canonical_ballot_bytes(encrypted_ballot), ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode()

    def sign_ballot(self, encrypted_ballot: EncryptedBallot,
                    voter_signing_key: ec.EllipticCurvePrivateKey) -> SignedBallot:
        return SignedBallot(
            ballot=encrypted_ballot,
            signature=self.sign(encrypted_ballot, voter_signing_key),
            signer_public_key=self.get_public_key_pem(voter_signing_key),
        )

    def verify(self, signed_ballot: SignedBallot) -> bool:
        try:
            public_key = serialization.load_pem_public_key(signed_ballot.signer_public_key.encode())
            if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(public_key.curve, self.curve):
                logger.warning("Ballot signed with an unsupported key type for voter %s", signed_ballot.voter_id)
                return False
            signature = base64.b64decode(signed_ballot.signature, validate=True)
            public_key.verify(signature, canonical_ballot_bytes(signed_ballot.ballot), ec.ECDSA(hashes.SHA256()))
            return True
        except CryptoInvalidSignature:
            logger.warning("Ballot signature mismatch for voter %s", signed_ballot.voter_id)
            return False
        except (ValueError, TypeError, AttributeError, UnicodeError) as e:
            logger.warning("Ballot signature could not be checked for voter %s: %s", signed_ballot.voter_id, e)
            return False

    def signer_fingerprint(self, signed_ballot: SignedBallot) -> str:
        return hashlib.sha256(signed_ballot.signer_public_key.encode()).hexdigest()[:16]
