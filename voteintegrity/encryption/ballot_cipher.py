# voteintegrity/encryption/ballot_cipher.py
"""Additively homomorphic ballot encryption (Paillier, via python-paillier).

A ballot is encrypted as a one-hot vector over the election's candidate
slate: the chosen candidate's component encrypts 1, every other component
encrypts 0. Every component uses fresh randomness, so two ballots for the
same candidate are unlinkable and no component reveals the choice.

Multiplying two Paillier ciphertexts modulo n^2 yields the encryption of the
sum of their plaintexts, which is how the TallyAggregator counts votes
without decrypting any individual ballot.

Decryption is only offered for ``AggregateCiphertext`` values. An
``EncryptedBallot`` has no decryption path at all.

Usage:
    cipher = BallotCipher(key_bits=3072)
    keypair = cipher.generate_keypair('election-1', candidates=[1, 2, 3])
    ballot = cipher.encrypt(2, keypair.public_key, voter_id='voter-9')
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from phe import paillier

from voteintegrity.clock import utc_isoformat
from voteintegrity.errors import DecryptionFailure, InvalidCandidate, KeyMismatch

logger = logging.getLogger(__name__)

DEFAULT_KEY_BITS = 3072


def key_id_for_modulus(n: int) -> str:
    return hashlib.sha256(str(n).encode()).hexdigest()[:16]


@dataclass(frozen=True)
class ElectionPublicKey:
    election_id: str
    n: int
    candidates: Tuple[int, ...]

    @property
    def g(self) -> int:
        return self.n + 1

    @property
    def key_id(self) -> str:
        return key_id_for_modulus(self.n)

    @property
    def nsquare(self) -> int:
        return self.n * self.n

    def paillier_key(self) -> paillier.PaillierPublicKey:
        return paillier.PaillierPublicKey(self.n)


@dataclass(frozen=True)
class ElectionPrivateKey:
    election_id: str
    p: int
    q: int

    @property
    def n(self) -> int:
        return self.p * self.q

    @property
    def key_id(self) -> str:
        return key_id_for_modulus(self.n)

    def paillier_key(self) -> paillier.PaillierPrivateKey:
        return paillier.PaillierPrivateKey(paillier.PaillierPublicKey(self.n), self.p, self.q)

    def __repr__(self):
        return f"ElectionPrivateKey(election_id={self.election_id!r}, key_id={self.key_id!r})"


@dataclass(frozen=True)
class ElectionKeyPair:
    election_id: str
    public_key: ElectionPublicKey
    private_key: ElectionPrivateKey


@dataclass(frozen=True)
class EncryptedBallot:
    election_id: str
    voter_id: str
    timestamp: str
    key_id: str
    ciphertexts: Tuple[Tuple[int, int], ...]

    @property
    def ciphertext(self) -> str:
        """Canonical string form: sorted JSON of candidate id -> decimal ciphertext."""
        return json.dumps(
            {str(candidate): str(value) for candidate, value in self.ciphertexts},
            sort_keys=True, separators=(',', ':'),
        )

    @property
    def candidates(self) -> Tuple[int, ...]:
        return tuple(candidate for candidate, _ in self.ciphertexts)

    def component(self, candidate_id: int) -> int:
        for candidate, value in self.ciphertexts:
            if candidate == candidate_id:
                return value
        raise InvalidCandidate(f"Ballot has no component for candidate {candidate_id}")

    @classmethod
    def from_ciphertext(cls, ciphertext: str, election_id: str, voter_id: str,
                        timestamp: str, key_id: str) -> 'EncryptedBallot':
        """Parse a persisted ciphertext string back into a ballot."""
        try:
            raw = json.loads(ciphertext)
            if not isinstance(raw, dict) or not raw:
                raise ValueError("ciphertext must be a non-empty object")
            components = tuple(sorted((int(candidate), int(value)) for candidate, value in raw.items()))
        except (TypeError, ValueError) as e:
            raise DecryptionFailure(f"Malformed ballot ciphertext: {e}")
        return cls(election_id=election_id, voter_id=voter_id, timestamp=timestamp,
                   key_id=key_id, ciphertexts=components)


@dataclass(frozen=True)
class AggregateCiphertext:
    """Homomorphic sum of one candidate's components across admitted ballots.

    ``count`` is the number of ballots folded in; a correct decryption can
    never exceed it.
    """
    election_id: str
    key_id: str
    candidate_id: int
    value: int
    count: int = 0

    def to_string(self) -> str:
        return str(self.value)


class BallotCipher:
    def __init__(self, key_bits: int = DEFAULT_KEY_BITS):
        self.key_bits = key_bits

    def generate_keypair(self, election_id: str, candidates: Iterable[int]) -> ElectionKeyPair:
        slate = tuple(sorted(set(int(c) for c in candidates)))
        if not slate:
            raise InvalidCandidate("An election needs at least one candidate")
        public, private = paillier.generate_paillier_keypair(n_length=self.key_bits)
        logger.info("Generated %d-bit Paillier key for election %s", self.key_bits, election_id)
        return ElectionKeyPair(
            election_id=election_id,
            public_key=ElectionPublicKey(election_id=election_id, n=public.n, candidates=slate),
            private_key=ElectionPrivateKey(election_id=election_id, p=private.p, q=private.q),
        )

    def encrypt(self, candidate_id: int, public_key: ElectionPublicKey, voter_id: str,
                timestamp: Optional[str] = None) -> EncryptedBallot:
        if candidate_id not in public_key.candidates:
            raise InvalidCandidate(f"Candidate {candidate_id} is not on the slate for election {public_key.election_id}")
        pk = public_key.paillier_key()
        components = []
        for candidate in public_key.candidates:
            encrypted = pk.encrypt(1 if candidate == candidate_id else 0)
            components.append((candidate, encrypted.ciphertext()))
        return EncryptedBallot(
            election_id=public_key.election_id,
            voter_id=voter_id,
            timestamp=timestamp or utc_isoformat(),
            key_id=public_key.key_id,
            ciphertexts=tuple(components),
        )

    def identity(self, public_key: ElectionPublicKey, candidate_id: int) -> AggregateCiphertext:
        """The empty aggregate: ciphertext 1 is the encryption of 0 with r = 1."""
        return AggregateCiphertext(
            election_id=public_key.election_id,
            key_id=public_key.key_id,
            candidate_id=candidate_id,
            value=1,
            count=0,
        )

    def add(self, public_key: ElectionPublicKey, left: int, right: int) -> int:
        """Homomorphic addition of two raw ciphertexts under ``public_key``."""
        self.check_ciphertext(public_key, left)
        self.check_ciphertext(public_key, right)
        pk = public_key.paillier_key()
        total = paillier.EncryptedNumber(pk, left, 0) + paillier.EncryptedNumber(pk, right, 0)
        return total.ciphertext(be_secure=False)

    def check_ciphertext(self, public_key: ElectionPublicKey, value: int):
        if not isinstance(value, int) or isinstance(value, bool) or not 0 < value < public_key.nsquare:
            raise DecryptionFailure("Ciphertext is outside the key's ciphertext space")

    def check_same_key(self, public_key: ElectionPublicKey, *tagged):
        for item in tagged:
            if item.election_id != public_key.election_id or item.key_id != public_key.key_id:
                raise KeyMismatch(
                    "Ciphertext belongs to a different election or key",
                    expected=public_key.election_id, found=item.election_id,
                )

    def decrypt_aggregate(self, aggregate: AggregateCiphertext, private_key: ElectionPrivateKey) -> int:
        if not isinstance(aggregate, AggregateCiphertext):
            raise TypeError("Only aggregate ciphertexts can be decrypted")
        if aggregate.election_id != private_key.election_id or aggregate.key_id != private_key.key_id:
            raise KeyMismatch(
                "Aggregate and private key belong to different elections or keys",
                expected=private_key.election_id, found=aggregate.election_id,
            )
        nsquare = private_key.n * private_key.n
        if not isinstance(aggregate.value, int) or not 0 < aggregate.value < nsquare:
            raise DecryptionFailure("Aggregate ciphertext is outside the key's ciphertext space")
        try:
            sk = private_key.paillier_key()
            plaintext = sk.decrypt(paillier.EncryptedNumber(sk.public_key, aggregate.value, 0))
        except (ValueError, ZeroDivisionError, OverflowError) as e:
            raise DecryptionFailure(f"Aggregate decryption failed: {e}")
        if not isinstance(plaintext, int) or not 0 <= plaintext <= aggregate.count:
            raise DecryptionFailure(
                "Decrypted count is inconsistent with the number of folded ballots",
                candidate_id=aggregate.candidate_id,
            )
        return plaintext


def public_key_from_storage(election_id: str, modulus: str, candidates: Iterable[int]) -> ElectionPublicKey:
    try:
        n = int(modulus)
    except (TypeError, ValueError) as e:
        raise DecryptionFailure(f"Stored election modulus is malformed: {e}")
    return ElectionPublicKey(election_id=election_id, n=n, candidates=tuple(sorted(int(c) for c in candidates)))
