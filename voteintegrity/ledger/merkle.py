# voteintegrity/ledger/merkle.py
"""Append-only Merkle accumulator over signed ballots of one election.

Leaves are SHA-256 hashes of the canonical SignedBallot encoding, kept in
admission order. Each level pairs adjacent nodes; when a level has an odd
number of nodes the last node is paired with itself. Proof generation and
verification apply the same rule, and every sibling in a proof records
whether it sits on the left or the right of the running hash.

The tree is maintained incrementally: an append only recomputes the
rightmost path, so it costs O(log n) hashes. Reads work on an immutable
``LedgerSnapshot`` captured under the writer lock.
"""

import hashlib
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Tuple

from voteintegrity.errors import LedgerConflict, MerkleInclusionFailure

EMPTY_ROOT = hashlib.sha256(b"").hexdigest()
LEFT = "left"
RIGHT = "right"

_HASH_RE = re.compile(r'^[0-9a-f]{64}$')


def hash_leaf(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_pair(left: str, right: str) -> str:
    return hashlib.sha256(bytes.fromhex(left) + bytes.fromhex(right)).hexdigest()


def leaf_hash_for(signed_ballot) -> str:
    return hash_leaf(signed_ballot.canonical_bytes())


@dataclass(frozen=True)
class ProofStep:
    hash: str
    position: str

    def to_dict(self):
        return {"hash": self.hash, "position": self.position}


@dataclass(frozen=True)
class MerkleProof:
    root: str
    leaf: str
    index: int
    siblings: Tuple[ProofStep, ...]

    def to_dict(self):
        return {
            "root": self.root,
            "leaf": self.leaf,
            "index": self.index,
            "siblings": [step.to_dict() for step in self.siblings],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'MerkleProof':
        try:
            siblings = tuple(ProofStep(hash=str(s["hash"]), position=str(s["position"])) for s in data["siblings"])
            return cls(root=str(data["root"]), leaf=str(data["leaf"]), index=int(data["index"]), siblings=siblings)
        except (KeyError, TypeError, ValueError) as e:
            raise MerkleInclusionFailure(f"Malformed Merkle proof: {e}")


def verify_proof(proof: MerkleProof) -> bool:
    """Recompute the root from ``proof.leaf`` and compare it to ``proof.root``."""
    if not _HASH_RE.match(proof.leaf) or not _HASH_RE.match(proof.root):
        return False
    current = proof.leaf
    for step in proof.siblings:
        if not _HASH_RE.match(step.hash):
            return False
        if step.position == RIGHT:
            current = hash_pair(current, step.hash)
        elif step.position == LEFT:
            current = hash_pair(step.hash, current)
        else:
            return False
    return current == proof.root


def require_inclusion(proof: MerkleProof):
    if not verify_proof(proof):
        raise MerkleInclusionFailure("Proof does not recompute to the stated root",
                                     leaf=proof.leaf, root=proof.root)


@dataclass(frozen=True)
class LedgerSnapshot:
    election_id: str
    levels: Tuple[Tuple[str, ...], ...]

    @property
    def size(self) -> int:
        return len(self.levels[0]) if self.levels else 0

    @property
    def root(self) -> str:
        if not self.levels or not self.levels[0]:
            return EMPTY_ROOT
        return self.levels[-1][0]

    def prove(self, index: int) -> MerkleProof:
        if not 0 <= index < self.size:
            raise MerkleInclusionFailure(f"Leaf index {index} is not in the ledger", size=self.size)
        siblings = []
        position = index
        for level in self.levels[:-1]:
            if position % 2 == 0:
                sibling = position + 1
                # Odd tail: the node was paired with itself
                sibling_hash = level[sibling] if sibling < len(level) else level[position]
                siblings.append(ProofStep(hash=sibling_hash, position=RIGHT))
            else:
                siblings.append(ProofStep(hash=level[position - 1], position=LEFT))
            position //= 2
        return MerkleProof(root=self.root, leaf=self.levels[0][index], index=index, siblings=tuple(siblings))


class MerkleLedger:
    def __init__(self, election_id: str, leaves=()):
        self.election_id = election_id
        self.lock = threading.RLock()
        self._levels: List[List[str]] = [[]]
        self._index: Dict[str, int] = {}
        for leaf in leaves:
            self.append_leaf(leaf)

    @property
    def size(self) -> int:
        return len(self._levels[0])

    def __contains__(self, leaf_hash: str) -> bool:
        return leaf_hash in self._index

    def index_of(self, leaf_hash: str) -> int:
        try:
            return self._index[leaf_hash]
        except KeyError:
            raise MerkleInclusionFailure("Leaf is not in the ledger", leaf=leaf_hash)

    def append(self, signed_ballot) -> str:
        leaf = leaf_hash_for(signed_ballot)
        self.append_leaf(leaf)
        return leaf

    def append_leaf(self, leaf_hash: str) -> int:
        if not _HASH_RE.match(leaf_hash):
            raise ValueError("Leaf must be a lowercase hex SHA-256 digest")
        with self.lock:
            if leaf_hash in self._index:
                raise LedgerConflict("Leaf is already in the ledger", leaf=leaf_hash)
            index = len(self._levels[0])
            self._levels[0].append(leaf_hash)
            self._index[leaf_hash] = index
            self._rehash_from(index)
            return index

    def _rehash_from(self, index: int):
        depth = 0
        position = index
        while len(self._levels[depth]) > 1:
            level = self._levels[depth]
            parent = position // 2
            left = level[2 * parent]
            right = level[2 * parent + 1] if 2 * parent + 1 < len(level) else left
            if depth + 1 == len(self._levels):
                self._levels.append([])
            upper = self._levels[depth + 1]
            node = hash_pair(left, right)
            if parent < len(upper):
                upper[parent] = node
            else:
                upper.append(node)
            position = parent
            depth += 1

    def current_root(self) -> str:
        with self.lock:
            if not self._levels[0]:
                return EMPTY_ROOT
            return self._levels[-1][0]

    def snapshot(self) -> LedgerSnapshot:
        with self.lock:
            return LedgerSnapshot(
                election_id=self.election_id,
                levels=tuple(tuple(level) for level in self._levels),
            )

    def prove_inclusion(self, leaf_hash: str) -> MerkleProof:
        with self.lock:
            index = self.index_of(leaf_hash)
            snapshot = self.snapshot()
        return snapshot.prove(index)

    @staticmethod
    def verify_proof(proof: MerkleProof) -> bool:
        return verify_proof(proof)


def build_root(leaves) -> str:
    """Root of a tree built in one pass; used to cross-check the incremental build."""
    level = list(leaves)
    if not level:
        return EMPTY_ROOT
    while len(level) > 1:
        level = [hash_pair(level[i], level[i + 1] if i + 1 < len(level) else level[i])
                 for i in range(0, len(level), 2)]
    return level[0]
