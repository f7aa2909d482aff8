import hashlib
import threading

import pytest

from voteintegrity.errors import LedgerConflict, MerkleInclusionFailure
from voteintegrity.ledger.merkle import (
    EMPTY_ROOT,
    LEFT,
    RIGHT,
    MerkleLedger,
    MerkleProof,
    ProofStep,
    build_root,
    hash_leaf,
    hash_pair,
    require_inclusion,
    verify_proof,
)


def leaves(count, prefix="ballot"):
    return [hash_leaf(f"{prefix}-{i}".encode()) for i in range(count)]


def test_empty_ledger_root():
    ledger = MerkleLedger("election-1")
    assert ledger.size == 0
    assert ledger.current_root() == EMPTY_ROOT == hashlib.sha256(b"").hexdigest()


def test_single_leaf_is_root():
    leaf = leaves(1)[0]
    ledger = MerkleLedger("election-1", [leaf])
    assert ledger.current_root() == leaf
    proof = ledger.prove_inclusion(leaf)
    assert proof.siblings == ()
    assert verify_proof(proof)


def test_odd_level_pairs_node_with_itself():
    a, b, c = leaves(3)
    ledger = MerkleLedger("election-1", [a, b, c])
    assert ledger.current_root() == hash_pair(hash_pair(a, b), hash_pair(c, c))


def test_incremental_root_matches_full_rebuild():
    ledger = MerkleLedger("election-1")
    added = []
    for leaf in leaves(17):
        ledger.append_leaf(leaf)
        added.append(leaf)
        assert ledger.current_root() == build_root(added)


@pytest.mark.parametrize("size", [1, 2, 3, 5, 8, 11])
def test_every_leaf_has_a_valid_proof(size):
    items = leaves(size)
    ledger = MerkleLedger("election-1", items)
    for index, leaf in enumerate(items):
        proof = ledger.prove_inclusion(leaf)
        assert proof.index == index
        assert proof.root == ledger.current_root()
        assert MerkleLedger.verify_proof(proof)


def test_altered_sibling_breaks_proof():
    items = leaves(6)
    ledger = MerkleLedger("election-1", items)
    proof = ledger.prove_inclusion(items[4])
    forged = list(proof.siblings)
    forged[0] = ProofStep(hash=hash_leaf(b"forged"), position=forged[0].position)
    assert not verify_proof(MerkleProof(proof.root, proof.leaf, proof.index, tuple(forged)))
    with pytest.raises(MerkleInclusionFailure):
        require_inclusion(MerkleProof(proof.root, proof.leaf, proof.index, tuple(forged)))


def test_swapped_position_breaks_proof():
    items = leaves(4)
    ledger = MerkleLedger("election-1", items)
    proof = ledger.prove_inclusion(items[1])
    step = proof.siblings[0]
    assert step.position == LEFT
    flipped = (ProofStep(hash=step.hash, position=RIGHT),) + proof.siblings[1:]
    assert not verify_proof(MerkleProof(proof.root, proof.leaf, proof.index, flipped))


def test_garbage_positions_and_hashes_do_not_verify():
    items = leaves(2)
    ledger = MerkleLedger("election-1", items)
    proof = ledger.prove_inclusion(items[0])
    assert not verify_proof(MerkleProof(proof.root, proof.leaf, 0, (ProofStep(items[1], "middle"),)))
    assert not verify_proof(MerkleProof(proof.root, "zz", 0, proof.siblings))


def test_duplicate_leaf_is_refused():
    leaf = leaves(1)[0]
    ledger = MerkleLedger("election-1", [leaf])
    with pytest.raises(LedgerConflict):
        ledger.append_leaf(leaf)
    assert ledger.size == 1


def test_unknown_leaf_has_no_proof():
    ledger = MerkleLedger("election-1", leaves(3))
    with pytest.raises(MerkleInclusionFailure):
        ledger.prove_inclusion(hash_leaf(b"never appended"))


def test_snapshot_is_unaffected_by_later_appends():
    items = leaves(5)
    ledger = MerkleLedger("election-1", items[:3])
    snapshot = ledger.snapshot()
    ledger.append_leaf(items[3])
    ledger.append_leaf(items[4])
    assert snapshot.size == 3
    assert snapshot.root == build_root(items[:3])
    assert verify_proof(snapshot.prove(2))
    assert ledger.current_root() == build_root(items)


def test_proof_dict_round_trip_and_malformed_input():
    items = leaves(3)
    proof = MerkleLedger("election-1", items).prove_inclusion(items[2])
    assert MerkleProof.from_dict(proof.to_dict()) == proof
    with pytest.raises(MerkleInclusionFailure):
        MerkleProof.from_dict({"root": proof.root})


def test_concurrent_appends_keep_tree_consistent():
    ledger = MerkleLedger("election-1")
    items = leaves(200)
    chunks = [items[i::4] for i in range(4)]

    def worker(chunk):
        for leaf in chunk:
            ledger.append_leaf(leaf)

    threads = [threading.Thread(target=worker, args=(chunk,)) for chunk in chunks]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snapshot = ledger.snapshot()
    assert snapshot.size == 200
    assert set(snapshot.levels[0]) == set(items)
    assert snapshot.root == build_root(snapshot.levels[0])
    for index in (0, 99, 199):
        assert verify_proof(snapshot.prove(index))
