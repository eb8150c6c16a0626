"""
End-to-end tests against the Firestore emulator.

Tests cover:
- Document round trip of every value kind
- Preconditions enforced by the server
- The average-score transaction, run twice
- Queries
"""

import os
from datetime import datetime, timezone

import pytest

from firestore_rest.errors import AlreadyExistsError, NotFoundError
from firestore_rest.transaction import BackoffPolicy, TransactionOptions
from firestore_rest.transforms import SERVER_TIMESTAMP, Increment
from firestore_rest.values import GeoPoint

pytestmark = pytest.mark.skipif(
    not os.environ.get("FIRESTORE_EMULATOR_HOST"),
    reason="E2E tests disabled. Set FIRESTORE_EMULATOR_HOST to enable.",
)

OPTIONS = TransactionOptions(max_attempts=5, backoff=BackoffPolicy(base_ms=10))


class TestDocuments:
    """Tests for single-document operations."""

    @pytest.mark.asyncio
    async def test_value_round_trip(self, db, collection_name):
        ref = db.collection(collection_name).doc("all")
        data = {
            "null": None,
            "bool": True,
            "int": 2**62,
            "double": 1.5,
            "when": datetime(2024, 5, 1, 12, 30, 0, 123456, tzinfo=timezone.utc),
            "text": "héllo",
            "bytes": b"\x00\x01",
            "ref": db.doc(f"{collection_name}/other"),
            "geo": GeoPoint(1.0, 2.0),
            "list": [1, "a", [2]],
            "map": {"nested": {"deep": 1}},
        }
        await ref.set(data)

        snap = await ref.get()

        assert snap.exists
        assert snap.get("int") == 2**62 and isinstance(snap.get("int"), int)
        assert snap.get("double") == 1.5
        assert snap.get("when") == data["when"]
        assert snap.get("bytes") == b"\x00\x01"
        assert snap.get("ref") == data["ref"].resource_path
        assert snap.get("geo") == GeoPoint(1.0, 2.0)
        assert snap.get("map.nested.deep") == 1

    @pytest.mark.asyncio
    async def test_preconditions(self, db, collection_name):
        ref = db.collection(collection_name).doc("p")
        await ref.create({"n": 1})
        with pytest.raises(AlreadyExistsError):
            await ref.create({"n": 2})
        with pytest.raises(NotFoundError):
            await db.collection(collection_name).doc("ghost").update({"n": 1})

    @pytest.mark.asyncio
    async def test_transforms(self, db, collection_name):
        ref = db.collection(collection_name).doc("t")
        await ref.set({"n": 1})
        await ref.update({"n": Increment(4), "at": SERVER_TIMESTAMP})
        snap = await ref.get()
        assert snap.get("n") == 5
        assert isinstance(snap.get("at"), datetime)


class TestTransactions:
    """The average-score conditional update against a real server."""

    @pytest.mark.asyncio
    async def test_average_score_twice(self, db, collection_name):
        players = db.collection(collection_name)
        for player_id, score in {"p1": 10, "p2": 20, "p3": 30, "p4": 100, "p5": 999}.items():
            await players.doc(player_id).set({"score": score, "active": player_id != "p5"})

        async def raise_low_scores(txn):
            active = await txn.get(players.where("active", "==", True))
            scores = {snap.id: snap.get("score") for snap in active}
            average = sum(scores.values()) / len(scores)
            for player_id, score in scores.items():
                if score < average:
                    txn.update(players.doc(player_id), {"score": score + 10})
            return average

        assert await db.run_transaction(raise_low_scores, OPTIONS) == 40
        assert await db.run_transaction(raise_low_scores, OPTIONS) == 47.5

        snapshot = await players.get()
        scores = {snap.id: snap.get("score") for snap in snapshot}
        assert scores == {"p1": 30, "p2": 40, "p3": 50, "p4": 100, "p5": 999}

    @pytest.mark.asyncio
    async def test_failed_function_leaves_no_writes(self, db, collection_name):
        ref = db.collection(collection_name).doc("x")
        await ref.set({"n": 1})

        async def fn(txn):
            await txn.get(ref)
            txn.update(ref, {"n": 2})
            raise RuntimeError("stop")

        with pytest.raises(RuntimeError):
            await db.run_transaction(fn, OPTIONS)
        assert (await ref.get()).get("n") == 1


class TestQueries:
    """Tests for structured queries."""

    @pytest.mark.asyncio
    async def test_where_order_limit(self, db, collection_name):
        col = db.collection(collection_name)
        for i in range(5):
            await col.doc(f"d{i}").set({"n": i, "even": i % 2 == 0})

        snapshot = await col.where("even", "==", True).order_by("n", "DESCENDING").limit(2).get()

        assert [s.id for s in snapshot] == ["d4", "d2"]
