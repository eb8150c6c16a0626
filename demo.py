#!/usr/bin/env python3
"""
Firestore REST Demo - Conditional score update inside a transaction.

Runs against the emulator when FIRESTORE_EMULATOR_HOST is set, otherwise
against the in-memory backend.
"""

import asyncio
import logging
import os

from firestore_rest import Firestore, InMemoryTransport, StaticTokenProvider
from firestore_rest.transaction import TransactionOptions

PLAYERS = {
    "alice": {"score": 10, "active": True},
    "bob": {"score": 20, "active": True},
    "carol": {"score": 30, "active": True},
    "dave": {"score": 100, "active": True},
    "erin": {"score": 999, "active": False},
}


def connect() -> Firestore:
    if os.environ.get("FIRESTORE_EMULATOR_HOST"):
        print(f"[Setup] Using emulator at {os.environ['FIRESTORE_EMULATOR_HOST']}")
        return Firestore.use_emulator(project_id="demo-project")
    print("[Setup] Using in-memory backend")
    return Firestore("demo-project", auth=StaticTokenProvider(), transport=InMemoryTransport())


async def print_scores(players) -> None:
    snapshot = await players.order_by("score").get()
    for snap in snapshot:
        flag = "" if snap.get("active") else " (inactive)"
        print(f"  - {snap.id}: {snap.get('score')}{flag}")


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("Firestore REST Demo - Transactional Score Update")
    print("=" * 60)
    print()

    async with connect() as db:
        players = db.collection("players")

        # 1. Seed players
        print("\n[Step 1] Creating players...")
        for player_id, data in PLAYERS.items():
            await players.doc(player_id).set(data)
        await print_scores(players)

        # 2. Define the transaction function
        async def raise_low_scores(txn):
            active = await txn.get(players.where("active", "==", True))
            scores = {snap.id: snap.get("score") for snap in active}
            average = sum(scores.values()) / len(scores)
            for player_id, score in scores.items():
                if score < average:
                    txn.update(players.doc(player_id), {"score": score + 10})
            return average

        # 3. Run it twice
        for run in (1, 2):
            print(f"\n[Step {run + 1}] Raising active scores below the average (run {run})...")
            average = await db.run_transaction(raise_low_scores, TransactionOptions(max_attempts=5))
            print(f"  Average of active players: {average}")
            await print_scores(players)

    print()
    print("=" * 60)
    print("Demo Complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
