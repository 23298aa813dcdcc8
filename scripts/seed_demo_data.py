"""Seed the database with a demo tournament for the leaderboard commands."""

from __future__ import annotations

import datetime as dt
import random
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tourney.config import load_config  # noqa: E402
from tourney.engine.app import TournamentEngine  # noqa: E402


def seed() -> None:
    cfg = load_config()
    eng = TournamentEngine(cfg)
    now = dt.datetime.now(dt.timezone.utc)
    rng = random.Random(7)

    t = eng.tournaments.create_tournament(
        name="Demo Spring Open",
        division="mid_risk",
        starting_balance=100_000.0,
        symbols=["AAPL", "MSFT", "NVDA", "TSLA", "AMZN"],
        start_date=now - dt.timedelta(days=3),
        end_date=now + dt.timedelta(days=27),
    )
    eng.tournaments.transition(t.id, "registration_open")

    # ── Participants ──
    users = ["alice", "bob", "carol", "dave", "erin", "frank"]
    participants = [
        eng.tournaments.register_participant(
            t.id, user, registered_at=now - dt.timedelta(days=5, minutes=len(users) - i)
        )
        for i, user in enumerate(users)
    ]
    eng.tournaments.transition(t.id, "registration_closed")
    eng.tournaments.transition(t.id, "active")

    # ── Trades: open then close a position per symbol ──
    prices = {"AAPL": 150.0, "MSFT": 410.0, "NVDA": 880.0, "TSLA": 190.0, "AMZN": 175.0}
    n_trades = 0
    for p in participants:
        for symbol in rng.sample(sorted(prices), 3):
            qty = rng.choice([5, 10, 20, 50])
            entry = prices[symbol] * (1 + rng.uniform(-0.02, 0.02))
            exit_ = entry * (1 + rng.uniform(-0.06, 0.08))
            for side, price in (("buy", entry), ("sell", exit_)):
                eng.ingestion.apply_trade_event({
                    "tournament_id": t.id,
                    "participant_id": p.id,
                    "idempotency_key": f"demo-{p.user_id}-{symbol}-{side}",
                    "payload": {
                        "symbol": symbol,
                        "side": side,
                        "quantity": qty,
                        "price": round(price, 2),
                        "commission": 1.0,
                    },
                })
                n_trades += 1

    eng.close()
    print(f"✅ Seeded database at {cfg.storage.sqlite_path} with:")
    print(f"   tournament {t.id}")
    print(f"   {len(participants)} participants")
    print(f"   {n_trades} trades")


if __name__ == "__main__":
    seed()
