"""Tests for tournament lifecycle and participant registry."""

from __future__ import annotations

import datetime as dt

import pytest

from conftest import snapshot_event, trade_event
from tourney.engine.tournaments import TRANSITIONS
from tourney.errors import InvalidEvent, InvalidTransition, UnknownParticipant, UnknownTournament
from tourney.storage.audit import AuditFilter
from tourney.storage.models import Division, TournamentStatus


class TestCreate:
    def test_defaults(self, engine) -> None:
        t = engine.tournaments.create_tournament(name="Open", symbols=["aapl", " msft ", "AAPL"])
        assert t.status == TournamentStatus.DRAFT
        assert t.division == Division.MID_RISK
        assert t.symbols == ["AAPL", "MSFT"]
        stored = engine.tournaments.get_tournament(t.id)
        assert stored.symbols == ["AAPL", "MSFT"]
        assert stored.starting_balance == 100_000.0

    def test_empty_universe_allows_any_symbol(self, engine) -> None:
        t = engine.tournaments.create_tournament(name="Open")
        assert t.allows_symbol("ANYTHING")

    def test_rejects_bad_input(self, engine) -> None:
        with pytest.raises(InvalidEvent):
            engine.tournaments.create_tournament(name="x", starting_balance=0)
        with pytest.raises(InvalidEvent):
            engine.tournaments.create_tournament(name="x", division="extreme")
        with pytest.raises(InvalidEvent):
            engine.tournaments.create_tournament(
                name="x", start_date="2026-04-01T00:00:00+00:00", end_date="2026-03-01T00:00:00+00:00"
            )

    def test_audited(self, engine) -> None:
        t = engine.tournaments.create_tournament(name="Open", actor="ops")
        entries = engine.audit.get_audit_logs(AuditFilter(action="tournament.created"))
        assert len(entries) == 1
        assert entries[0].entity_id == t.id
        assert entries[0].actor == "ops"
        assert entries[0].after["name"] == "Open"

    def test_list_by_status(self, engine, setup_tournament) -> None:
        setup_tournament()
        engine.tournaments.create_tournament(name="Draft")
        assert len(engine.tournaments.list_tournaments()) == 2
        assert [t.name for t in engine.tournaments.list_tournaments("draft")] == ["Draft"]
        assert len(engine.tournaments.list_tournaments(TournamentStatus.ACTIVE)) == 1


class TestLifecycle:
    def test_happy_path(self, engine) -> None:
        t = engine.tournaments.create_tournament(name="Open")
        for status in ("registration_open", "registration_closed", "active", "completed"):
            t = engine.tournaments.transition(t.id, status)
            assert t.status.value == status
        changes = engine.audit.get_audit_logs(AuditFilter(action="tournament.status_changed"))
        assert len(changes) == 4
        assert changes[0].after == {"status": "completed"}

    @pytest.mark.parametrize("status", [s for s in TournamentStatus if s not in (
        TournamentStatus.COMPLETED, TournamentStatus.CANCELLED)])
    def test_cancel_from_any_open_state(self, status: TournamentStatus) -> None:
        assert TournamentStatus.CANCELLED in TRANSITIONS[status]

    def test_terminal_states(self) -> None:
        assert TRANSITIONS[TournamentStatus.COMPLETED] == frozenset()
        assert TRANSITIONS[TournamentStatus.CANCELLED] == frozenset()

    def test_skip_rejected_and_audited(self, engine) -> None:
        t = engine.tournaments.create_tournament(name="Open")
        with pytest.raises(InvalidTransition):
            engine.tournaments.transition(t.id, "active")
        assert engine.tournaments.get_tournament(t.id).status == TournamentStatus.DRAFT
        rejected = engine.audit.get_audit_logs(AuditFilter(action="tournament.rejected"))
        assert rejected[0].metadata == {"current": "draft", "requested": "active"}

    def test_completed_is_terminal(self, engine, setup_tournament) -> None:
        t, _ = setup_tournament()
        engine.tournaments.transition(t.id, "completed")
        with pytest.raises(InvalidTransition):
            engine.tournaments.transition(t.id, "active")

    def test_unknown(self, engine) -> None:
        with pytest.raises(UnknownTournament):
            engine.tournaments.transition("trn_missing", "active")

    def test_activation_ranks_by_registration(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament(users=("x", "y"))
        assert engine.ranking.get_participant_rank(ps["x"].id).current_rank == 1
        assert engine.ranking.get_participant_rank(ps["y"].id).current_rank == 2

    def test_completion_freezes_participants(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament(users=("x", "y"))
        engine.ingestion.apply_trade_event(trade_event(t, ps["y"], "y-1"))
        engine.ingestion.apply_trade_event(trade_event(t, ps["y"], "y-2", side="sell", price=170.0))
        engine.tournaments.transition(t.id, "completed")

        y = engine.ledger.get_participant(ps["y"].id)
        x = engine.ledger.get_participant(ps["x"].id)
        assert y.final_rank == 1
        assert y.final_pnl == pytest.approx(200.0)
        assert x.final_rank == 2
        assert x.final_pnl == 0.0
        frozen = engine.audit.get_audit_logs(AuditFilter(action="participant.frozen"))
        assert frozen[0].metadata["frozen"] == 2


class TestRegistration:
    def test_register(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament(activate=False, starting_balance=25_000.0)
        p = ps["alice"]
        assert p.current_balance == 25_000.0
        assert p.starting_balance == 25_000.0
        assert p.is_active
        assert engine.ledger.get_participant_by_user(t.id, "alice").id == p.id
        assert len(engine.audit.get_audit_logs(AuditFilter(action="participant.registered"))) == 3

    def test_custom_balance(self, engine, setup_tournament) -> None:
        t, _ = setup_tournament(activate=False)
        p = engine.tournaments.register_participant(t.id, "dave", starting_balance=5_000.0)
        assert p.current_balance == 5_000.0

    def test_duplicate_user(self, engine, setup_tournament) -> None:
        t, _ = setup_tournament(activate=False)
        with pytest.raises(InvalidEvent):
            engine.tournaments.register_participant(t.id, "alice")

    def test_only_while_open(self, engine, setup_tournament) -> None:
        t, _ = setup_tournament()
        with pytest.raises(InvalidTransition):
            engine.tournaments.register_participant(t.id, "latecomer")
        draft = engine.tournaments.create_tournament(name="Draft")
        with pytest.raises(InvalidTransition):
            engine.tournaments.register_participant(draft.id, "early")

    def test_list_participants(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        engine.tournaments.withdraw_participant(ps["bob"].id)
        assert [p.user_id for p in engine.ledger.list_participants(t.id)] == ["alice", "bob", "carol"]
        assert [p.user_id for p in engine.ledger.list_participants(t.id, active_only=True)] == ["alice", "carol"]


class TestDeactivation:
    def test_disqualify(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        p = engine.tournaments.disqualify_participant(ps["alice"].id, reason="wash trading", actor="referee")
        assert p.disqualified
        assert not p.is_active
        assert p.disqualification_reason == "wash trading"
        assert p.current_rank is None
        entry = engine.audit.get_audit_logs(AuditFilter(action="participant.disqualified"))[0]
        assert entry.actor == "referee"
        assert entry.metadata == {"reason": "wash trading"}
        assert entry.before["is_active"] is True

    def test_withdraw(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        p = engine.tournaments.withdraw_participant(ps["carol"].id)
        assert not p.is_active
        assert not p.disqualified
        assert len(engine.audit.get_audit_logs(AuditFilter(action="participant.withdrawn"))) == 1

    def test_withdrawn_keeps_history_but_no_new_events(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        engine.ingestion.apply_trade_event(trade_event(t, ps["carol"], "c-1"))
        engine.tournaments.withdraw_participant(ps["carol"].id)
        assert engine.ledger.get_participant(ps["carol"].id).total_trades == 1
        with pytest.raises(UnknownParticipant):
            engine.ingestion.apply_snapshot_event(
                snapshot_event(t, ps["carol"], dt.datetime(2026, 3, 3, tzinfo=dt.timezone.utc))
            )

    def test_twice_rejected(self, engine, setup_tournament) -> None:
        _, ps = setup_tournament()
        engine.tournaments.withdraw_participant(ps["bob"].id)
        with pytest.raises(InvalidTransition):
            engine.tournaments.disqualify_participant(ps["bob"].id, reason="late")

    def test_unknown(self, engine) -> None:
        with pytest.raises(UnknownParticipant):
            engine.tournaments.withdraw_participant("par_missing")

    @pytest.mark.parametrize("final", ["completed", "cancelled"])
    def test_frozen_tournament_refuses_deactivation(self, engine, setup_tournament, final: str) -> None:
        t, ps = setup_tournament()
        engine.tournaments.transition(t.id, final)
        before = {p.id: p.current_rank for p in engine.ledger.list_participants(t.id)}

        with pytest.raises(InvalidTransition):
            engine.tournaments.disqualify_participant(ps["alice"].id, reason="late review")
        with pytest.raises(InvalidTransition):
            engine.tournaments.withdraw_participant(ps["bob"].id)

        alice = engine.ledger.get_participant(ps["alice"].id)
        assert alice.is_active
        assert not alice.disqualified
        assert {p.id: p.current_rank for p in engine.ledger.list_participants(t.id)} == before
        refused = engine.audit.get_audit_logs(AuditFilter(action="participant.rejected"))
        assert {e.metadata["requested"] for e in refused} == {
            "participant.disqualified", "participant.withdrawn",
        }
        assert refused[0].metadata["tournament_status"] == final

    def test_completed_leaderboard_stays_dense(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        engine.tournaments.transition(t.id, "completed")
        with pytest.raises(InvalidTransition):
            engine.tournaments.disqualify_participant(ps["alice"].id, reason="late review")
        board = engine.ranking.get_leaderboard(t.id)
        assert [e.rank for e in board.entries] == [1, 2, 3]
        assert board.total_participants == 3
