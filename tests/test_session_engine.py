import asyncio

import pytest

from app.services.game_state import (
    TURN_GAME_OVER,
    TURN_P1_COMMIT,
    TURN_P1_REVEAL,
    TURN_P2_COMMIT,
    TURN_P2_REVEAL,
    determine_winner,
)
from app.services.prover_bridge import OutputParseError, ProverInvocationError
from app.services.reset_debouncer import ResetDecision
from app.services.session_engine import (
    AuthenticationError,
    MissingPlayerDataError,
    ServerBusyError,
    TurnStateError,
    ValidationError,
)

P1_CONN = "conn-p1"
P2_CONN = "conn-p2"


async def _commit(engine, conn, role, move, salt):
    await engine.request_commitment_params(conn, role, move, salt)
    commitment = engine.session.participant(role).commitment
    await engine.confirm_commit(conn, role, commitment)
    return commitment


async def _both_committed(engine, p1_move=0, p2_move=2):
    await engine.join(P1_CONN)
    await engine.join(P2_CONN)
    await _commit(engine, P1_CONN, "P1", p1_move, "0xabc")
    await _commit(engine, P2_CONN, "P2", p2_move, "0xdef")


async def _wait_busy(engine):
    for _ in range(200):
        if engine.gate.busy:
            return
        await asyncio.sleep(0.005)
    raise AssertionError("prover call never started")


@pytest.mark.parametrize(
    "p1,p2,expected",
    [
        (0, 0, "Draw"), (1, 1, "Draw"), (2, 2, "Draw"),
        (0, 2, "P1"), (1, 0, "P1"), (2, 1, "P1"),
        (2, 0, "P2"), (0, 1, "P2"), (1, 2, "P2"),
    ],
)
def test_winner_table(p1, p2, expected):
    assert determine_winner(p1, p2) == expected


def test_join_assigns_p1_then_p2_then_full(engine, channel):
    async def scenario():
        assert await engine.join(P1_CONN) == "P1"
        assert await engine.join(P2_CONN) == "P2"
        assert await engine.join("conn-3") is None

    asyncio.run(scenario())
    assert channel.of_type("player_assigned", P1_CONN) == [{"playerId": "P1"}]
    assert channel.of_type("player_assigned", P2_CONN) == [{"playerId": "P2"}]
    assert channel.of_type("player_assigned", "conn-3") == []


def test_full_game_rock_beats_scissors(engine, channel):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0xabc")
        generated = channel.of_type("commitment_generated", P1_CONN)
        assert len(generated) == 1
        assert generated[0]["salt"] == "0xabc"
        # unicast only
        assert channel.of_type("commitment_generated", None) == []

        await engine.confirm_commit(P1_CONN, "P1", generated[0]["commitment"])
        assert engine.session.turn == TURN_P1_COMMIT  # P2 not there yet

        await engine.join(P2_CONN)
        assert engine.session.turn == TURN_P2_COMMIT

        await _commit(engine, P2_CONN, "P2", 2, "0xdef")
        assert engine.session.turn == TURN_P1_REVEAL

        await engine.request_reveal(P1_CONN, "P1")
        assert engine.session.turn == TURN_P2_REVEAL

        await engine.request_reveal(P2_CONN, "P2")

    asyncio.run(scenario())
    session = engine.session
    assert session.turn == TURN_GAME_OVER
    assert session.winner == "P1"
    results = channel.of_type("game_result")
    assert results[-1]["winner"] == "P1"
    assert results[-1]["p1Move"] == 0 and results[-1]["p2Move"] == 2
    assert any("Winner: P1" in line for line in session.log)


def test_p1_commit_with_p2_present_moves_to_p2_commit(engine):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.join(P2_CONN)
        await _commit(engine, P1_CONN, "P1", 1, "0x01")

    asyncio.run(scenario())
    assert engine.session.turn == TURN_P2_COMMIT
    assert engine.session.participant("P1").has_committed


def test_commit_out_of_turn_is_rejected(engine):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.join(P2_CONN)
        with pytest.raises(TurnStateError):
            await engine.request_commitment_params(P2_CONN, "P2", 1, "0x01")
        with pytest.raises(TurnStateError):
            await engine.confirm_commit(P2_CONN, "P2", "0x01")

    asyncio.run(scenario())
    assert engine.session.turn == TURN_P1_COMMIT
    assert engine.session.participant("P2").commitment is None


def test_wrong_connection_cannot_act_for_role(engine, bridge, channel):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.join(P2_CONN)
        with pytest.raises(AuthenticationError):
            await engine.request_commitment_params(P2_CONN, "P1", 0, "0x01")

    asyncio.run(scenario())
    assert bridge.derive_calls == []
    assert engine.session.participant("P1").move is None


@pytest.mark.parametrize("move,salt", [(3, "0x01"), (-1, "0x01"), (True, "0x01"), (1, "   "), (1, "xyz!"), (1, "0x")])
def test_invalid_move_or_salt(engine, bridge, move, salt):
    async def scenario():
        await engine.join(P1_CONN)
        with pytest.raises(ValidationError):
            await engine.request_commitment_params(P1_CONN, "P1", move, salt)

    asyncio.run(scenario())
    assert bridge.derive_calls == []
    assert not engine.gate.busy


def test_salt_is_canonicalized_before_derivation(engine, bridge):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.request_commitment_params(P1_CONN, "P1", 1, "  abc ")

    asyncio.run(scenario())
    assert bridge.derive_calls == [(1, "0xabc")]
    assert engine.session.participant("P1").salt == "0xabc"


@pytest.mark.parametrize("error", [ProverInvocationError("exit 1"), OutputParseError("no Field")])
def test_derivation_failure_leaves_player_able_to_retry(engine, bridge, channel, error):
    async def scenario():
        await engine.join(P1_CONN)
        bridge.derive_error = error
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")
        participant = engine.session.participant("P1")
        assert participant.commitment is None and participant.move is None
        assert not engine.gate.busy

        bridge.derive_error = None
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")

    asyncio.run(scenario())
    assert engine.session.participant("P1").commitment is not None
    errors = channel.of_type("error_message", P1_CONN)
    assert errors and errors[0]["message"].startswith("Commitment failed")


def test_loading_broadcast_precedes_state_broadcast(engine, channel):
    async def scenario():
        await engine.join(P1_CONN)
        channel.clear()
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")

    asyncio.run(scenario())
    types = channel.types()
    assert types[0] == "loading_update"
    assert channel.sent[0][2]["isLoading"] is True
    assert types.index("commitment_generated") < types.index("game_state_update")
    assert types[-2:] == ["loading_update", "game_state_update"]
    assert channel.of_type("game_state_update")[-1]["gameState"]["isProcessingZK"] is False


def test_commit_params_cannot_be_overwritten(engine):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")
        with pytest.raises(TurnStateError):
            await engine.request_commitment_params(P1_CONN, "P1", 1, "0x02")

    asyncio.run(scenario())
    assert engine.session.participant("P1").move == 0


def test_confirm_requires_generated_commitment(engine):
    async def scenario():
        await engine.join(P1_CONN)
        with pytest.raises(TurnStateError):
            await engine.confirm_commit(P1_CONN, "P1", "0x1234")

    asyncio.run(scenario())
    assert not engine.session.participant("P1").has_committed


def test_commitment_mismatch_is_logged_and_server_value_kept(engine, caplog):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")
        with caplog.at_level("WARNING"):
            await engine.confirm_commit(P1_CONN, "P1", "0xdeadbeef")

    asyncio.run(scenario())
    participant = engine.session.participant("P1")
    assert participant.has_committed
    assert participant.commitment != "0xdeadbeef"
    assert "mismatch" in caplog.text


def test_strict_mode_rejects_mismatch(engine):
    engine.strict_commitment_match = True

    async def scenario():
        await engine.join(P1_CONN)
        await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")
        with pytest.raises(ValidationError):
            await engine.confirm_commit(P1_CONN, "P1", "0xdeadbeef")

    asyncio.run(scenario())
    assert not engine.session.participant("P1").has_committed


def test_reveal_uses_server_stored_values(engine, bridge):
    async def scenario():
        await _both_committed(engine, p1_move=1, p2_move=0)
        await engine.request_reveal(P1_CONN, "P1")

    asyncio.run(scenario())
    p1 = engine.session.participant("P1")
    assert bridge.verify_calls == [(1, "0xabc", p1.commitment)]
    assert p1.has_revealed and p1.proof_verified is True


def test_reveal_out_of_turn(engine, bridge):
    async def scenario():
        await _both_committed(engine)
        with pytest.raises(TurnStateError):
            await engine.request_reveal(P2_CONN, "P2")

    asyncio.run(scenario())
    assert bridge.verify_calls == []


def test_reveal_without_stored_data(engine):
    async def scenario():
        await _both_committed(engine)
        engine.session.participant("P1").salt = None
        with pytest.raises(MissingPlayerDataError):
            await engine.request_reveal(P1_CONN, "P1")

    asyncio.run(scenario())
    assert engine.session.turn == TURN_P1_REVEAL
    assert not engine.gate.busy


def test_failed_proof_ends_game_and_other_player_wins(engine, bridge, channel):
    async def scenario():
        await _both_committed(engine, p1_move=0, p2_move=1)
        bridge.verify_result = False
        await engine.request_reveal(P1_CONN, "P1")

    asyncio.run(scenario())
    session = engine.session
    p1 = session.participant("P1")
    assert p1.proof_verified is False
    assert not p1.has_revealed
    assert session.turn == TURN_GAME_OVER
    assert session.winner == "P2"
    assert channel.of_type("game_result") == []
    assert channel.of_type("error_message", P1_CONN) == [{"message": "ZK proof verification failed."}]


def test_reveal_prover_error_keeps_state(engine, bridge, channel):
    async def scenario():
        await _both_committed(engine)
        bridge.verify_error = ProverInvocationError("nargo timed out after 60s")
        await engine.request_reveal(P1_CONN, "P1")

    asyncio.run(scenario())
    p1 = engine.session.participant("P1")
    assert engine.session.turn == TURN_P1_REVEAL
    assert p1.proof_verified is None and not p1.has_revealed
    assert not engine.gate.busy
    assert "timed out" in channel.of_type("error_message", P1_CONN)[-1]["message"]


def test_concurrent_reveal_is_rejected_as_busy(engine, bridge):
    async def scenario():
        await _both_committed(engine)
        bridge.release.clear()
        first = asyncio.create_task(engine.request_reveal(P1_CONN, "P1"))
        await _wait_busy(engine)
        assert engine.snapshot()["isProcessingZK"] is True
        with pytest.raises(ServerBusyError):
            await engine.request_reveal(P1_CONN, "P1")
        assert engine.session.participant("P1").proof_verified is None
        bridge.release.set()
        await first

    asyncio.run(scenario())
    assert len(bridge.verify_calls) == 1
    assert engine.session.turn == TURN_P2_REVEAL
    assert not engine.gate.busy


def test_reset_during_prover_call_discards_result(engine, bridge):
    async def scenario():
        await engine.join(P1_CONN)
        bridge.release.clear()
        task = asyncio.create_task(engine.request_commitment_params(P1_CONN, "P1", 0, "0x01"))
        await _wait_busy(engine)
        old_session = engine.session
        assert await engine.request_reset(P1_CONN) is ResetDecision.ACCEPTED
        bridge.release.set()
        await task
        return old_session

    old_session = asyncio.run(scenario())
    assert engine.session is not old_session
    assert engine.session.slots == {}
    assert old_session.participant("P1").commitment is None
    assert not engine.gate.busy


def test_disconnect_mid_game_resets_and_second_reset_is_noop(engine, channel):
    async def scenario():
        await _both_committed(engine)
        assert engine.session.turn == TURN_P1_REVEAL
        await engine.handle_disconnect(P2_CONN)
        reset_session = engine.session
        assert reset_session.turn == TURN_P1_COMMIT
        assert reset_session.slots == {}

        signals_before = len(channel.of_type("game_reset_signal"))
        decision = await engine.request_reset(P1_CONN)
        assert decision is ResetDecision.ALREADY_RESET
        assert engine.session is reset_session
        assert len(channel.of_type("game_reset_signal")) == signals_before + 1

        await asyncio.sleep(0.1)
        assert not engine.debouncer.cooldown_active

    asyncio.run(scenario())


def test_disconnect_after_game_over_only_vacates_slot(engine, channel):
    async def scenario():
        await _both_committed(engine)
        await engine.request_reveal(P1_CONN, "P1")
        await engine.request_reveal(P2_CONN, "P2")
        session = engine.session
        channel.clear()
        await engine.handle_disconnect(P1_CONN)
        return session

    session = asyncio.run(scenario())
    assert engine.session is session
    assert "P1" not in session.slots and "P2" in session.slots
    assert session.winner == "P1"
    assert channel.types() == ["game_state_update"]


def test_reset_rejected_while_game_in_progress(engine, channel):
    async def scenario():
        await _both_committed(engine)
        return await engine.request_reset(P1_CONN)

    assert asyncio.run(scenario()) is ResetDecision.REJECTED
    assert engine.session.turn == TURN_P1_REVEAL
    info = channel.of_type("info_message", P1_CONN)
    assert info and "P1_REVEAL" in info[0]["message"]
    assert channel.of_type("game_reset_signal") == []


def test_reset_at_game_start_is_accepted(engine, channel):
    async def scenario():
        await engine.join(P1_CONN)
        return await engine.request_reset(P1_CONN)

    assert asyncio.run(scenario()) is ResetDecision.ACCEPTED
    assert engine.session.slots == {}
    assert channel.types()[-2:] == ["game_state_update", "game_reset_signal"]


def test_unseated_connection_can_rejoin_after_reset(engine):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.request_reset(P1_CONN)
        return await engine.join(P1_CONN)

    assert asyncio.run(scenario()) == "P1"


def test_snapshot_hides_moves_until_revealed(engine):
    async def scenario():
        await _both_committed(engine)
        hidden = engine.snapshot()["players"]["P1"]
        await engine.request_reveal(P1_CONN, "P1")
        return hidden, engine.snapshot()["players"]["P1"]

    hidden, shown = asyncio.run(scenario())
    assert "move" not in hidden and "salt" not in hidden
    assert shown["move"] == 0 and shown["salt"] == "0xabc"


def test_p1_wins_by_default_when_p2_left_uncommitted(engine, bridge, channel):
    async def scenario():
        await engine.join(P1_CONN)
        await engine.join(P2_CONN)
        await _commit(engine, P1_CONN, "P1", 1, "0xabc")
        await _commit(engine, P2_CONN, "P2", 0, "0xdef")
        # pendant le refroidissement, la déconnexion libère le slot sans remplacer la session
        engine.debouncer.cooldown_active = True
        await engine.handle_disconnect(P2_CONN)
        assert engine.session.turn == TURN_P1_REVEAL
        assert engine.session.participant("P2") is None
        await engine.request_reveal(P1_CONN, "P1")

    asyncio.run(scenario())
    session = engine.session
    assert session.turn == TURN_GAME_OVER
    assert session.winner == "P1"
    assert session.participant("P1").proof_verified is True
    result = channel.of_type("game_result")
    assert len(result) == 1
    assert result[0]["winner"] == "P1"
    assert result[0]["p1Move"] == 1
    assert result[0]["p2Move"] is None


def test_p2_failed_proof_makes_p1_winner(engine, bridge, channel):
    async def scenario():
        await _both_committed(engine, p1_move=0, p2_move=1)
        await engine.request_reveal(P1_CONN, "P1")
        assert engine.session.turn == TURN_P2_REVEAL
        bridge.verify_result = False
        await engine.request_reveal(P2_CONN, "P2")

    asyncio.run(scenario())
    session = engine.session
    assert session.participant("P2").proof_verified is False
    assert session.turn == TURN_GAME_OVER
    assert session.winner == "P1"
    assert channel.of_type("game_result") == []
    assert channel.of_type("error_message", P2_CONN) == [{"message": "ZK proof verification failed."}]


def test_commitment_request_rejected_while_gate_held(engine, bridge, channel):
    async def scenario():
        await engine.join(P1_CONN)
        assert engine.gate.try_acquire("other")
        with pytest.raises(ServerBusyError):
            await engine.request_commitment_params(P1_CONN, "P1", 0, "0x01")
        assert engine.gate.owner == "other"
        engine.gate.release()

    asyncio.run(scenario())
    assert bridge.derive_calls == []
    assert engine.session.participant("P1").commitment is None
    assert channel.of_type("loading_update") == []
