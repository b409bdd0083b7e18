"""
WebSocket integration tests for full duel flows.
Tests: matchmaking on connect, round play, mercy rule, forfeit on
disconnect, transport guards and solo practice.
Uses FastAPI TestClient so the app lifespan builds the registry.
"""
import sys
import os
from contextlib import contextmanager

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from main import app
import config


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "ROUND_INTERMISSION", 0)
    monkeypatch.setattr(config, "ALLOWED_ORIGINS", "")  # disable origin check for tests
    with TestClient(app) as c:
        yield c


@pytest.fixture
def manual_client(monkeypatch):
    """Client whose players must send REQUEST_MATCH / START_SOLO themselves."""
    monkeypatch.setattr(config, "ROUND_INTERMISSION", 0)
    monkeypatch.setattr(config, "ALLOWED_ORIGINS", "")
    monkeypatch.setattr(config, "AUTO_MATCH_ON_CONNECT", False)
    monkeypatch.setattr(config, "SOLO_ROUNDS", 2)
    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def player_url(client_id, identity="", name=""):
    url = f"/ws/{client_id}"
    params = []
    if identity:
        params.append(f"identity={identity}")
    if name:
        params.append(f"name={name}")
    if params:
        url += "?" + "&".join(params)
    return url


def recv_until(ws, msg_type, max_messages=50):
    """Receive messages until we get the expected type. Returns that message."""
    for _ in range(max_messages):
        data = ws.receive_json()
        if data.get("type") == msg_type:
            return data
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def correct_answer(client, match_id):
    match = client.app.state.registry.get(match_id)
    return match.current_question.correct_answer


def wrong_answer(round_msg, correct):
    return next(o for o in round_msg["options"] if o != correct)


@contextmanager
def duel(client):
    """Connect alice then bob so alice always holds slot A."""
    with client.websocket_connect(player_url("a", "alice")) as ws_a:
        recv_until(ws_a, "SEARCHING")
        with client.websocket_connect(player_url("b", "bob")) as ws_b:
            yield ws_a, ws_b


def pair_up(client, ws_a, ws_b):
    """Drain the pairing messages; returns (match_id, round_started)."""
    started = recv_until(ws_a, "MATCH_STARTED")
    recv_until(ws_b, "MATCH_STARTED")
    round_msg = recv_until(ws_a, "ROUND_STARTED")
    recv_until(ws_b, "ROUND_STARTED")
    return started["match_id"], round_msg


def answer(ws, match_id, value):
    ws.send_json({"type": "ANSWER", "match_id": match_id, "answer": value})
    return recv_until(ws, "ANSWER_ACKNOWLEDGED")


# ===========================================================================
# Matchmaking
# ===========================================================================

class TestMatchmakingFlow:
    def test_first_player_gets_searching(self, client):
        with client.websocket_connect(player_url("a", "alice", "Alice")) as ws_a:
            connected = ws_a.receive_json()
            assert connected["type"] == "CONNECTED"
            assert connected["identity"] == "alice"
            assert connected["display_name"] == "Alice"
            assert ws_a.receive_json()["type"] == "SEARCHING"

    def test_identity_defaults_to_client_id(self, client):
        with client.websocket_connect(player_url("a")) as ws_a:
            connected = ws_a.receive_json()
            assert connected["identity"] == "a"

    def test_html_display_name_sanitized(self, client):
        with client.websocket_connect(player_url("a", "alice", "<b>Al</b>")) as ws_a:
            connected = ws_a.receive_json()
            assert connected["display_name"] == "Al"

    def test_two_players_are_paired(self, client):
        with client.websocket_connect(player_url("a", "alice", "Alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            with client.websocket_connect(player_url("b", "bob", "Bob")) as ws_b:
                started_a = recv_until(ws_a, "MATCH_STARTED")
                started_b = recv_until(ws_b, "MATCH_STARTED")
                assert started_a["match_id"] == started_b["match_id"]
                assert started_a["slot"] == "A"
                assert started_a["opponent"] == "bob"
                assert started_a["opponent_name"] == "Bob"
                assert started_b["slot"] == "B"
                assert started_b["opponent"] == "alice"

                round_a = recv_until(ws_a, "ROUND_STARTED")
                round_b = recv_until(ws_b, "ROUND_STARTED")
                assert round_a["round_number"] == 1
                assert round_a["options"] == round_b["options"]
                assert round_a["image_ref"] == round_b["image_ref"]
                assert len(round_a["options"]) == config.OPTIONS_PER_ROUND
                assert correct_answer(client, started_a["match_id"]) in round_a["options"]
                assert round_a["time_limit"] == config.ROUND_TIME_LIMIT

    def test_request_match_when_auto_match_disabled(self, manual_client):
        with manual_client.websocket_connect(player_url("a", "alice")) as ws_a:
            assert ws_a.receive_json()["type"] == "CONNECTED"
            ws_a.send_json({"type": "REQUEST_MATCH"})
            assert ws_a.receive_json()["type"] == "SEARCHING"
            assert manual_client.app.state.registry.waiting.connection_id == "a"


# ===========================================================================
# Rounds & termination
# ===========================================================================

class TestDuelFlow:
    def test_answer_acknowledged_and_opponent_notified(self, client):
        with duel(client) as (ws_a, ws_b):
            match_id, round_msg = pair_up(client, ws_a, ws_b)
            correct = correct_answer(client, match_id)
            ack = answer(ws_a, match_id, correct)
            assert ack["is_correct"] is True
            assert ack["correct_answer"] == correct
            assert ack["elapsed"] >= 0
            notice = recv_until(ws_b, "OPPONENT_ANSWERED")
            assert notice["match_id"] == match_id

    def test_both_answers_resolve_round(self, client):
        with duel(client) as (ws_a, ws_b):
            match_id, round_msg = pair_up(client, ws_a, ws_b)
            correct = correct_answer(client, match_id)
            answer(ws_a, match_id, correct)
            answer(ws_b, match_id, wrong_answer(round_msg, correct))

            resolved = recv_until(ws_a, "ROUND_RESOLVED")
            assert resolved["round_number"] == 1
            assert resolved["correct_answer"] == correct
            assert resolved["round_winner"] == "alice"
            assert [s["score"] for s in resolved["scores"]] == [1, 0]
            assert recv_until(ws_b, "ROUND_RESOLVED")["round_winner"] == "alice"

            next_round = recv_until(ws_a, "ROUND_STARTED")
            assert next_round["round_number"] == 2
            assert [s["score"] for s in next_round["scores"]] == [1, 0]

    def test_mercy_rule_ends_match(self, client):
        with duel(client) as (ws_a, ws_b):
            match_id, round_msg = pair_up(client, ws_a, ws_b)
            for round_number in (1, 2):
                if round_number > 1:
                    round_msg = recv_until(ws_a, "ROUND_STARTED")
                    recv_until(ws_b, "ROUND_STARTED")
                correct = correct_answer(client, match_id)
                answer(ws_a, match_id, correct)
                answer(ws_b, match_id, wrong_answer(round_msg, correct))

            ended = recv_until(ws_a, "MATCH_ENDED")
            assert ended["reason"] == "mercy"
            assert ended["winner"] == "alice"
            assert ended["winner_slot"] == "A"
            assert ended["rounds_played"] == 2
            assert [s["score"] for s in ended["final_scores"]] == [2, 0]
            assert recv_until(ws_b, "MATCH_ENDED")["winner"] == "alice"
            assert client.app.state.registry.get(match_id) is None

    def test_second_answer_is_ignored(self, client):
        with duel(client) as (ws_a, ws_b):
            match_id, round_msg = pair_up(client, ws_a, ws_b)
            correct = correct_answer(client, match_id)
            answer(ws_a, match_id, wrong_answer(round_msg, correct))
            # A correct retry must not count
            ws_a.send_json({"type": "ANSWER", "match_id": match_id, "answer": correct})
            answer(ws_b, match_id, wrong_answer(round_msg, correct))
            resolved = recv_until(ws_a, "ROUND_RESOLVED")
            assert resolved["round_winner"] is None
            assert [s["score"] for s in resolved["scores"]] == [0, 0]


# ===========================================================================
# Disconnects
# ===========================================================================

class TestDisconnectFlow:
    def test_disconnect_forfeits_match(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            with client.websocket_connect(player_url("b", "bob")) as ws_b:
                match_id, _ = pair_up(client, ws_a, ws_b)
            forfeit = recv_until(ws_a, "MATCH_ENDED_BY_FORFEIT")
            assert forfeit["match_id"] == match_id
            assert forfeit["winner"] == "alice"
            assert forfeit["winner_score"] == 0

    def test_waiting_player_disconnect_frees_slot(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
        with client.websocket_connect(player_url("b", "bob")) as ws_b:
            assert ws_b.receive_json()["type"] == "CONNECTED"
            assert ws_b.receive_json()["type"] == "SEARCHING"

    def test_player_can_rematch_after_forfeit(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            with client.websocket_connect(player_url("b", "bob")) as ws_b:
                pair_up(client, ws_a, ws_b)
            recv_until(ws_a, "MATCH_ENDED_BY_FORFEIT")
            ws_a.send_json({"type": "REQUEST_MATCH"})
            assert recv_until(ws_a, "SEARCHING")["type"] == "SEARCHING"


# ===========================================================================
# Transport guards
# ===========================================================================

class TestTransportGuards:
    def test_invalid_json_returns_error(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            ws_a.send_text("not json")
            error = ws_a.receive_json()
            assert error["type"] == "ERROR"
            assert "invalid" in error["message"].lower()

    def test_non_object_message_returns_error(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            ws_a.send_text("[1, 2, 3]")
            assert ws_a.receive_json()["type"] == "ERROR"

    def test_oversized_message_rejected(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            ws_a.send_text("x" * (config.MAX_WS_MESSAGE_SIZE + 1))
            error = ws_a.receive_json()
            assert error["message"] == "Message too large"

    def test_duplicate_connection_id_rejected(self, client):
        with client.websocket_connect(player_url("a", "alice")) as ws_a:
            recv_until(ws_a, "SEARCHING")
            with client.websocket_connect(player_url("a", "mallory")) as dup:
                error = dup.receive_json()
                assert error["type"] == "ERROR"
            assert client.app.state.registry.waiting.identity == "alice"


# ===========================================================================
# Solo practice
# ===========================================================================

class TestSoloFlow:
    def test_solo_game(self, manual_client):
        with manual_client.websocket_connect(player_url("s", "solo")) as ws:
            recv_until(ws, "CONNECTED")
            ws.send_json({"type": "START_SOLO"})
            first = recv_until(ws, "SOLO_ROUND")
            assert first["round_number"] == 1
            assert first["total_rounds"] == 2
            assert first["score"] == 0

            game = manual_client.app.state.registry.solo.games["s"]
            ws.send_json({"type": "SOLO_ANSWER", "answer": game.current_question.correct_answer})
            feedback = recv_until(ws, "SOLO_FEEDBACK")
            assert feedback["is_correct"] is True
            assert feedback["score"] == 1

            second = recv_until(ws, "SOLO_ROUND")
            assert second["round_number"] == 2
            wrong = next(o for o in second["options"] if o != game.current_question.correct_answer)
            ws.send_json({"type": "SOLO_ANSWER", "answer": wrong})
            assert recv_until(ws, "SOLO_FEEDBACK")["is_correct"] is False

            over = recv_until(ws, "SOLO_GAME_OVER")
            assert over["score"] == 1
            assert over["rounds"] == 2
            assert "s" not in manual_client.app.state.registry.solo.games

    def test_solo_player_is_not_matched(self, manual_client):
        with manual_client.websocket_connect(player_url("s", "solo")) as ws:
            recv_until(ws, "CONNECTED")
            ws.send_json({"type": "START_SOLO"})
            recv_until(ws, "SOLO_ROUND")
            ws.send_json({"type": "REQUEST_MATCH"})
            ws.send_json({"type": "SOLO_ANSWER", "answer": "Atlantis"})
            game = manual_client.app.state.registry.solo.games["s"]
            ws.send_json({"type": "SOLO_ANSWER", "answer": game.current_question.correct_answer})
            # Messages are handled in order, so the first reply is the valid answer's feedback
            feedback = ws.receive_json()
            assert feedback["type"] == "SOLO_FEEDBACK"
            assert feedback["round_number"] == 1
            assert manual_client.app.state.registry.waiting is None


# ===========================================================================
# Missing datasets
# ===========================================================================

class TestServiceUnavailableFlow:
    def test_missing_dataset_reports_unavailable(self, monkeypatch, tmp_path):
        monkeypatch.setattr(config, "ALLOWED_ORIGINS", "")
        monkeypatch.setattr(config, "QUESTIONS_FILE", str(tmp_path / "missing.json"))
        with TestClient(app) as c:
            with c.websocket_connect(player_url("a", "alice")) as ws_a:
                assert ws_a.receive_json()["type"] == "CONNECTED"
                unavailable = ws_a.receive_json()
                assert unavailable["type"] == "SERVICE_UNAVAILABLE"
                ws_a.send_json({"type": "START_SOLO"})
                assert ws_a.receive_json()["type"] == "SERVICE_UNAVAILABLE"
            assert c.get("/health").json()["status"] == "unavailable"
