from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, List, Optional
import json
import time
import logging
import re

import config
from events import Connected, Error, Searching, ServiceUnavailable
from lifecycle import MatchLifecycle, MatchRules
from match import Match, MatchPhase, Player
from question_bank import QuestionBank, QuestionBankError, load_question_bank
from solo import SoloRunner

logger = logging.getLogger(__name__)


def _clean_text(value, max_length: int) -> str:
    """Strip HTML tags and control characters from client-supplied text."""
    if not isinstance(value, str):
        return ""
    value = re.sub(r'<[^>]+>', '', value)
    value = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', value).strip()
    return value[:max_length]


class MatchRegistry:
    """Owns the waiting slot, the active matches and the live connections."""

    def __init__(self, question_bank: Optional[QuestionBank], rules: Optional[MatchRules] = None):
        self.question_bank = question_bank
        self.rules = rules or MatchRules.from_config()
        self.matches: Dict[str, Match] = {}
        self.player_matches: Dict[str, str] = {}  # connection_id -> match_id
        self.waiting: Optional[Player] = None
        self.connections: Dict[str, Player] = {}
        # WS rate limiting: connection_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}
        self.allowed_origins: List[str] = []
        self.accepting = True
        self.lifecycle = MatchLifecycle(self, self.rules)
        self.solo = SoloRunner(question_bank, self.rules, config.SOLO_ROUNDS) if question_bank else None

    @classmethod
    def create(cls, questions_path: str = "", groups_path: str = "",
               rules: Optional[MatchRules] = None) -> "MatchRegistry":
        """Build the registry, loading the datasets. A broken dataset yields an unavailable registry."""
        try:
            bank = load_question_bank(questions_path or config.QUESTIONS_FILE,
                                      groups_path or config.CONFUSION_GROUPS_FILE)
        except QuestionBankError as e:
            logger.error("Question bank unavailable, matchmaking disabled: %s", e)
            bank = None
        return cls(bank, rules)

    async def shutdown(self):
        self.accepting = False
        for match in list(self.matches.values()):
            match.cancel_tasks()
            match.phase = MatchPhase.ENDED
        self.matches.clear()
        self.player_matches.clear()
        self.waiting = None
        if self.solo:
            self.solo.stop_all()
        logger.info("Match registry shut down")

    @property
    def available(self) -> bool:
        return self.accepting and self.question_bank is not None and len(self.question_bank) > 0

    # --- match bookkeeping ---

    def get(self, match_id) -> Optional[Match]:
        if not isinstance(match_id, str):
            return None
        return self.matches.get(match_id)

    def add(self, match: Match):
        self.matches[match.match_id] = match
        for slot in match.slots:
            self.player_matches[slot.player.connection_id] = match.match_id

    def discard(self, match: Match):
        if self.matches.get(match.match_id) is match:
            del self.matches[match.match_id]
        for slot in match.slots:
            if self.player_matches.get(slot.player.connection_id) == match.match_id:
                del self.player_matches[slot.player.connection_id]

    def is_active(self, match: Match) -> bool:
        return self.matches.get(match.match_id) is match

    def match_for(self, connection_id: str) -> Optional[Match]:
        match_id = self.player_matches.get(connection_id)
        return self.matches.get(match_id) if match_id else None

    def is_live(self, player: Player) -> bool:
        return self.connections.get(player.connection_id) is player and player.is_live()

    def stats(self) -> dict:
        return {
            "question_bank_loaded": self.question_bank is not None,
            "questions": len(self.question_bank) if self.question_bank else 0,
            "active_matches": len(self.matches),
            "player_waiting": self.waiting is not None,
            "connections": len(self.connections),
        }

    # --- matchmaking ---

    async def on_player_ready(self, player: Player):
        if not self.available:
            await player.send(ServiceUnavailable())
            return

        connection_id = player.connection_id
        if connection_id in self.player_matches or (self.solo and self.solo.is_playing(connection_id)):
            logger.debug("Ignoring match request from busy connection %s", connection_id)
            return

        if self.waiting is None:
            self.waiting = player
            logger.info("%s is searching for an opponent", player.identity)
            await player.send(Searching())
            return

        if self.waiting.connection_id == connection_id:
            return

        opponent = self.waiting
        self.waiting = None
        if not self.is_live(opponent):
            logger.info("Waiting player %s is gone, %s takes the slot", opponent.identity, player.identity)
            self.waiting = player
            await player.send(Searching())
            return

        match = self.lifecycle.create_match(opponent, player)
        await self.lifecycle.begin(match)

    async def handle_disconnect(self, connection_id: str):
        self.connections.pop(connection_id, None)
        self.msg_timestamps.pop(connection_id, None)

        if self.waiting and self.waiting.connection_id == connection_id:
            self.waiting = None
            logger.info("Waiting player %s left the queue", connection_id)
            return

        if self.solo:
            self.solo.stop(connection_id)

        match = self.match_for(connection_id)
        if match:
            await self.lifecycle.forfeit(match, connection_id)

    # --- transport ---

    async def connect(self, websocket: WebSocket, client_id: str, identity: str = "",
                      display_name: str = ""):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()

        identity = _clean_text(identity, config.MAX_IDENTITY_LENGTH) or client_id
        display_name = _clean_text(display_name, config.MAX_DISPLAY_NAME_LENGTH) or identity

        existing = self.connections.get(client_id)
        if existing and existing.is_live():
            await websocket.send_json(Error(message="Connection id already in use").model_dump())
            await websocket.close()
            return

        player = Player(client_id, identity, display_name, websocket)
        self.connections[client_id] = player
        logger.info("Player %s connected as %s", identity, client_id)

        try:
            await player.send(Connected(identity=identity, display_name=display_name))
            if config.AUTO_MATCH_ON_CONNECT:
                await self.on_player_ready(player)

            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await player.send(Error(message="Message too large"))
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await player.send(Error(message="Too many messages"))
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await player.send(Error(message="Invalid message format"))
                    continue
                if not isinstance(message, dict):
                    await player.send(Error(message="Invalid message format"))
                    continue

                await self.handle_message(player, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            if self.connections.get(client_id) is player:
                await self.handle_disconnect(client_id)

    async def handle_message(self, player: Player, message: dict):
        msg_type = message.get("type")
        connection_id = player.connection_id

        if msg_type == "REQUEST_MATCH":
            await self.on_player_ready(player)

        elif msg_type == "ANSWER":
            match = self.get(message.get("match_id"))
            if match is None or match.slot_for(connection_id) is None:
                logger.debug("Ignoring answer from %s for unknown match", connection_id)
                return
            await self.lifecycle.engine.submit_answer(match, connection_id, message.get("answer"))

        elif msg_type == "START_SOLO":
            if not self.available or self.solo is None:
                await player.send(ServiceUnavailable())
                return
            if (connection_id in self.player_matches or self.solo.is_playing(connection_id)
                    or (self.waiting and self.waiting.connection_id == connection_id)):
                return
            await self.solo.start(player)

        elif msg_type == "SOLO_ANSWER":
            if self.solo:
                await self.solo.submit_answer(connection_id, message.get("answer"))

        else:
            logger.debug("Ignoring message type %r from %s", msg_type, connection_id)
