import asyncio
import logging
import math
from enum import Enum
from typing import List, Optional

from fastapi import WebSocket
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from events import ScoreEntry
from question_bank import Question

logger = logging.getLogger(__name__)


class SlotTag(str, Enum):
    A = "A"
    B = "B"


class MatchPhase(str, Enum):
    IDLE = "IDLE"
    ROUND_ACTIVE = "ROUND_ACTIVE"
    SCORING = "SCORING"
    ENDED = "ENDED"


class Player:
    def __init__(self, connection_id: str, identity: str, display_name: str = "",
                 websocket: Optional[WebSocket] = None):
        self.connection_id = connection_id
        self.identity = identity
        self.display_name = display_name or identity
        self.websocket = websocket

    def is_live(self) -> bool:
        ws = self.websocket
        if ws is None:
            return False
        return (ws.client_state == WebSocketState.CONNECTED
                and ws.application_state == WebSocketState.CONNECTED)

    async def send(self, event: BaseModel) -> bool:
        if self.websocket is None:
            return False
        try:
            await self.websocket.send_json(event.model_dump(mode="json"))
            return True
        except Exception:
            # The receive loop of this socket notices the drop and cleans up.
            logger.debug("Send to %s failed", self.connection_id)
            return False


class PlayerSlot:
    def __init__(self, tag: SlotTag, player: Player):
        self.tag = tag
        self.player = player
        self.score = 0
        self.has_answered = False
        self.answer: Optional[str] = None
        self.answer_timestamp: Optional[float] = None

    def reset_round(self):
        self.has_answered = False
        self.answer = None
        self.answer_timestamp = None

    def record_answer(self, answer: str, timestamp: float):
        self.has_answered = True
        self.answer = answer
        self.answer_timestamp = timestamp

    def elapsed(self, started_at: float) -> float:
        """Seconds from round start to this slot's answer, ``inf`` if it never answered."""
        if not self.has_answered or self.answer_timestamp is None:
            return math.inf
        return max(0.0, self.answer_timestamp - started_at)

    def score_entry(self) -> ScoreEntry:
        return ScoreEntry(
            slot=self.tag.value,
            identity=self.player.identity,
            display_name=self.player.display_name,
            score=self.score,
        )


class Match:
    def __init__(self, match_id: str, player_a: Player, player_b: Player,
                 question_sequence: List[Question]):
        self.match_id = match_id
        self.slots = (PlayerSlot(SlotTag.A, player_a), PlayerSlot(SlotTag.B, player_b))
        self.question_sequence = question_sequence
        self.current_round_index = -1
        self.current_options: List[str] = []
        self.round_started_at: float = 0
        self.phase = MatchPhase.IDLE
        self.tiebreak_rounds = 0
        self.round_timer: Optional[asyncio.Task] = None
        self.next_round_task: Optional[asyncio.Task] = None

    @property
    def slot_a(self) -> PlayerSlot:
        return self.slots[0]

    @property
    def slot_b(self) -> PlayerSlot:
        return self.slots[1]

    @property
    def rounds_played(self) -> int:
        return self.current_round_index + 1

    @property
    def questions_remaining(self) -> int:
        return len(self.question_sequence) - self.rounds_played

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_round_index < len(self.question_sequence):
            return self.question_sequence[self.current_round_index]
        return None

    def slot_for(self, connection_id: str) -> Optional[PlayerSlot]:
        for slot in self.slots:
            if slot.player.connection_id == connection_id:
                return slot
        return None

    def opponent_of(self, slot: PlayerSlot) -> PlayerSlot:
        return self.slot_b if slot.tag is SlotTag.A else self.slot_a

    def slot_by_tag(self, tag: SlotTag) -> PlayerSlot:
        return self.slot_a if tag is SlotTag.A else self.slot_b

    def all_answered(self) -> bool:
        return all(slot.has_answered for slot in self.slots)

    def scores(self) -> List[ScoreEntry]:
        return [slot.score_entry() for slot in self.slots]

    def cancel_tasks(self):
        """Cancel the round timer and any pending round start, except the task running this call."""
        current = asyncio.current_task()
        for task in (self.round_timer, self.next_round_task):
            if task and task is not current and not task.done():
                task.cancel()
        self.round_timer = None
        self.next_round_task = None

    async def broadcast(self, event: BaseModel):
        for slot in self.slots:
            await slot.player.send(event)
