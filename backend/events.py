"""Outbound websocket payloads, one model per message type."""
from typing import List, Literal, Optional

from pydantic import BaseModel


class ScoreEntry(BaseModel):
    slot: str
    identity: str
    display_name: str
    score: int


class RoundTiming(BaseModel):
    slot: str
    identity: str
    answer: Optional[str] = None
    correct: bool = False
    elapsed: Optional[float] = None  # seconds; None when missed
    missed: bool = True


class Connected(BaseModel):
    type: Literal["CONNECTED"] = "CONNECTED"
    identity: str
    display_name: str


class Searching(BaseModel):
    type: Literal["SEARCHING"] = "SEARCHING"


class ServiceUnavailable(BaseModel):
    type: Literal["SERVICE_UNAVAILABLE"] = "SERVICE_UNAVAILABLE"
    message: str = "Game data unavailable"


class Error(BaseModel):
    type: Literal["ERROR"] = "ERROR"
    message: str


class MatchStarted(BaseModel):
    type: Literal["MATCH_STARTED"] = "MATCH_STARTED"
    match_id: str
    slot: str
    opponent: str
    opponent_name: str


class RoundStarted(BaseModel):
    type: Literal["ROUND_STARTED"] = "ROUND_STARTED"
    match_id: str
    round_number: int
    image_ref: str
    options: List[str]
    scores: List[ScoreEntry]
    time_limit: int
    sudden_death: bool = False


class AnswerAcknowledged(BaseModel):
    type: Literal["ANSWER_ACKNOWLEDGED"] = "ANSWER_ACKNOWLEDGED"
    match_id: str
    is_correct: bool
    correct_answer: str
    elapsed: float


class OpponentAnswered(BaseModel):
    type: Literal["OPPONENT_ANSWERED"] = "OPPONENT_ANSWERED"
    match_id: str
    elapsed: float


class RoundResolved(BaseModel):
    type: Literal["ROUND_RESOLVED"] = "ROUND_RESOLVED"
    match_id: str
    round_number: int
    correct_answer: str
    scores: List[ScoreEntry]
    timings: List[RoundTiming]
    round_winner: Optional[str] = None
    winner_slot: Optional[str] = None


class MatchEnded(BaseModel):
    type: Literal["MATCH_ENDED"] = "MATCH_ENDED"
    match_id: str
    final_scores: List[ScoreEntry]
    winner: str  # winner identity or "Tie"
    winner_slot: Optional[str] = None
    reason: str
    rounds_played: int


class MatchEndedByForfeit(BaseModel):
    type: Literal["MATCH_ENDED_BY_FORFEIT"] = "MATCH_ENDED_BY_FORFEIT"
    match_id: str
    winner: str
    winner_score: int


class SoloRound(BaseModel):
    type: Literal["SOLO_ROUND"] = "SOLO_ROUND"
    round_number: int
    total_rounds: int
    image_ref: str
    options: List[str]
    time_limit: int
    score: int


class SoloFeedback(BaseModel):
    type: Literal["SOLO_FEEDBACK"] = "SOLO_FEEDBACK"
    round_number: int
    is_correct: bool
    correct_answer: str
    score: int


class SoloGameOver(BaseModel):
    type: Literal["SOLO_GAME_OVER"] = "SOLO_GAME_OVER"
    score: int
    rounds: int
