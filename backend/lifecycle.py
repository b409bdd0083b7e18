import asyncio
import logging
import secrets
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, field_validator, model_validator

import config
from events import MatchEnded, MatchEndedByForfeit, MatchStarted
from match import Match, MatchPhase, Player, SlotTag
from round_engine import RoundEngine

if TYPE_CHECKING:
    from match_registry import MatchRegistry

logger = logging.getLogger(__name__)

TIE = "Tie"


class MatchRules(BaseModel):
    fixed_rounds: int = 3
    mercy_gap: int = 2
    mercy_check_round: int = 2
    round_time_limit: int = 10
    intermission: float = 3.0
    options_per_round: int = 4
    max_tiebreak_rounds: int = 0  # 0 = bounded only by remaining questions
    max_match_questions: int = 0  # 0 = whole bank

    @field_validator("fixed_rounds", "mercy_gap", "round_time_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("intermission", "max_tiebreak_rounds", "max_match_questions", "mercy_check_round")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("options_per_round")
    @classmethod
    def validate_options(cls, v: int) -> int:
        if v < 2:
            raise ValueError("a question needs at least 2 options")
        return v

    @model_validator(mode="after")
    def validate_question_cap(self):
        if 0 < self.max_match_questions < self.fixed_rounds:
            raise ValueError("max_match_questions must cover the regulation rounds")
        return self

    @classmethod
    def from_config(cls) -> "MatchRules":
        return cls(
            fixed_rounds=config.FIXED_ROUNDS,
            mercy_gap=config.MERCY_GAP,
            mercy_check_round=config.MERCY_CHECK_ROUND,
            round_time_limit=config.ROUND_TIME_LIMIT,
            intermission=config.ROUND_INTERMISSION,
            options_per_round=config.OPTIONS_PER_ROUND,
            max_tiebreak_rounds=config.MAX_TIEBREAK_ROUNDS,
            max_match_questions=config.MAX_MATCH_QUESTIONS,
        )


class Decision(str, Enum):
    NEXT_ROUND = "next_round"
    END_MERCY = "mercy"
    END_REGULATION = "regulation"
    END_SUDDEN_DEATH = "sudden_death"
    END_EXHAUSTED = "exhausted"


def decide_next(rounds_played: int, score_a: int, score_b: int, questions_remaining: int,
                tiebreak_rounds: int, rules: MatchRules) -> Decision:
    """What happens after a scored round.

    The mercy rule is a one-shot check exactly after ``mercy_check_round``;
    it is evaluated before the regulation continuation check.
    """
    if rounds_played == rules.mercy_check_round and abs(score_a - score_b) >= rules.mercy_gap:
        return Decision.END_MERCY

    if rounds_played < rules.fixed_rounds:
        return Decision.NEXT_ROUND if questions_remaining > 0 else Decision.END_EXHAUSTED

    if score_a != score_b:
        if rounds_played == rules.fixed_rounds:
            return Decision.END_REGULATION
        return Decision.END_SUDDEN_DEATH

    if questions_remaining <= 0:
        return Decision.END_EXHAUSTED
    if rules.max_tiebreak_rounds and tiebreak_rounds >= rules.max_tiebreak_rounds:
        return Decision.END_EXHAUSTED
    return Decision.NEXT_ROUND


def final_winner(score_a: int, score_b: int) -> Optional[SlotTag]:
    if score_a > score_b:
        return SlotTag.A
    if score_b > score_a:
        return SlotTag.B
    return None


class MatchLifecycle:
    """Creates matches, carries them from round to round and ends them."""

    def __init__(self, registry: "MatchRegistry", rules: MatchRules):
        self.registry = registry
        self.rules = rules
        self.engine = RoundEngine(registry, rules, on_round_scored=self.after_round)

    def create_match(self, player_a: Player, player_b: Player) -> Match:
        match_id = secrets.token_urlsafe(8)
        while self.registry.get(match_id) is not None:
            match_id = secrets.token_urlsafe(8)
        questions = self.registry.question_bank.shuffled(limit=self.rules.max_match_questions)
        match = Match(match_id, player_a, player_b, questions)
        self.registry.add(match)
        logger.info("Match %s created: %s vs %s", match_id, player_a.identity, player_b.identity)
        return match

    async def begin(self, match: Match):
        for slot in match.slots:
            opponent = match.opponent_of(slot).player
            await slot.player.send(MatchStarted(
                match_id=match.match_id,
                slot=slot.tag.value,
                opponent=opponent.identity,
                opponent_name=opponent.display_name,
            ))
        await self.engine.start_round(match)

    async def after_round(self, match: Match):
        if not self.registry.is_active(match):
            return
        decision = decide_next(
            match.rounds_played,
            match.slot_a.score,
            match.slot_b.score,
            match.questions_remaining,
            match.tiebreak_rounds,
            self.rules,
        )
        if decision is not Decision.NEXT_ROUND:
            await self.end_match(match, decision)
            return

        if match.rounds_played >= self.rules.fixed_rounds:
            match.tiebreak_rounds += 1
            logger.info("Match %s tied %d-%d, sudden death round %d", match.match_id,
                        match.slot_a.score, match.slot_b.score, match.tiebreak_rounds)
        match.phase = MatchPhase.IDLE
        if self.rules.intermission > 0:
            match.next_round_task = asyncio.create_task(
                self._start_after_intermission(match, match.current_round_index)
            )
        else:
            await self.engine.start_round(match)

    async def _start_after_intermission(self, match: Match, round_index: int):
        try:
            await asyncio.sleep(self.rules.intermission)
        except asyncio.CancelledError:
            return
        if not self.registry.is_active(match) or match.current_round_index != round_index:
            return
        match.next_round_task = None
        await self.engine.start_round(match)

    def _close(self, match: Match):
        match.cancel_tasks()
        match.phase = MatchPhase.ENDED
        self.registry.discard(match)

    async def end_match(self, match: Match, decision: Decision):
        if match.phase is MatchPhase.ENDED:
            return
        self._close(match)
        winner_tag = final_winner(match.slot_a.score, match.slot_b.score)
        winner_slot = match.slot_by_tag(winner_tag) if winner_tag else None
        logger.info("Match %s ended (%s): %d-%d, winner %s", match.match_id, decision.value,
                    match.slot_a.score, match.slot_b.score,
                    winner_slot.player.identity if winner_slot else TIE)
        await match.broadcast(MatchEnded(
            match_id=match.match_id,
            final_scores=match.scores(),
            winner=winner_slot.player.identity if winner_slot else TIE,
            winner_slot=winner_tag.value if winner_tag else None,
            reason=decision.value,
            rounds_played=match.rounds_played,
        ))

    async def forfeit(self, match: Match, dropped_connection_id: str):
        if match.phase is MatchPhase.ENDED:
            return
        dropped = match.slot_for(dropped_connection_id)
        if dropped is None:
            return
        self._close(match)
        remaining = match.opponent_of(dropped)
        logger.info("Match %s forfeited by %s, %s wins", match.match_id,
                    dropped.player.identity, remaining.player.identity)
        await remaining.player.send(MatchEndedByForfeit(
            match_id=match.match_id,
            winner=remaining.player.identity,
            winner_score=remaining.score,
        ))
