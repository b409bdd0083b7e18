import asyncio
import logging
import math
import time
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from events import AnswerAcknowledged, OpponentAnswered, RoundResolved, RoundStarted, RoundTiming
from match import Match, MatchPhase, PlayerSlot
from options import generate_options

if TYPE_CHECKING:
    from lifecycle import MatchRules
    from match_registry import MatchRegistry

logger = logging.getLogger(__name__)


class RoundOutcome:
    def __init__(self, correct_answer: str, winner: Optional[PlayerSlot], timings: List[RoundTiming]):
        self.correct_answer = correct_answer
        self.winner = winner
        self.timings = timings


def score_round(match: Match, correct_answer: str) -> RoundOutcome:
    """Award at most one point for the current round.

    Both correct: the faster answer scores, an exact tie scores nobody.
    One correct: that player scores. Neither: no point. A slot that never
    answered counts as incorrect with infinite elapsed time.
    """
    timings = []
    correct_slots = []
    for slot in match.slots:
        elapsed = slot.elapsed(match.round_started_at)
        correct = slot.has_answered and slot.answer == correct_answer
        if correct:
            correct_slots.append((elapsed, slot))
        timings.append(RoundTiming(
            slot=slot.tag.value,
            identity=slot.player.identity,
            answer=slot.answer,
            correct=correct,
            elapsed=None if math.isinf(elapsed) else round(elapsed, 3),
            missed=math.isinf(elapsed),
        ))

    winner = None
    if len(correct_slots) == 1:
        winner = correct_slots[0][1]
    elif len(correct_slots) == 2:
        (elapsed_a, slot_a), (elapsed_b, slot_b) = correct_slots
        if elapsed_a < elapsed_b:
            winner = slot_a
        elif elapsed_b < elapsed_a:
            winner = slot_b

    if winner is not None:
        winner.score += 1
    return RoundOutcome(correct_answer, winner, timings)


class RoundEngine:
    def __init__(self, registry: "MatchRegistry", rules: "MatchRules",
                 on_round_scored: Callable[[Match], Awaitable[None]],
                 clock: Callable[[], float] = time.monotonic):
        self.registry = registry
        self.rules = rules
        self.on_round_scored = on_round_scored
        self.clock = clock

    async def start_round(self, match: Match):
        if not self.registry.is_active(match) or match.phase is not MatchPhase.IDLE:
            return
        if match.questions_remaining <= 0:
            # Nothing left to ask; let the lifecycle settle the match.
            await self.on_round_scored(match)
            return

        match.cancel_tasks()
        match.current_round_index += 1
        question = match.current_question
        bank = self.registry.question_bank
        match.current_options = generate_options(
            question.correct_answer, bank.identifiers, bank.confusion_groups,
            total=self.rules.options_per_round,
        )
        for slot in match.slots:
            slot.reset_round()
        match.round_started_at = self.clock()
        match.phase = MatchPhase.ROUND_ACTIVE
        match.round_timer = asyncio.create_task(self._round_timer(match, match.current_round_index))

        logger.info("Match %s: round %d started, answer '%s'", match.match_id,
                    match.rounds_played, question.correct_answer)
        await self._broadcast(match, RoundStarted(
            match_id=match.match_id,
            round_number=match.rounds_played,
            image_ref=question.image_ref,
            options=list(match.current_options),
            scores=match.scores(),
            time_limit=self.rules.round_time_limit,
            sudden_death=match.rounds_played > self.rules.fixed_rounds,
        ))

    async def _round_timer(self, match: Match, round_index: int):
        """Close the round after the time limit if it is still the same open round."""
        try:
            await asyncio.sleep(self.rules.round_time_limit)
        except asyncio.CancelledError:
            return
        if not self.registry.is_active(match) or match.current_round_index != round_index:
            return
        if self._close_round(match):
            logger.info("Match %s: round %d timed out", match.match_id, match.rounds_played)
            await self._score(match)

    def _close_round(self, match: Match) -> bool:
        # Guard against double-fire (timer + all-answered race)
        if match.phase is not MatchPhase.ROUND_ACTIVE:
            return False
        match.phase = MatchPhase.SCORING
        match.cancel_tasks()
        return True

    async def submit_answer(self, match: Match, connection_id: str, answer) -> bool:
        """Record a player's first answer for the open round. Returns False when ignored."""
        if match.phase is not MatchPhase.ROUND_ACTIVE:
            return False
        slot = match.slot_for(connection_id)
        if slot is None or slot.has_answered:
            return False
        if not isinstance(answer, str) or answer not in match.current_options:
            return False

        slot.record_answer(answer, self.clock())
        closed = match.all_answered() and self._close_round(match)

        question = match.current_question
        elapsed = slot.elapsed(match.round_started_at)
        await slot.player.send(AnswerAcknowledged(
            match_id=match.match_id,
            is_correct=answer == question.correct_answer,
            correct_answer=question.correct_answer,
            elapsed=round(elapsed, 3),
        ))
        # A disconnect handled during the ack can end the match
        if not self.registry.is_active(match):
            return True
        await match.opponent_of(slot).player.send(OpponentAnswered(
            match_id=match.match_id,
            elapsed=round(elapsed, 3),
        ))

        if closed:
            await self._score(match)
        return True

    async def _broadcast(self, match: Match, event):
        """Send to both slots, stopping as soon as the match is no longer registered."""
        for slot in match.slots:
            if not self.registry.is_active(match):
                return
            await slot.player.send(event)

    async def _score(self, match: Match):
        if not self.registry.is_active(match) or match.phase is not MatchPhase.SCORING:
            return
        question = match.current_question
        outcome = score_round(match, question.correct_answer)
        logger.info("Match %s round %d result: A(%d) vs B(%d), winner %s", match.match_id,
                    match.rounds_played, match.slot_a.score, match.slot_b.score,
                    outcome.winner.player.identity if outcome.winner else "none")
        await self._broadcast(match, RoundResolved(
            match_id=match.match_id,
            round_number=match.rounds_played,
            correct_answer=outcome.correct_answer,
            scores=match.scores(),
            timings=outcome.timings,
            round_winner=outcome.winner.player.identity if outcome.winner else None,
            winner_slot=outcome.winner.tag.value if outcome.winner else None,
        ))
        if self.registry.is_active(match):
            await self.on_round_scored(match)
