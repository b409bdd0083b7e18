"""Single-player practice rounds against the clock."""
import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from events import SoloFeedback, SoloGameOver, SoloRound
from match import Player
from options import generate_options
from question_bank import QuestionBank

if TYPE_CHECKING:
    from lifecycle import MatchRules

logger = logging.getLogger(__name__)


class SoloGame:
    def __init__(self, player: Player, bank: QuestionBank, rounds: int):
        self.player = player
        self.questions = bank.shuffled(limit=rounds)
        self.score = 0
        self.current_round_index = -1
        self.current_options: list = []
        self.answered = False
        self.finished = False
        self.timer_task: Optional[asyncio.Task] = None

    @property
    def total_rounds(self) -> int:
        return len(self.questions)

    @property
    def current_question(self):
        if 0 <= self.current_round_index < len(self.questions):
            return self.questions[self.current_round_index]
        return None

    def cancel_timer(self):
        if self.timer_task and self.timer_task is not asyncio.current_task():
            self.timer_task.cancel()
        self.timer_task = None


class SoloRunner:
    def __init__(self, bank: QuestionBank, rules: "MatchRules", rounds: int):
        self.bank = bank
        self.rules = rules
        self.rounds = rounds
        self.games: dict = {}  # connection_id -> SoloGame

    def is_playing(self, connection_id: str) -> bool:
        return connection_id in self.games

    async def start(self, player: Player) -> SoloGame:
        game = SoloGame(player, self.bank, self.rounds)
        self.games[player.connection_id] = game
        logger.info("Solo game started for %s (%d rounds)", player.identity, game.total_rounds)
        await self._next_round(game)
        return game

    async def _next_round(self, game: SoloGame):
        if game.finished:
            return
        game.cancel_timer()
        if game.current_round_index + 1 >= game.total_rounds:
            await self._finish(game)
            return
        game.current_round_index += 1
        game.answered = False
        question = game.current_question
        game.current_options = generate_options(
            question.correct_answer, self.bank.identifiers, self.bank.confusion_groups,
            total=self.rules.options_per_round,
        )
        game.timer_task = asyncio.create_task(self._round_timer(game, game.current_round_index))
        await game.player.send(SoloRound(
            round_number=game.current_round_index + 1,
            total_rounds=game.total_rounds,
            image_ref=question.image_ref,
            options=list(game.current_options),
            time_limit=self.rules.round_time_limit,
            score=game.score,
        ))

    async def _round_timer(self, game: SoloGame, round_index: int):
        try:
            await asyncio.sleep(self.rules.round_time_limit)
        except asyncio.CancelledError:
            return
        if game.finished or game.answered or game.current_round_index != round_index:
            return
        game.answered = True
        game.timer_task = None
        await game.player.send(SoloFeedback(
            round_number=round_index + 1,
            is_correct=False,
            correct_answer=game.current_question.correct_answer,
            score=game.score,
        ))
        await self._next_round(game)

    async def submit_answer(self, connection_id: str, answer) -> bool:
        game = self.games.get(connection_id)
        if game is None or game.finished or game.answered:
            return False
        if not isinstance(answer, str) or answer not in game.current_options:
            return False
        game.answered = True
        game.cancel_timer()
        question = game.current_question
        correct = answer == question.correct_answer
        if correct:
            game.score += 1
        await game.player.send(SoloFeedback(
            round_number=game.current_round_index + 1,
            is_correct=correct,
            correct_answer=question.correct_answer,
            score=game.score,
        ))
        await self._next_round(game)
        return True

    async def _finish(self, game: SoloGame):
        game.finished = True
        game.cancel_timer()
        self.games.pop(game.player.connection_id, None)
        logger.info("Solo game over for %s: %d/%d", game.player.identity, game.score, game.total_rounds)
        await game.player.send(SoloGameOver(score=game.score, rounds=game.total_rounds))

    def stop(self, connection_id: str):
        game = self.games.pop(connection_id, None)
        if game:
            game.finished = True
            game.cancel_timer()

    def stop_all(self):
        for connection_id in list(self.games):
            self.stop(connection_id)
