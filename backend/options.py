import logging
import random
from typing import Iterable, List, Sequence

from question_bank import ConfusionGroups, pick_distractors

logger = logging.getLogger(__name__)


def _select_unique_random(source: Iterable[str], count: int, exclude: Iterable[str] = (),
                          rng: random.Random = random) -> List[str]:
    excluded = set(exclude)
    pool = [item for item in dict.fromkeys(source) if item not in excluded]
    return rng.sample(pool, min(count, len(pool))) if count > 0 else []


def generate_options(correct_answer: str, all_identifiers: Sequence[str],
                     confusion_groups: ConfusionGroups, total: int = 4,
                     rng: random.Random = random) -> List[str]:
    """Build ``total`` shuffled answer options that include ``correct_answer``.

    Distractors come from the answer's confusion group first so the options
    look alike; any remaining slots are filled uniformly from the whole
    identifier universe. A universe too small to reach ``total`` yields a
    shorter list instead of an error.
    """
    chosen = [correct_answer]
    chosen += pick_distractors(correct_answer, confusion_groups, total - 1, rng)

    remaining = total - len(chosen)
    if remaining > 0:
        chosen += _select_unique_random(all_identifiers, remaining, exclude=chosen, rng=rng)

    if len(chosen) != total:
        logger.warning("Generated %d/%d options for '%s'", len(chosen), total, correct_answer)

    rng.shuffle(chosen)
    return chosen
