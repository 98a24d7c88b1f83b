from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from typing import TypeVar

from core.elections_errors import ElectionCodeExhaustedError, ElectionConflictError
from core.elections_store import ELECTION_CODE_CONSTRAINT, ElectionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# No 0/O or 1/I: codes are read aloud and typed by hand.
ELECTION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ELECTION_CODE_LENGTH = 8
ELECTION_CODE_MAX_ATTEMPTS = 10


def generate_election_code() -> str:
    return "".join(secrets.choice(ELECTION_CODE_ALPHABET) for _ in range(ELECTION_CODE_LENGTH))


def normalize_election_code(raw: object) -> str:
    return str(raw or "").strip().upper()


def write_with_unique_code(
    *,
    store: ElectionStore,
    write: Callable[[str], T],
    generate: Callable[[], str] | None = None,
) -> T:
    """Call ``write(code)`` with a fresh code, retrying on collisions.

    The existence check and the write are not atomic; the unique index on
    ``code`` catches the rare race and we simply try another code.
    """

    generate = generate or generate_election_code
    for attempt in range(1, ELECTION_CODE_MAX_ATTEMPTS + 1):
        code = generate()
        if store.election_code_exists(code=code):
            logger.info("election_code_collision attempt=%d/%d", attempt, ELECTION_CODE_MAX_ATTEMPTS)
            continue
        try:
            return write(code)
        except ElectionConflictError as exc:
            if exc.constraint != ELECTION_CODE_CONSTRAINT:
                raise
            logger.info("election_code_collision attempt=%d/%d (on write)", attempt, ELECTION_CODE_MAX_ATTEMPTS)

    logger.error("election_code_exhausted attempts=%d", ELECTION_CODE_MAX_ATTEMPTS)
    raise ElectionCodeExhaustedError(
        f"Could not generate a unique election code after {ELECTION_CODE_MAX_ATTEMPTS} attempts.",
        constraint=ELECTION_CODE_CONSTRAINT,
    )
