# services/rng.py
from __future__ import annotations

import logging
import random
import secrets

logger = logging.getLogger(__name__)

WORD_BITS = 32
WIDE_WORD_BITS = 64
# Largest total weight the selector will draw against (fits a signed 64-bit int)
MAX_DRAW_RANGE = 2 ** 63 - 1


class RandomSource:
    """
    Source of uniformly distributed random words.
    Subclasses only implement random_word(); range mapping lives in rand_below().
    """

    name = "abstract"

    def random_word(self, bits: int) -> int:
        """Uniform integer in [0, 2**bits)."""
        raise NotImplementedError


class CryptoRandomSource(RandomSource):
    name = "crypto"

    def __init__(self):
        self._rng = secrets.SystemRandom()

    def random_word(self, bits: int) -> int:
        return self._rng.getrandbits(bits)


class SeededRandomSource(RandomSource):
    """Mersenne Twister; deterministic when seeded, used as the non-crypto fallback."""

    def __init__(self, seed=None):
        self.seed = seed
        self._rng = random.Random(seed)
        self.name = "pseudo" if seed is None else f"seeded:{seed}"

    def random_word(self, bits: int) -> int:
        return self._rng.getrandbits(bits)


class ScriptedRandomSource(RandomSource):
    """Yields a preset sequence of words, then falls back to a seeded generator."""

    name = "scripted"

    def __init__(self, words, *, seed=0):
        self._words = list(words)
        self._index = 0
        self._fallback = random.Random(seed)

    @property
    def consumed(self) -> int:
        return self._index

    def random_word(self, bits: int) -> int:
        if self._index < len(self._words):
            value = int(self._words[self._index])
            self._index += 1
            return value
        return self._fallback.getrandbits(bits)


def default_random_source() -> RandomSource:
    """Crypto source when the OS provides one, otherwise an unseeded PRNG."""
    try:
        src = CryptoRandomSource()
        src.random_word(1)
        return src
    except NotImplementedError:
        logger.warning("No OS entropy source available; falling back to pseudo-random draws")
        return SeededRandomSource()


def word_bits_for(n: int) -> int:
    return WORD_BITS if n <= 2 ** WORD_BITS else WIDE_WORD_BITS


def rand_below(source: RandomSource, n: int) -> int:
    """
    Uniform integer in [0, n) without modulo bias: words at or above the
    largest multiple of n that fits the word range are rejected and redrawn.
    """
    if n <= 0:
        raise ValueError("rand_below() needs a positive range")
    if n > MAX_DRAW_RANGE:
        raise ValueError(f"Range {n} exceeds the supported maximum {MAX_DRAW_RANGE}")
    bits = word_bits_for(n)
    limit = ((1 << bits) // n) * n
    while True:
        word = source.random_word(bits)
        if word < limit:
            return word % n
