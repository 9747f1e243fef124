"""Integer sources for the Birthday Spacings test.

Every source is a zero-argument callable returning an ``int`` in ``[0, n)``.
The test itself only ever calls the source; these classes exist so the CLI,
the engine and the test-suite have reproducible inputs:

  - ``lcg``: the classic 214013/2531011 linear congruential generator (known bad)
  - ``python``: ``random.Random(seed).getrandbits``
  - ``system``: the OS CSPRNG via ``secrets``
  - ``hash_ctr``: SHA-256(key || nonce || counter) stream, deterministic
  - ``ByteStreamGenerator``: successive fixed-width words read from a byte buffer
"""
from __future__ import annotations

import hashlib
import random
import secrets
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from .plugin_api import BytesView


class GeneratorExhausted(RuntimeError):
    """Raised when a finite source has no complete word left."""


class Generator(ABC):
    """Base class for integer sources. ``n`` is the exclusive upper bound of the output."""

    n: int

    @abstractmethod
    def draw(self) -> int:
        """Return the next integer in ``[0, n)``."""

    def __call__(self) -> int:
        return self.draw()


def _check_bits(bits: int) -> int:
    bits = int(bits)
    if bits <= 0:
        raise ValueError(f"bits must be positive, got {bits}")
    return bits


class LinearCongruentialGenerator(Generator):
    """x(k) = (multiplier * x(k-1) + increment) mod modulus; returns the new state."""

    def __init__(self, multiplier: int = 214013, increment: int = 2531011,
                 modulus: int = 1 << 32, seed: int = 1):
        if modulus <= 0:
            raise ValueError("modulus must be positive")
        self.multiplier = int(multiplier)
        self.increment = int(increment)
        self.n = int(modulus)
        self._state = int(seed) % self.n

    def draw(self) -> int:
        self._state = (self.multiplier * self._state + self.increment) % self.n
        return self._state


class PythonRandomGenerator(Generator):
    """Mersenne Twister words from ``random.Random``; reproducible when seeded."""

    def __init__(self, bits: int = 32, seed: Optional[int] = None):
        self.bits = _check_bits(bits)
        self.n = 1 << self.bits
        self._rng = random.Random(seed)

    def draw(self) -> int:
        return self._rng.getrandbits(self.bits)


class SystemRandomGenerator(Generator):
    """Words from the operating system CSPRNG. Not reproducible."""

    def __init__(self, bits: int = 32):
        self.bits = _check_bits(bits)
        self.n = 1 << self.bits

    def draw(self) -> int:
        return secrets.randbits(self.bits)


class HashCounterGenerator(Generator):
    """Deterministic stream of SHA-256(key || nonce || counter) blocks cut into words.

    The key is derived from ``seed`` when not given explicitly, so two instances
    built with the same arguments yield the same sequence.
    """

    def __init__(self, bits: int = 32, key: Optional[bytes] = None, seed: int = 0):
        self.bits = _check_bits(bits)
        self.n = 1 << self.bits
        self._word_bytes = (self.bits + 7) // 8
        self._mask = self.n - 1
        self._key = key if key is not None else hashlib.sha256(f"hash_ctr-key-{seed}".encode("utf-8")).digest()
        self._nonce = hashlib.sha256(f"hash_ctr-nonce-{seed}".encode("utf-8")).digest()[:12]
        self._counter = 0
        self._buf = bytearray()

    def _refill(self) -> None:
        blob = self._key + self._nonce + self._counter.to_bytes(8, "big")
        self._buf.extend(hashlib.sha256(blob).digest())
        self._counter += 1

    def draw(self) -> int:
        while len(self._buf) < self._word_bytes:
            self._refill()
        word = bytes(self._buf[:self._word_bytes])
        del self._buf[:self._word_bytes]
        return int.from_bytes(word, "big") & self._mask


class ByteStreamGenerator(Generator):
    """Reads successive ``bits``-wide words from a byte buffer.

    ``bits`` must be a multiple of 8. Trailing bytes that do not form a whole
    word are never returned.
    """

    def __init__(self, data: Union[BytesView, bytes, bytearray], bits: int = 32, byteorder: str = "little"):
        self.bits = _check_bits(bits)
        if self.bits % 8:
            raise ValueError(f"bits must be a multiple of 8 for byte streams, got {self.bits}")
        if byteorder not in ("little", "big"):
            raise ValueError(f"byteorder must be 'little' or 'big', got {byteorder!r}")
        self.n = 1 << self.bits
        self.byteorder = byteorder
        self._view = data if isinstance(data, BytesView) else BytesView(data)
        self._word_bytes = self.bits // 8
        self._pos = 0

    def available(self) -> int:
        """Number of complete words not yet drawn."""
        return self._view.word_count(self.bits) - self._pos // self._word_bytes

    def draw(self) -> int:
        end = self._pos + self._word_bytes
        if end > len(self._view):
            raise GeneratorExhausted(f"byte stream exhausted after {self._pos} bytes")
        word = self._view[self._pos:end].tobytes()
        self._pos = end
        return int.from_bytes(word, self.byteorder)


_GENERATORS = {
    "lcg": LinearCongruentialGenerator,
    "python": PythonRandomGenerator,
    "system": SystemRandomGenerator,
    "hash_ctr": HashCounterGenerator,
}


def build_generator(config: Dict[str, Any]) -> Generator:
    """Build a bundled generator from a config mapping.

    config format:
    {
        'type': 'lcg' | 'python' | 'system' | 'hash_ctr',
        'seed': 1,        # lcg / python / hash_ctr
        'bits': 32,       # python / system / hash_ctr
        'multiplier': 214013, 'increment': 2531011, 'modulus': 4294967296  # lcg only
    }
    """
    kind = str(config.get("type", "python")).lower()
    if kind not in _GENERATORS:
        raise ValueError(f"Unknown generator type: {kind!r} (expected one of {sorted(_GENERATORS)})")

    seed = config.get("seed")
    bits = int(config.get("bits", 32))
    if kind == "lcg":
        return LinearCongruentialGenerator(
            multiplier=int(config.get("multiplier", 214013)),
            increment=int(config.get("increment", 2531011)),
            modulus=int(config.get("modulus", 1 << bits)),
            seed=1 if seed is None else int(seed),
        )
    if kind == "python":
        return PythonRandomGenerator(bits=bits, seed=seed)
    if kind == "system":
        return SystemRandomGenerator(bits=bits)
    return HashCounterGenerator(bits=bits, seed=0 if seed is None else int(seed))
