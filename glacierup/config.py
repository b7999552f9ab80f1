from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from tenacity import stop_after_attempt, wait_exponential, wait_random

from .constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_PART_SIZE,
    ENV_CONCURRENCY,
    ENV_PART_SIZE,
    MAX_PART_SIZE,
    MIB,
    MIN_PART_SIZE,
)
from .errors import PartSizeError


_SIZE_SUFFIXES = {"": 1, "b": 1, "k": 1024, "kib": 1024, "m": MIB, "mib": MIB, "g": 1024 * MIB, "gib": 1024 * MIB}


def validate_part_size(part_size: int) -> int:
    """Check the vault service's part size rule: 1 MiB * 2^n, at most 4 GiB."""
    if isinstance(part_size, bool) or not isinstance(part_size, int):
        raise PartSizeError(f"part size must be an integer, got {part_size!r}")
    if part_size < MIN_PART_SIZE or part_size > MAX_PART_SIZE:
        raise PartSizeError(f"part size {part_size} outside [{MIN_PART_SIZE}, {MAX_PART_SIZE}]")
    if part_size % MIB != 0 or (part_size // MIB) & (part_size // MIB - 1):
        raise PartSizeError(f"part size {part_size} is not 1 MiB times a power of two")
    return part_size


def parse_size(text: str) -> int:
    """Parse ``"8M"``, ``"16MiB"``, ``"1073741824"`` and similar into bytes."""
    s = text.strip().lower()
    digits = s.rstrip("abcdefghijklmnopqrstuvwxyz")
    suffix = s[len(digits):]
    if not digits.isdigit() or suffix not in _SIZE_SUFFIXES:
        raise PartSizeError(f"cannot parse size {text!r}")
    return int(digits) * _SIZE_SUFFIXES[suffix]


@dataclass
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = 0.1  # random extra wait, as a fraction of base_delay

    def validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.multiplier < 1 or self.jitter < 0:
            raise ValueError("retry delays must be non-negative and multiplier >= 1")

    def stop(self):
        return stop_after_attempt(self.max_attempts)

    def wait(self):
        """tenacity wait strategy: ``base_delay * multiplier**(n-1)`` capped at ``max_delay``, plus jitter."""
        strategy = wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier, max=self.max_delay)
        if self.jitter:
            strategy = strategy + wait_random(0, self.base_delay * self.jitter)
        return strategy


@dataclass
class UploadConfig:
    part_size: int = DEFAULT_PART_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def validate(self) -> "UploadConfig":
        validate_part_size(self.part_size)
        if isinstance(self.concurrency, bool) or not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ValueError(f"concurrency must be a positive integer, got {self.concurrency!r}")
        self.retry.validate()
        return self

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "UploadConfig":
        env = os.environ if environ is None else environ
        cfg = UploadConfig()
        if env.get(ENV_PART_SIZE):
            cfg.part_size = parse_size(env[ENV_PART_SIZE])
        if env.get(ENV_CONCURRENCY):
            try:
                cfg.concurrency = int(env[ENV_CONCURRENCY])
            except ValueError:
                raise ValueError(f"{ENV_CONCURRENCY} must be an integer, got {env[ENV_CONCURRENCY]!r}") from None
        return cfg
