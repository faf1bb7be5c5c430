"""
auth/passwords.py -- Password hashing, verification, and strength policy.

Security design decisions:
  Hashing: argon2id via argon2-cffi. argon2id is memory-hard, so GPU/ASIC
       brute force of a leaked hash costs memory as well as time. The encoded
       hash string carries the algorithm, parameters, and salt, so verify()
       needs no other state and parameter upgrades can be detected per hash.

  Verification: argon2-cffi recomputes the digest and compares it in constant
       time. verify() never raises -- a mismatch, a corrupt hash, or a hash
       from another algorithm is simply False.

  Timing equalization: verify_dummy() runs a full argon2 verification against
       a hash computed once at construction. AuthService.login() calls it when
       the email is unknown so the "no such user" branch costs the same as the
       "wrong password" branch.

  Policy: thresholds live in PasswordPolicy, built from Settings at startup.
       validate_strength() reports every unmet rule at once so a client can
       render all of them.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import argon2
from argon2.exceptions import InvalidHashError, VerificationError

from auth.errors import WeakPasswordError

logger = logging.getLogger("authgate.auth.passwords")


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 255
    require_letter: bool = True
    require_digit: bool = True
    require_uppercase: bool = False
    require_symbol: bool = False

    def unmet_rules(self, plaintext: str) -> list[str]:
        """Return a human-readable line for every rule plaintext fails."""
        unmet: list[str] = []
        if len(plaintext) < self.min_length:
            unmet.append(f"Password must be at least {self.min_length} characters")
        if len(plaintext) > self.max_length:
            unmet.append(f"Password must be at most {self.max_length} characters")
        if self.require_letter and not any(c.isalpha() for c in plaintext):
            unmet.append("Password must contain at least one letter")
        if self.require_digit and not any(c.isdigit() for c in plaintext):
            unmet.append("Password must contain at least one number")
        if self.require_uppercase and not any(c.isupper() for c in plaintext):
            unmet.append("Password must contain at least one uppercase letter")
        if self.require_symbol and all(c.isalnum() or c.isspace() for c in plaintext):
            unmet.append("Password must contain at least one symbol")
        return unmet


class PasswordHasher:
    """argon2id hashing plus the configured strength policy.

    Usage:
        hasher = PasswordHasher(PasswordPolicy(min_length=10))
        hasher.validate_strength("correct horse 1")
        stored = hasher.hash("correct horse 1")
        hasher.verify("correct horse 1", stored)  # True
    """

    def __init__(
        self,
        policy: PasswordPolicy | None = None,
        *,
        time_cost: int = argon2.DEFAULT_TIME_COST,
        memory_cost: int = argon2.DEFAULT_MEMORY_COST,
        parallelism: int = argon2.DEFAULT_PARALLELISM,
    ) -> None:
        self.policy = policy or PasswordPolicy()
        self._argon2 = argon2.PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=argon2.Type.ID,
        )
        # Computed once so the first unknown-email login is not measurably
        # slower than later ones.
        self._dummy_hash = self._argon2.hash("authgate_timing_dummy")

    def hash(self, plaintext: str) -> str:
        """Return an encoded argon2id hash with a fresh random salt."""
        return self._argon2.hash(plaintext)

    def verify(self, plaintext: str, hash_blob: str) -> bool:
        """Return True if plaintext matches hash_blob. Never raises."""
        try:
            return self._argon2.verify(hash_blob, plaintext)
        except (VerificationError, InvalidHashError):
            return False

    def verify_dummy(self, plaintext: str) -> None:
        """Spend one verification's worth of work without a real hash."""
        self.verify(plaintext, self._dummy_hash)

    def needs_rehash(self, hash_blob: str) -> bool:
        """True when hash_blob was produced with different parameters than ours."""
        try:
            return self._argon2.check_needs_rehash(hash_blob)
        except InvalidHashError:
            logger.warning("Stored password hash is not a valid argon2 hash")
            return True

    def validate_strength(self, plaintext: str) -> None:
        """Raise WeakPasswordError listing every rule plaintext fails."""
        unmet = self.policy.unmet_rules(plaintext)
        if unmet:
            raise WeakPasswordError(unmet)
