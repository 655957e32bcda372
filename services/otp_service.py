import string
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal
import logging
import math

from config import CODE_LENGTH, CODE_TTL_SECONDS, DEBUG_LOG_CODES

from otpmodel.otp_model import CodeEntry

logger = logging.getLogger("email_support_api.otp")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def half_up_seconds(delta: timedelta) -> int:
    # Halves round up: 12.5s is 13
    return math.floor(delta.total_seconds() + 0.5)


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    reason: Literal["invalid", "expired"] | None = None
    requester: str | None = None


@dataclass(frozen=True)
class CodeCheck:
    """Caller-facing outcome of a keypad submission."""

    valid: bool
    message: str
    reason: Literal["format", "invalid", "expired"] | None = None


class CodeStore:
    """
        In-memory store of active door codes.

        Every operation holds the store lock for its whole duration, so issue,
        validate and sweep never interleave. Entries are keyed by code and are
        removed on successful validation, on an expired lookup, or by sweep().
    """

    def __init__(
        self,
        ttl_seconds: int = CODE_TTL_SECONDS,
        code_length: int = CODE_LENGTH,
        clock: Clock = utc_now,
        generator: Callable[[int], str] = generate_code,
        log_codes: bool = DEBUG_LOG_CODES,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.code_length = code_length
        self._clock = clock
        self._generate = generator
        self._log_codes = log_codes
        self._entries: dict[str, CodeEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, code: object) -> bool:
        with self._lock:
            return code in self._entries

    def _is_expired(self, entry: CodeEntry, now: datetime) -> bool:
        return now - entry.issued_at > self.ttl

    def _remaining(self, entry: CodeEntry, now: datetime) -> int:
        remaining = self.ttl - (now - entry.issued_at)
        return max(0, half_up_seconds(remaining))

    def issue(self, requester: str | None) -> str:
        requester = requester or "unknown"

        with self._lock:
            # Retry until unique; the code space makes this rare, not impossible
            code = self._generate(self.code_length)
            while code in self._entries:
                code = self._generate(self.code_length)

            self._entries[code] = CodeEntry(
                code=code, requester=requester, issued_at=self._clock()
            )
            active = len(self._entries)

        if self._log_codes:
            logger.debug(
                f"Generated {code} for {requester} (expires in {self.ttl_seconds}s, active={active})"
            )
        else:
            logger.info(f"Issued door code for {requester}")

        return code

    def validate(self, code: str) -> ValidationResult:
        with self._lock:
            entry = self._entries.pop(code, None)
            if entry is None:
                return ValidationResult(accepted=False, reason="invalid")

            if self._is_expired(entry, self._clock()):
                return ValidationResult(
                    accepted=False, reason="expired", requester=entry.requester
                )

        # Popped above: a successful lookup consumes the code
        return ValidationResult(accepted=True, requester=entry.requester)

    def sweep(self, now: datetime | None = None) -> int:
        with self._lock:
            now = now or self._clock()
            stale = [
                code
                for code, entry in self._entries.items()
                if self._is_expired(entry, now)
            ]
            for code in stale:
                del self._entries[code]
            active = len(self._entries)

        if stale and self._log_codes:
            logger.debug(f"Purged {len(stale)} expired code(s). Active: {active}")

        return len(stale)

    def active(self, now: datetime | None = None) -> list[tuple[CodeEntry, int]]:
        """Snapshot of unexpired entries with their remaining whole seconds."""
        snapshot = []
        with self._lock:
            now = now or self._clock()
            for entry in self._entries.values():
                remaining = self.ttl - (now - entry.issued_at)
                if remaining > timedelta(0):
                    snapshot.append((entry, half_up_seconds(remaining)))
        return snapshot

    def remaining_seconds(self, code: str) -> int | None:
        with self._lock:
            entry = self._entries.get(code)
            if entry is None:
                return None
            return self._remaining(entry, self._clock())


def verify_submitted_code(store: CodeStore, submitted: str | None) -> CodeCheck:
    """
        Check a keypad submission against the store.

        Submissions of the wrong length are rejected before any lookup, so
        the store is never touched for them. A granted code is consumed.
    """
    code = (submitted or "").strip()

    if len(code) != store.code_length:
        return CodeCheck(
            valid=False,
            message=f"Code must be exactly {store.code_length} digits.",
            reason="format",
        )

    result = store.validate(code)

    if result.accepted:
        return CodeCheck(valid=True, message="ACCESS GRANTED")

    if result.reason == "expired":
        return CodeCheck(
            valid=False, message="Code expired. Request a new one.", reason="expired"
        )

    return CodeCheck(valid=False, message="Invalid code.", reason="invalid")
