# submitter.py
import enum
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional, Protocol

from errors import AuthRequired, PermanentFailure, TransientFailure
from models import FeePreset

logger = logging.getLogger(__name__)

# sysexits.h codes the submit command uses to classify its failures
EX_TEMPFAIL = 75
EX_NOPERM = 77

DEFAULT_SUBMIT_TIMEOUT_SECONDS = 60


class SubmitErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    AUTH_REQUIRED = "auth_required"


@dataclass
class SubmitResult:
    ok: bool
    confirmation: Optional[str] = None
    error_kind: Optional[SubmitErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def confirmed(cls, confirmation):
        return cls(ok=True, confirmation=confirmation)

    @classmethod
    def transient(cls, error):
        return cls(ok=False, error_kind=SubmitErrorKind.TRANSIENT, error=error)

    @classmethod
    def permanent(cls, error):
        return cls(ok=False, error_kind=SubmitErrorKind.PERMANENT, error=error)

    @classmethod
    def auth_required(cls, error="wallet authorization required"):
        return cls(ok=False, error_kind=SubmitErrorKind.AUTH_REQUIRED, error=error)

    def to_error(self):
        """The PaymentsError matching this failed result."""
        if self.ok:
            return None
        return {
            SubmitErrorKind.TRANSIENT: TransientFailure,
            SubmitErrorKind.PERMANENT: PermanentFailure,
            SubmitErrorKind.AUTH_REQUIRED: AuthRequired,
        }[self.error_kind](self.error or self.error_kind.value)


class TransactionSubmitter(Protocol):
    def submit(self, to_address, amount, token, memo=None, fee_preset=FeePreset.NORMAL) -> SubmitResult: ...


class CommandSubmitter:
    """
    Hands a transfer to an external signing/broadcast command. The payload
    travels in PAYCTL_* environment variables; the exit status classifies
    the outcome (0 ok, 75 transient, 77 auth required, anything else
    permanent) and stdout carries the confirmation.
    """

    def __init__(self, command, timeout_seconds=DEFAULT_SUBMIT_TIMEOUT_SECONDS):
        self.command = command
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, db):
        command = db.get_config("submit_command")
        if not command:
            return None
        timeout = db.get_config("submit_timeout_seconds", default=str(DEFAULT_SUBMIT_TIMEOUT_SECONDS))
        return cls(command, timeout_seconds=float(timeout))

    def submit(self, to_address, amount, token, memo=None, fee_preset=FeePreset.NORMAL):
        env = dict(os.environ)
        env.update({
            "PAYCTL_TO_ADDRESS": to_address,
            "PAYCTL_AMOUNT": str(amount),
            "PAYCTL_TOKEN": token,
            "PAYCTL_MEMO": memo or "",
            "PAYCTL_FEE_PRESET": fee_preset.name,
            "PAYCTL_PRIORITY_FEE": str(fee_preset.micro_lamports_per_cu),
            "PAYCTL_COMPUTE_UNITS": str(fee_preset.compute_units),
        })
        try:
            result = subprocess.run(
                self.command,
                shell=True,
                capture_output=True,
                text=True,
                env=env,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Submit command timed out after %ss", self.timeout_seconds)
            return SubmitResult.transient("timeout")
        except OSError as e:
            return SubmitResult.transient(f"submit command could not start: {e}")

        output = (result.stdout or "").strip()
        error = (result.stderr or "").strip() or output or f"exit code {result.returncode}"
        if result.returncode == 0:
            return SubmitResult.confirmed(output)
        if result.returncode == EX_TEMPFAIL:
            return SubmitResult.transient(error)
        if result.returncode == EX_NOPERM:
            return SubmitResult.auth_required(error)
        return SubmitResult.permanent(error)
