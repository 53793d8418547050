from decimal import Decimal

from errors import AuthRequired, PermanentFailure, TransientFailure
from models import FeePreset
from submitter import DEFAULT_SUBMIT_TIMEOUT_SECONDS, CommandSubmitter, SubmitErrorKind, SubmitResult


def test_success_returns_stdout_confirmation():
    result = CommandSubmitter("echo sig-$PAYCTL_AMOUNT-$PAYCTL_TOKEN").submit("dest", Decimal("1.5"), "SOL")
    assert result.ok
    assert result.confirmation == "sig-1.5-SOL"


def test_fee_preset_is_passed_through():
    result = CommandSubmitter("echo $PAYCTL_FEE_PRESET $PAYCTL_PRIORITY_FEE $PAYCTL_COMPUTE_UNITS").submit(
        "dest", Decimal("1"), "SOL", fee_preset=FeePreset.EXPRESS)
    assert result.confirmation == "EXPRESS 5000 300000"


def test_exit_codes_classify_failures():
    assert CommandSubmitter("echo busy >&2; exit 75").submit("d", 1, "SOL").error_kind is SubmitErrorKind.TRANSIENT
    assert CommandSubmitter("exit 77").submit("d", 1, "SOL").error_kind is SubmitErrorKind.AUTH_REQUIRED

    rejected = CommandSubmitter("echo invalid recipient >&2; exit 1").submit("d", 1, "SOL")
    assert rejected.error_kind is SubmitErrorKind.PERMANENT
    assert rejected.error == "invalid recipient"


def test_timeout_is_transient():
    result = CommandSubmitter("exec sleep 5", timeout_seconds=0.2).submit("d", 1, "SOL")
    assert result.error_kind is SubmitErrorKind.TRANSIENT
    assert result.error == "timeout"


def test_from_config(db):
    assert CommandSubmitter.from_config(db) is None
    db.set_config("submit_command", "solana-send")
    assert CommandSubmitter.from_config(db).timeout_seconds == DEFAULT_SUBMIT_TIMEOUT_SECONDS
    db.set_config("submit_timeout_seconds", "20")
    submitter = CommandSubmitter.from_config(db)
    assert submitter.command == "solana-send"
    assert submitter.timeout_seconds == 20


def test_results_map_to_error_taxonomy():
    assert SubmitResult.confirmed("x").to_error() is None
    assert isinstance(SubmitResult.transient("t").to_error(), TransientFailure)
    assert isinstance(SubmitResult.permanent("p").to_error(), PermanentFailure)
    assert isinstance(SubmitResult.auth_required().to_error(), AuthRequired)
