"""Payment orchestration states and the transitions allowed between them."""

from enum import Enum


class PaymentState(str, Enum):
    INIT = "INIT"
    ENROLLMENT_CHECK = "ENROLLMENT_CHECK"
    AWAITING_STEPUP = "AWAITING_STEPUP"
    STEPUP_RESULT = "STEPUP_RESULT"
    SUBMIT_PAYMENT = "SUBMIT_PAYMENT"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[PaymentState, set[PaymentState]] = {
    PaymentState.INIT: {
        PaymentState.SUBMIT_PAYMENT,
        PaymentState.ENROLLMENT_CHECK,
        PaymentState.SUCCESS,
        PaymentState.FAILED,
    },
    PaymentState.ENROLLMENT_CHECK: {
        PaymentState.SUBMIT_PAYMENT,
        PaymentState.AWAITING_STEPUP,
        PaymentState.FAILED,
    },
    PaymentState.AWAITING_STEPUP: {PaymentState.STEPUP_RESULT, PaymentState.FAILED},
    PaymentState.STEPUP_RESULT: {PaymentState.SUBMIT_PAYMENT, PaymentState.FAILED},
    PaymentState.SUBMIT_PAYMENT: {PaymentState.SUCCESS, PaymentState.FAILED},
    PaymentState.SUCCESS: set(),
    PaymentState.FAILED: set(),
}

TERMINAL_STATES = {PaymentState.SUCCESS, PaymentState.FAILED}


def validate_transition(current: PaymentState, new: PaymentState) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current.value} -> {new.value}")
