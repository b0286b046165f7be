"""Transaction lifecycle state machine.

Every write to ``Transaction.state`` goes through :func:`assert_transition`.
Legacy labels found in older rows are mapped onto canonical states by
:func:`normalize_state` before any check runs.
"""

from donations.domain.constants import TransactionState
from donations.domain.exceptions import InvalidStateError, InvalidTransitionError

CANONICAL_STATES = frozenset(state.value for state in TransactionState)

TERMINAL_STATES = frozenset(
    {TransactionState.CONFIRMED.value, TransactionState.FAILED.value}
)

LEGACY_STATE_ALIASES = {
    "completed": TransactionState.CONFIRMED.value,
    "cancelled": TransactionState.FAILED.value,
}

VALID_TRANSITIONS = {
    TransactionState.PENDING.value: frozenset({TransactionState.SUBMITTED.value}),
    TransactionState.SUBMITTED.value: frozenset(
        {TransactionState.CONFIRMED.value, TransactionState.FAILED.value}
    ),
    TransactionState.CONFIRMED.value: frozenset(),
    TransactionState.FAILED.value: frozenset(),
}


def _value(state):
    if isinstance(state, TransactionState):
        return state.value
    return state


def normalize_state(label):
    """Map a stored label onto a canonical state; unknown labels pass through."""
    label = _value(label)
    if label is None:
        return TransactionState.PENDING.value

    normalized = str(label).strip().lower()
    if not normalized:
        return TransactionState.PENDING.value
    return LEGACY_STATE_ALIASES.get(normalized, normalized)


def is_valid_state(state):
    return _value(state) in CANONICAL_STATES


def assert_valid_state(state):
    state = _value(state)
    if not is_valid_state(state):
        raise InvalidStateError(
            f"invalid transaction state={state!r} "
            f"valid_states={','.join(sorted(CANONICAL_STATES))}"
        )
    return state


def is_terminal(state):
    return _value(state) in TERMINAL_STATES


def can_transition(from_state, to_state):
    return _value(to_state) in VALID_TRANSITIONS.get(_value(from_state), frozenset())


def assert_transition(from_state, to_state):
    from_state = _value(from_state)
    to_state = _value(to_state)
    if not can_transition(from_state, to_state):
        allowed = sorted(VALID_TRANSITIONS.get(from_state, frozenset()))
        raise InvalidTransitionError(
            f"invalid transaction state transition: {from_state} -> {to_state} "
            f"allowed={','.join(allowed) or '-'}"
        )
    return to_state
