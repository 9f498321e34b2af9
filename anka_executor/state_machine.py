from anka_executor.models import InstanceState


ALLOWED_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    InstanceState.SCHEDULING: {InstanceState.PULLING, InstanceState.ERROR},
    InstanceState.PULLING: {InstanceState.STARTED, InstanceState.ERROR},
    InstanceState.STARTED: {
        InstanceState.PUSHING,
        InstanceState.TERMINATING,
        InstanceState.ERROR,
    },
    InstanceState.PUSHING: {
        InstanceState.STARTED,
        InstanceState.TERMINATING,
        InstanceState.ERROR,
    },
    InstanceState.TERMINATING: {InstanceState.TERMINATED, InstanceState.ERROR},
    InstanceState.TERMINATED: set(),
    InstanceState.ERROR: set(),
}

USABLE_STATES: frozenset[InstanceState] = frozenset(
    {InstanceState.SCHEDULING, InstanceState.PULLING, InstanceState.STARTED}
)


def can_transition(current: InstanceState, target: InstanceState) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def is_usable(state: InstanceState) -> bool:
    return state in USABLE_STATES
