"""
ticketflow State Machine Base

Base class for the protocol state machines of the Client orchestrator and
the Service role, providing:
- A declarative transition table keyed by (state, event type)
- Invariant checking before each transition is committed
- A transition history that can be exported as a JSON audit trace
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Tuple, TypeVar

import attrs
import structlog
from returns.result import Failure, Result, Success

from ticketflow.core.exceptions import InvariantViolation
from ticketflow.core.types import Clock, utc_now

logger = structlog.get_logger()


S = TypeVar("S", bound=Enum)  # State type
E = TypeVar("E")  # Event type
C = TypeVar("C")  # Context type


@attrs.define(frozen=True, slots=True)
class Transition(Generic[S]):
    """Immutable record of one state transition."""

    from_state: S
    event_type: str
    to_state: S
    timestamp: datetime
    event_data: Dict[str, Any] = attrs.Factory(dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.name,
            "event_type": self.event_type,
            "to_state": self.to_state.name,
            "timestamp": self.timestamp.isoformat(),
            "event_data": self.event_data,
        }


InvariantFn = Callable[[Any, Any], bool]

# (next_state, context_updater)
TransitionEntry = Tuple[Any, Callable[[Any, Any], Any]]


@attrs.define
class StateMachineBase(ABC, Generic[S, E, C]):
    """
    Base state machine with invariant checking and an audit trace.

    Usage:
        class MyStateMachine(StateMachineBase[MyState, Any, MyContext]):
            def initial_state(self) -> MyState:
                return MyState.INITIAL

            def transition_table(self):
                return {
                    (MyState.INITIAL, StartEvent): (
                        MyState.STARTED,
                        self._handle_start,
                    ),
                }

            @staticmethod
            def _handle_start(event: StartEvent, ctx: MyContext) -> MyContext:
                return attrs.evolve(ctx, started=True)
    """

    _state: S = attrs.field(alias="_state")
    _context: C = attrs.field(alias="_context")
    _history: List[Transition[S]] = attrs.field(factory=list, alias="_history")
    _invariants: List[Tuple[str, InvariantFn]] = attrs.field(factory=list, alias="_invariants")
    _logger: Any = attrs.field(factory=lambda: structlog.get_logger(), alias="_logger")
    _clock: Clock = attrs.field(default=utc_now, alias="_clock")

    @abstractmethod
    def initial_state(self) -> S:
        ...

    @abstractmethod
    def transition_table(self) -> Dict[Tuple[S, type], TransitionEntry]:
        """
        Map (current_state, event_type) to (next_state, context_updater).

        The context updater is a pure function (event, context) -> context.
        """
        ...

    @property
    def state(self) -> S:
        return self._state

    @property
    def context(self) -> C:
        return self._context

    def process_event(self, event: E) -> Result[S, str]:
        """
        Process an event and transition to the next state.

        Returns:
            Success(new_state) if the transition was committed
            Failure(error_message) if no transition applies or the
            context update failed

        Raises:
            InvariantViolation: If an invariant fails for the new state
        """
        event_type = type(event)
        key = (self._state, event_type)

        table = self.transition_table()
        if key not in table:
            self._logger.warning(
                "invalid_transition",
                current_state=self._state.name,
                event_type=event_type.__name__,
            )
            return Failure(
                f"No transition for state {self._state.name} with event {event_type.__name__}"
            )

        next_state, context_updater = table[key]

        try:
            new_context = context_updater(event, self._context)
        except Exception as e:
            self._logger.error(
                "context_update_failed",
                error=str(e),
                current_state=self._state.name,
                event_type=event_type.__name__,
            )
            return Failure(f"Context update failed: {e}")

        for name, invariant in self._invariants:
            if not invariant(next_state, new_context):
                self._logger.error(
                    "invariant_violated",
                    invariant=name,
                    from_state=self._state.name,
                    to_state=next_state.name,
                )
                raise InvariantViolation(f"Invariant '{name}' violated")

        self._history.append(
            Transition(
                from_state=self._state,
                event_type=event_type.__name__,
                to_state=next_state,
                timestamp=self._clock(),
                event_data=self._snapshot_event(event),
            )
        )

        self._logger.debug(
            "state_transition",
            from_state=self._state.name,
            to_state=next_state.name,
            event_type=event_type.__name__,
        )

        self._state = next_state
        self._context = new_context

        return Success(next_state)

    def add_invariant(self, name: str, invariant: InvariantFn) -> None:
        """Register an invariant (state, context) -> bool checked on every transition."""
        self._invariants.append((name, invariant))

    def get_trace(self) -> List[Transition[S]]:
        return list(self._history)

    def export_trace_json(self) -> str:
        """Export the transition history as a JSON audit trace."""
        return json.dumps(
            {
                "initial_state": self.initial_state().name,
                "final_state": self._state.name,
                "transitions": [t.to_dict() for t in self._history],
            },
            indent=2,
        )

    def _snapshot_event(self, event: E) -> Dict[str, Any]:
        if attrs.has(type(event)):
            return attrs.asdict(
                event,
                filter=lambda attr, value: not attr.name.startswith("_") and attr.repr,
                value_serializer=self._serialize_value,
            )
        return {"type": type(event).__name__}

    @staticmethod
    def _serialize_value(inst: type, field: attrs.Attribute, value: Any) -> Any:  # noqa: ARG004
        if isinstance(value, bytes):
            return f"<bytes:{len(value)}>"
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.name
        if attrs.has(type(value)):
            return f"<{type(value).__name__}>"
        return value

    def reset(self) -> None:
        """Return to the initial state and clear history. Context is kept."""
        self._state = self.initial_state()
        self._history = []
