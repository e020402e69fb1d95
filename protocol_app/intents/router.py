"""
Voice intent routing for protocol runs.

Intents arrive already parsed (intent name plus slot values); the router
maps each one onto an engine operation and phrases the outcome for speech.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..engine import ProtocolRunEngine
from ..errors import ConflictError, NotFoundError, ValidationError
from ..logging.config import get_logger
from ..state.models import AdvanceStatus, ProtocolStep, RunStatus

logger = get_logger(__name__)

PENDING_RESTART = "pending_restart"
ACTIVE_RUN = "active_protocol_run"
CURRENT_STEP = "current_step"

GENERIC_RETRY = "Sorry, I had trouble with that. Please try again."


@dataclass
class SpeechResponse:
    """What the voice surface should say next."""

    speech: str
    reprompt: Optional[str] = None
    session_attributes: dict[str, Any] = field(default_factory=dict)
    should_end_session: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "speech": self.speech,
            "reprompt": self.reprompt,
            "session_attributes": self.session_attributes,
            "should_end_session": self.should_end_session,
        }


def _describe_steps(steps: tuple[ProtocolStep, ...]) -> str:
    return ", ".join(f"{s.label} for {s.duration_minutes} minutes" for s in steps)


class IntentRouter:
    """Dispatch parsed intents to the run engine."""

    def __init__(self, engine: ProtocolRunEngine):
        self.engine = engine
        self.logger = logger
        self._handlers: dict[str, Callable[..., SpeechResponse]] = {
            "CreateProtocolIntent": self._create_protocol,
            "StartProtocolIntent": self._start_protocol,
            "AMAZON.YesIntent": self._confirm_restart,
            "AMAZON.NoIntent": self._decline_restart,
            "NextStepIntent": self._next_step,
            "CancelProtocolIntent": self._cancel_protocol,
            "ProtocolStatusIntent": self._protocol_status,
            "ListProtocolsIntent": self._list_protocols,
        }

    def handle(
        self,
        intent_name: str,
        slots: Optional[dict[str, Any]],
        owner_id: str,
        session_attributes: Optional[dict[str, Any]] = None,
    ) -> SpeechResponse:
        """Route one intent; never raises to the voice surface."""
        slots = slots or {}
        session = dict(session_attributes or {})

        handler = self._handlers.get(intent_name)
        if handler is None:
            self.logger.warning("Unhandled intent", intent=intent_name, owner_id=owner_id)
            return SpeechResponse(
                speech="Sorry, I didn't catch that. Please try again.",
                reprompt="You can say: start red light protocol.",
                session_attributes=session,
            )

        self.logger.info("Handling intent", intent=intent_name, owner_id=owner_id)
        try:
            return handler(slots, owner_id, session)
        except Exception as e:
            self.logger.error(
                "Intent handling failed",
                intent=intent_name,
                owner_id=owner_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return SpeechResponse(speech=GENERIC_RETRY, session_attributes=session)

    # -------------------------------------------------------------------- handlers

    def _create_protocol(self, slots, owner_id, session) -> SpeechResponse:
        name = slots.get("name")
        steps = slots.get("steps")
        if not name or not steps:
            return SpeechResponse(
                speech="What protocol would you like to create? Tell me the name and steps.",
                reprompt="For example, say: Create red light protocol with 3 minutes neck, "
                         "3 minutes each cheek, 5 minutes chest.",
                session_attributes=session,
            )

        try:
            definition = self.engine.create_protocol(
                owner_id,
                name,
                steps,
                tags=slots.get("tags"),
                description=slots.get("description"),
            )
        except ValidationError:
            return SpeechResponse(
                speech="I couldn't understand the protocol steps. "
                       "Please describe them clearly with durations.",
                reprompt="Tell me each step and how many minutes it takes.",
                session_attributes=session,
            )

        speech = (
            f"I've created the {definition.name} protocol with {len(definition.steps)} steps, "
            f"taking {definition.total_duration_minutes} minutes total. "
            f"The steps are: {_describe_steps(definition.steps)}. "
            f"You can start it anytime by saying: start {definition.name}."
        )
        return SpeechResponse(speech=speech, session_attributes=session)

    def _start_protocol(self, slots, owner_id, session) -> SpeechResponse:
        protocol_name = slots.get("protocolName")
        if not protocol_name:
            return SpeechResponse(
                speech="Which protocol would you like to start?",
                reprompt="You can say things like: start red light protocol, "
                         "or start morning routine.",
                session_attributes=session,
            )

        try:
            result = self.engine.start_run(owner_id, protocol_name)
        except NotFoundError:
            return SpeechResponse(
                speech=f"I don't have a protocol called {protocol_name}. "
                       f"Would you like me to create one?",
                reprompt="You can tell me the steps for this protocol.",
                session_attributes=session,
            )
        except ConflictError as e:
            session[PENDING_RESTART] = protocol_name
            self.logger.info(
                "Restart offered",
                owner_id=owner_id,
                active_run_id=e.active_run_id,
                requested=protocol_name,
            )
            return SpeechResponse(
                speech=f"You're already running the {e.active_protocol_name} protocol. "
                       f"Would you like to cancel it and start {protocol_name} instead?",
                reprompt="Say yes to switch protocols, or no to continue the current one.",
                session_attributes=session,
            )

        first = result.first_step
        session.pop(PENDING_RESTART, None)
        session[ACTIVE_RUN] = result.run_id
        session[CURRENT_STEP] = 0
        speech = (
            f"Starting {result.protocol_name} protocol. "
            f"This will take {result.total_duration_minutes} minutes total. "
            f"First step: {first.label} for {first.duration_minutes} minutes."
        )
        return SpeechResponse(
            speech=speech,
            reprompt="Let me know when you're ready for the next step.",
            session_attributes=session,
        )

    def _confirm_restart(self, slots, owner_id, session) -> SpeechResponse:
        pending = session.pop(PENDING_RESTART, None)
        if not pending:
            return SpeechResponse(speech="Okay.", session_attributes=session)

        try:
            self.engine.cancel_active_run(owner_id)
        except NotFoundError:
            # Finished on its own in the meantime
            pass
        return self._start_protocol({"protocolName": pending}, owner_id, session)

    def _decline_restart(self, slots, owner_id, session) -> SpeechResponse:
        had_pending = session.pop(PENDING_RESTART, None) is not None
        speech = "Okay, continuing your current protocol." if had_pending else "Okay."
        return SpeechResponse(speech=speech, session_attributes=session)

    def _next_step(self, slots, owner_id, session) -> SpeechResponse:
        # The owner's active run wins over a stale session id
        active = self.engine.runs.get_active_run(owner_id)
        if active is not None:
            run_id = active.id
        else:
            run_id = session.get(ACTIVE_RUN)
            if not run_id:
                return SpeechResponse(
                    speech="You don't have a protocol running.",
                    session_attributes=session,
                )

        result = self.engine.advance_to_next_step(run_id)

        if result.status is AdvanceStatus.ADVANCED and result.step is not None:
            session[ACTIVE_RUN] = result.run.id
            session[CURRENT_STEP] = result.run.current_step_index
            speech = (
                f"Next step: {result.step.label} for {result.step.duration_minutes} minutes."
            )
            return SpeechResponse(
                speech=speech,
                reprompt="Let me know when you're ready for the next step.",
                session_attributes=session,
            )

        session.pop(ACTIVE_RUN, None)
        session.pop(CURRENT_STEP, None)
        if result.status is AdvanceStatus.COMPLETED:
            speech = f"{result.run.protocol_name} protocol complete. Nice work."
        else:
            speech = f"The {result.run.protocol_name} protocol was cancelled."
        return SpeechResponse(speech=speech, session_attributes=session, should_end_session=True)

    def _cancel_protocol(self, slots, owner_id, session) -> SpeechResponse:
        try:
            result = self.engine.cancel_active_run(owner_id)
        except NotFoundError:
            return SpeechResponse(
                speech="You don't have a protocol running.",
                session_attributes=session,
            )

        session.pop(ACTIVE_RUN, None)
        session.pop(CURRENT_STEP, None)
        if result.status is RunStatus.CANCELLED:
            speech = f"Cancelled the {result.run.protocol_name} protocol."
        else:
            speech = f"The {result.run.protocol_name} protocol had already finished."
        return SpeechResponse(speech=speech, session_attributes=session, should_end_session=True)

    def _protocol_status(self, slots, owner_id, session) -> SpeechResponse:
        view = self.engine.get_status(owner_id)
        if not view.active or view.run is None:
            return SpeechResponse(
                speech="You don't have a protocol running.",
                session_attributes=session,
            )

        run = view.run
        speech = (
            f"You're on step {run.current_step_index + 1} of {run.step_count} "
            f"of {run.protocol_name}: {view.current_step.label}. "
            f"About {run.remaining_minutes} minutes remaining."
        )
        return SpeechResponse(speech=speech, session_attributes=session)

    def _list_protocols(self, slots, owner_id, session) -> SpeechResponse:
        definitions = self.engine.list_protocols(owner_id)
        if not definitions:
            return SpeechResponse(
                speech="You don't have any protocols yet. "
                       "You can create one by telling me the steps.",
                session_attributes=session,
            )

        names = ", ".join(d.name for d in definitions)
        return SpeechResponse(
            speech=f"You have {len(definitions)} protocols: {names}.",
            session_attributes=session,
        )


__all__ = ["IntentRouter", "SpeechResponse", "PENDING_RESTART"]
